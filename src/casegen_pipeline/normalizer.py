"""Deterministic bundle assembly, indexing, rule validation and repair."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from .gating import build_gating_graph, dangling_references
from .models import (
    GeneratedArtifact,
    GenerationSpec,
    IndexedBundle,
    IndexEntry,
    NormalizedBundle,
    NormalizedItem,
    ReviewIssue,
    RuleResult,
    ValidatedBundle,
    is_valid_timezone,
)

logger = logging.getLogger(__name__)

RULE_UNIQUE_IDS = "UNIQUE_IDS"
RULE_GATING_REFERENCES = "GATING_REFERENCE_INTEGRITY"
RULE_GATING_CYCLES = "GATING_GRAPH_CYCLES"
RULE_TIMEZONE = "TIMEZONE_CONSISTENCY"
RULE_CONTENT = "CONTENT_PRESENT"
RULE_CROSS_REFERENCES = "CROSS_REFERENCE_INTEGRITY"


def normalize_artifacts(
    case_id: str,
    specs: list[GenerationSpec],
    artifacts: list[GeneratedArtifact],
    *,
    timezone: str,
) -> NormalizedBundle:
    """Join generated artifacts with their specs into a bundle and build its gating graph.

    Raises:
        ValueError: If an artifact is missing for a spec or names an unknown spec.
    """
    by_spec: dict[str, GeneratedArtifact] = {}
    for artifact in artifacts:
        by_spec.setdefault(artifact.spec_id, artifact)
    spec_ids = {spec.id for spec in specs}
    unknown = sorted(set(by_spec) - spec_ids)
    if unknown:
        raise ValueError(f"artifacts reference unknown specs: {', '.join(unknown)}")

    documents: list[NormalizedItem] = []
    media: list[NormalizedItem] = []
    for spec in specs:
        artifact = by_spec.get(spec.id)
        if artifact is None:
            raise ValueError(f"no generated artifact for spec {spec.id}")
        item = NormalizedItem(
            id=spec.id,
            kind=spec.kind,
            title=spec.title,
            type=spec.type,
            gated=spec.gated,
            gating_rule=spec.gating_rule,
            content=artifact.raw_content,
            rendered_ref=artifact.rendered_ref,
            metadata={**spec.metadata, **artifact.metadata},
        )
        (documents if spec.kind == "document" else media).append(item)

    bundle = NormalizedBundle(
        case_id=case_id,
        documents=documents,
        media=media,
        metadata={
            "timezone": timezone,
            "documentCount": len(documents),
            "mediaCount": len(media),
            "revision": 0,
        },
    )
    return refresh_gating_graph(bundle)


def refresh_gating_graph(bundle: NormalizedBundle) -> NormalizedBundle:
    return bundle.model_copy(update={"gating_graph": build_gating_graph(bundle.items())})


def _references_of(item: NormalizedItem) -> list[str]:
    raw: Any = item.content.get("references", [])
    refs = [str(ref) for ref in raw] if isinstance(raw, list) else []
    return list(dict.fromkeys([*item.required_ids, *refs]))


def build_index(bundle: NormalizedBundle) -> IndexedBundle:
    entries = [
        IndexEntry(id=item.id, kind=item.kind, title=item.title, type=item.type, references=_references_of(item))
        for item in bundle.items()
    ]
    return IndexedBundle(bundle=bundle, index=entries)


def validate_bundle(indexed: IndexedBundle) -> ValidatedBundle:
    """Run every structural rule over the indexed bundle. Never raises on rule failure."""
    bundle = indexed.bundle
    items = bundle.items()
    results: list[RuleResult] = []

    counts = Counter(item.id for item in items)
    duplicates = sorted(item_id for item_id, count in counts.items() if count > 1)
    results.append(
        RuleResult(
            rule=RULE_UNIQUE_IDS,
            status="FAIL" if duplicates else "PASS",
            description="Duplicate artifact ids" if duplicates else "All artifact ids are unique",
            details=duplicates,
        )
    )

    dangling = dangling_references(items)
    results.append(
        RuleResult(
            rule=RULE_GATING_REFERENCES,
            status="FAIL" if dangling else "PASS",
            description=(
                "Gating rules reference unknown artifacts" if dangling else "All gating references resolve"
            ),
            details=[f"{source} -> {missing}" for source, missing in dangling],
        )
    )

    graph = bundle.gating_graph
    results.append(
        RuleResult(
            rule=RULE_GATING_CYCLES,
            status="FAIL" if graph.has_cycles else "PASS",
            description=(
                f"Cycle detected: {graph.cycle_descriptions[0]}" if graph.has_cycles else "Gating graph is acyclic"
            ),
            details=list(graph.cycle_descriptions),
        )
    )

    timezone = bundle.metadata.get("timezone")
    results.append(
        RuleResult(
            rule=RULE_TIMEZONE,
            status="PASS" if is_valid_timezone(timezone) else "FAIL",
            description=f"Bundle timezone is {timezone!r}",
        )
    )

    empty = [item.id for item in items if not item.content]
    results.append(
        RuleResult(
            rule=RULE_CONTENT,
            status="FAIL" if empty else "PASS",
            description="Artifacts without content" if empty else "Every artifact has content",
            details=empty,
        )
    )

    known = set(counts)
    broken = [f"{entry.id} -> {ref}" for entry in indexed.index for ref in entry.references if ref not in known]
    results.append(
        RuleResult(
            rule=RULE_CROSS_REFERENCES,
            status="WARN" if broken else "PASS",
            description="Cross references to unknown artifacts" if broken else "All cross references resolve",
            details=broken,
        )
    )

    failed = [result.rule for result in results if result.status == "FAIL"]
    if failed:
        logger.info("Bundle %s failed rules: %s", bundle.case_id, ", ".join(failed))
    return ValidatedBundle(bundle=bundle, index=indexed.index, rule_results=results)


def rule_issues(validated: ValidatedBundle) -> list[ReviewIssue]:
    """Translate rule failures and warnings into review issues."""
    areas = {
        RULE_UNIQUE_IDS: "consistency",
        RULE_GATING_REFERENCES: "gating",
        RULE_GATING_CYCLES: "gating",
        RULE_TIMEZONE: "timeline",
        RULE_CONTENT: "evidence",
        RULE_CROSS_REFERENCES: "consistency",
    }
    issues: list[ReviewIssue] = []
    for result in validated.rule_results:
        if result.status == "PASS":
            continue
        severity = "high" if result.status == "FAIL" else "low"
        area = areas.get(result.rule, "consistency")
        details = result.details or [result.description]
        for position, detail in enumerate(details, start=1):
            targets = [part.strip() for part in detail.split("->")] if "->" in detail else [detail]
            issues.append(
                ReviewIssue(
                    id=f"{result.rule}:{position}",
                    area=area,
                    severity=severity,
                    description=f"{result.description}: {detail}",
                    target_ids=targets if result.rule != RULE_TIMEZONE else [],
                )
            )
    return issues


def apply_repairs(validated: ValidatedBundle, issues: list[ReviewIssue]) -> ValidatedBundle:
    """Apply the structural fix for every rule-derived issue and re-validate.

    Issues that do not carry a known rule prefix are left for content repair.
    """
    bundle = validated.bundle
    documents = [item.model_copy(deep=True) for item in bundle.documents]
    media = [item.model_copy(deep=True) for item in bundle.media]
    items = [*documents, *media]
    by_id = {item.id: item for item in items}
    metadata = dict(bundle.metadata)

    for issue in issues:
        rule = issue.id.split(":", 1)[0]
        if rule == RULE_GATING_REFERENCES and len(issue.target_ids) == 2:
            source, missing = issue.target_ids
            item = by_id.get(source)
            if item is not None and item.gating_rule is not None:
                item.gating_rule.required_ids = [rid for rid in item.gating_rule.required_ids if rid != missing]
        elif rule == RULE_GATING_CYCLES and len(issue.target_ids) >= 2:
            head, required = issue.target_ids[0], issue.target_ids[1]
            item = by_id.get(head)
            if item is not None and item.gating_rule is not None:
                item.gating_rule.required_ids = [rid for rid in item.gating_rule.required_ids if rid != required]
        elif rule == RULE_CONTENT:
            for target in issue.target_ids:
                item = by_id.get(target)
                if item is not None and not item.content:
                    item.content = {"title": item.title, "summary": f"{item.title} ({item.type})"}
        elif rule == RULE_TIMEZONE:
            metadata["timezone"] = "UTC"

    seen: Counter[str] = Counter()
    for item in items:
        seen[item.id] += 1
        if seen[item.id] > 1:
            item.id = f"{item.id}-{seen[item.id]}"

    metadata["revision"] = int(metadata.get("revision", 0)) + 1
    repaired = refresh_gating_graph(
        bundle.model_copy(update={"documents": documents, "media": media, "metadata": metadata})
    )
    return validate_bundle(build_index(repaired))
