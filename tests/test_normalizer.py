from __future__ import annotations

from pathlib import Path

import pytest

from casegen_pipeline.canonical import sha256_hex
from casegen_pipeline.models import GatingRule, GeneratedArtifact, GenerationSpec, RefinementSummary
from casegen_pipeline.normalizer import (
    RULE_CROSS_REFERENCES,
    RULE_GATING_CYCLES,
    RULE_GATING_REFERENCES,
    RULE_TIMEZONE,
    apply_repairs,
    normalize_artifacts,
    rule_issues,
)
from casegen_pipeline.packaging import BUNDLE_PATH, MANIFEST_PATH, package_bundle, verify_manifest
from casegen_pipeline.state_store import CaseStateStore

from support import item, validated_bundle


def _statuses(validated) -> dict[str, str]:  # noqa: ANN001
    return {result.rule: result.status for result in validated.rule_results}


def test_normalize_joins_specs_and_artifacts_in_spec_order() -> None:
    specs = [
        GenerationSpec(id="DOC-1", kind="document", title="Report"),
        GenerationSpec(
            id="DOC-2",
            kind="document",
            title="Lab",
            gated=True,
            gating_rule=GatingRule(required_ids=["EVD-1"]),
        ),
        GenerationSpec(id="EVD-1", kind="media", title="Photo"),
    ]
    artifacts = [
        GeneratedArtifact(spec_id=spec.id, kind=spec.kind, raw_content={"title": spec.title})
        for spec in reversed(specs)
    ]

    bundle = normalize_artifacts("CASE-1", specs, artifacts, timezone="America/Sao_Paulo")

    assert [entry.id for entry in bundle.documents] == ["DOC-1", "DOC-2"]
    assert [entry.id for entry in bundle.media] == ["EVD-1"]
    assert bundle.metadata["documentCount"] == 2
    assert bundle.metadata["timezone"] == "America/Sao_Paulo"
    assert bundle.gating_graph.has_cycles is False


def test_normalize_rejects_missing_artifacts() -> None:
    specs = [GenerationSpec(id="DOC-1", kind="document", title="Report")]
    with pytest.raises(ValueError):
        normalize_artifacts("CASE-1", specs, [], timezone="UTC")


def test_rules_flag_dangling_references_and_cycles() -> None:
    validated = validated_bundle(
        [
            item("DOC-1", requires=["GHOST"]),
            item("DOC-2", requires=["DOC-3"]),
            item("DOC-3", requires=["DOC-2"]),
        ],
        timezone="local",
    )
    statuses = _statuses(validated)

    assert statuses[RULE_GATING_REFERENCES] == "FAIL"
    assert statuses[RULE_GATING_CYCLES] == "FAIL"
    assert statuses[RULE_TIMEZONE] == "FAIL"
    assert statuses[RULE_CROSS_REFERENCES] == "WARN"
    cycle = next(result for result in validated.rule_results if result.rule == RULE_GATING_CYCLES)
    assert cycle.description.startswith("Cycle detected: DOC-2 -> DOC-3 -> DOC-2")

    issues = rule_issues(validated)
    assert {issue.severity for issue in issues if issue.id.startswith(RULE_CROSS_REFERENCES)} == {"low"}

    repaired = apply_repairs(validated, issues)

    assert repaired.failed_rules == []
    assert repaired.bundle.metadata["timezone"] == "UTC"
    assert repaired.bundle.metadata["revision"] == 1
    assert repaired.bundle.gating_graph.has_cycles is False


def test_package_hashes_match_stored_bytes(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    validated = validated_bundle(
        [item("DOC-1"), item("DOC-2", requires=["EVD-1"]), item("EVD-1", kind="media")]
    )

    manifest = package_bundle(store, validated, "CASE-1", RefinementSummary(clean=True, capped=False, iterations=0))

    assert [entry.relative_path for entry in manifest.entries] == [
        "documents/DOC-1.json",
        "documents/DOC-2.json",
        "media/EVD-1.json",
    ]
    assert BUNDLE_PATH in manifest.file_hashes
    stored = store.read_files("CASE-1", "documents/DOC-2.json")[0]
    assert sha256_hex(stored.data) == manifest.file_hashes["documents/DOC-2.json"]
    assert manifest.entries[1].gated is True
    assert manifest.visibility.hidden_until_unlocked == ["DOC-2"]
    assert store.read_files("CASE-1", MANIFEST_PATH)
    assert verify_manifest(store, manifest) == []

    store.save_file("CASE-1", "media/EVD-1.json", b"tampered")
    assert verify_manifest(store, manifest) == ["media/EVD-1.json"]


def test_package_keeps_ids_that_clean_up_alike_apart(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    validated = validated_bundle([item("DOC/1"), item("DOC_1")])

    manifest = package_bundle(store, validated, "CASE-1", RefinementSummary(clean=True, capped=False, iterations=0))

    paths = [entry.relative_path for entry in manifest.entries]
    assert len(set(paths)) == 2
    assert "documents/DOC_1.json" in paths
    assert len(store.read_files("CASE-1", "documents/*.json")) == 2
    assert set(paths) <= set(manifest.file_hashes)
    assert verify_manifest(store, manifest) == []


def test_unknown_zone_fails_timezone_rule() -> None:
    validated = validated_bundle([item("DOC-1")], timezone="Not/AZone")

    assert _statuses(validated)[RULE_TIMEZONE] == "FAIL"
    assert apply_repairs(validated, rule_issues(validated)).bundle.metadata["timezone"] == "UTC"


def test_normalize_keeps_the_rule_of_an_ungated_spec() -> None:
    specs = [
        GenerationSpec(id="DOC-1", kind="document", title="Memo", gating_rule=GatingRule(required_ids=["EVD-1"])),
        GenerationSpec(id="EVD-1", kind="media", title="Photo"),
    ]
    artifacts = [GeneratedArtifact(spec_id=spec.id, kind=spec.kind, raw_content={"title": spec.title}) for spec in specs]

    bundle = normalize_artifacts("CASE-1", specs, artifacts, timezone="UTC")

    assert bundle.documents[0].gated is False
    assert bundle.documents[0].required_ids == ["EVD-1"]
    assert [(edge.source, edge.target) for edge in bundle.gating_graph.edges if edge.relationship == "requires"] == [
        ("DOC-1", "EVD-1")
    ]
