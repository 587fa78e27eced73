"""Default activity implementations: deterministic and LLM-backed."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .canonical import content_hash, to_canonical_bytes
from .errors import DesignParseFailure
from .llm import StructuredOutputAdapter, structured_model_for
from .models import (
    CaseGenerationRequest,
    CleanVerdict,
    DesignResult,
    GeneratedArtifact,
    GenerationContext,
    GenerationSpec,
    IndexedBundle,
    Manifest,
    NormalizedBundle,
    RefinementSummary,
    ReviewAnalysis,
    ReviewIssue,
    StageArtifact,
    ValidatedBundle,
)
from .normalizer import apply_repairs, build_index, normalize_artifacts, rule_issues, validate_bundle
from .packaging import package_bundle
from .settings import RuntimeSettings
from .state_store import CaseStateStore, storage_name

logger = logging.getLogger(__name__)

_SUSPECT_POOL = (
    ("Helena Prado", "business partner"),
    ("Marcos Tavares", "night guard"),
    ("Julia Menezes", "estranged sister"),
    ("Rafael Costa", "former employee"),
    ("Beatriz Lima", "neighbour"),
)
_SCENES = ("warehouse office", "hotel suite", "art gallery", "riverside apartment")
_DIFFICULTY_SUSPECTS = {"rookie": 2, "detective": 3, "sergeant": 3, "lieutenant": 4, "captain": 4, "commander": 5}


# ---------------------------------------------------------------------------
# Design parsing
# ---------------------------------------------------------------------------

def parse_design_output(raw: Any) -> DesignResult:
    """Parse raw Design output into a complete, typed spec set.

    Accepts a mapping (or JSON text) with ``documentSpecs`` and ``mediaSpecs``
    lists. Entries without a ``kind`` inherit it from their slot.

    Raises:
        DesignParseFailure: On non-object output, missing slots, schema errors,
            kind mismatches or duplicate spec ids.
    """
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json", by_alias=True)
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DesignParseFailure(f"design output is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise DesignParseFailure(f"design output must be an object, got {type(raw).__name__}")

    payload: dict[str, Any] = {}
    for slot, snake, kind in (
        ("documentSpecs", "document_specs", "document"),
        ("mediaSpecs", "media_specs", "media"),
    ):
        entries = raw.get(slot, raw.get(snake))
        if not isinstance(entries, list):
            raise DesignParseFailure(f"design output is missing the {slot} list")
        slot_entries: list[Any] = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise DesignParseFailure(f"{slot} entries must be objects, got {type(entry).__name__}")
            entry = dict(entry)
            declared = entry.setdefault("kind", kind)
            if declared != kind:
                raise DesignParseFailure(f"{slot} entry {entry.get('id')!r} declares kind {declared!r}")
            slot_entries.append(entry)
        payload[slot] = slot_entries

    try:
        design = DesignResult.model_validate(payload)
    except ValidationError as exc:
        raise DesignParseFailure(f"design specs failed validation: {exc}") from exc

    seen: set[str] = set()
    for spec in design.all_specs():
        if spec.id in seen:
            raise DesignParseFailure(f"duplicate spec id {spec.id}")
        seen.add(spec.id)
    return design


# ---------------------------------------------------------------------------
# Deterministic activities
# ---------------------------------------------------------------------------

class CaseActivities:
    """Deterministic implementation of every pipeline activity.

    Content is derived from a hash of the inputs, so repeated invocation with
    the same input yields the same output. Rendered artifacts and the final
    package are written to the case's blob container.
    """

    def __init__(self, store: CaseStateStore) -> None:
        self.store = store

    # -- narrative ----------------------------------------------------------

    def plan(self, request: CaseGenerationRequest, case_id: str) -> StageArtifact:
        seed = int(content_hash(request)[:8], 16)
        suspect_count = _DIFFICULTY_SUSPECTS.get((request.difficulty or "rookie").lower(), 3)
        suspects = [
            {"name": name, "role": role}
            for name, role in (_SUSPECT_POOL[(seed + offset) % len(_SUSPECT_POOL)] for offset in range(suspect_count))
        ]
        scene = _SCENES[seed % len(_SCENES)]
        content = {
            "title": request.title or f"The {scene.title()} Case",
            "location": request.location or scene,
            "difficulty": request.difficulty or "Rookie",
            "timezone": request.timezone,
            "targetDurationMinutes": request.target_duration_minutes,
            "premise": f"A body is found in the {scene}; the doors were locked from the inside.",
            "suspects": suspects,
            "culprit": suspects[seed % len(suspects)]["name"],
            "constraints": list(request.constraints),
        }
        return StageArtifact(case_id=case_id, stage="plan", content=content)

    def expand(self, plan: StageArtifact, case_id: str) -> StageArtifact:
        suspects = plan.content.get("suspects", [])
        timeline = [
            {"time": f"{19 + index:02d}:00", "event": f"{suspect['name']} seen near the {plan.content.get('location')}"}
            for index, suspect in enumerate(suspects)
        ]
        content = {
            **plan.content,
            "timeline": timeline,
            "alibis": {suspect["name"]: f"claims to have been away after {19 + i}:30" for i, suspect in enumerate(suspects)},
            "evidence": ["scene photograph", "forensic swab", "access log"],
        }
        return StageArtifact(case_id=case_id, stage="expand", content=content, metadata={"source": "plan"})

    def design(
        self,
        plan: StageArtifact,
        expanded: StageArtifact,
        case_id: str,
        difficulty: str | None = None,
    ) -> DesignResult:
        suspects = expanded.content.get("suspects", [])
        documents: list[dict[str, Any]] = [
            {"id": "DOC-POLICE-REPORT", "title": "Initial police report", "type": "police_report"},
        ]
        for index, suspect in enumerate(suspects, start=1):
            documents.append(
                {
                    "id": f"DOC-INTERVIEW-{index:02d}",
                    "title": f"Interview: {suspect['name']}",
                    "type": "interview",
                    "contentHints": [suspect.get("role", "")],
                }
            )
        documents.append(
            {
                "id": "DOC-FORENSICS",
                "title": "Forensic analysis",
                "type": "forensics_report",
                "gated": True,
                "gatingRule": {"requiredIds": ["EVD-SCENE-PHOTO"], "action": "submit-evidence"},
            }
        )
        documents.append(
            {
                "id": "DOC-ACCESS-LOG",
                "title": "Building access log",
                "type": "log",
                "gated": True,
                "gatingRule": {"requiredIds": ["DOC-POLICE-REPORT"], "action": "role-required"},
            }
        )
        media: list[dict[str, Any]] = [
            {"id": "EVD-SCENE-PHOTO", "title": "Scene photograph", "type": "photo"},
            {
                "id": "EVD-CCTV",
                "title": "CCTV still",
                "type": "photo",
                "gated": True,
                "gatingRule": {"requiredIds": [], "action": "manual-unlock"},
            },
        ]
        level = (difficulty or plan.content.get("difficulty") or "").lower()
        if level in {"lieutenant", "captain", "commander"}:
            media.append(
                {
                    "id": "EVD-LAB-SWAB",
                    "title": "Swab under magnification",
                    "type": "photo",
                    "gated": True,
                    "gatingRule": {"requiredIds": ["DOC-FORENSICS"], "action": "submit-evidence"},
                }
            )
        return parse_design_output({"documentSpecs": documents, "mediaSpecs": media})

    def generate_document(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact:
        plan = context.expanded.content
        body = [
            {"heading": "Summary", "body": f"{spec.title} for case {plan.get('title')}."},
            {"heading": "Details", "body": "; ".join(spec.content_hints) or plan.get("premise", "")},
        ]
        references = spec.gating_rule.required_ids if spec.gating_rule else []
        return self._artifact(
            spec,
            {"title": spec.title, "type": spec.type, "sections": body, "references": list(references), "timezone": context.timezone},
        )

    def generate_media(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact:
        references = spec.gating_rule.required_ids if spec.gating_rule else []
        prompt = f"{spec.title} at the {context.expanded.content.get('location', 'scene')}"
        return self._artifact(
            spec,
            {"title": spec.title, "type": spec.type, "prompt": prompt, "caption": spec.title, "references": list(references)},
        )

    @staticmethod
    def _artifact(spec: GenerationSpec, content: dict[str, Any]) -> GeneratedArtifact:
        data = to_canonical_bytes(content)
        return GeneratedArtifact(
            spec_id=spec.id,
            kind=spec.kind,
            raw_content=content,
            size_bytes=len(data),
            hash=content_hash(content),
        )

    # -- rendering ----------------------------------------------------------

    def render_document(self, spec_id: str, artifact: GeneratedArtifact, case_id: str) -> str:
        lines = [f"# {artifact.raw_content.get('title', spec_id)}", ""]
        for section in artifact.raw_content.get("sections", []):
            lines.extend([f"## {section.get('heading', '')}", "", str(section.get("body", "")), ""])
        name = f"rendered/documents/{storage_name(spec_id)}.md"
        return self.store.save_file(case_id, name, "\n".join(lines).encode("utf-8"))

    def render_media(self, spec: GenerationSpec, case_id: str) -> str:
        descriptor = {"id": spec.id, "title": spec.title, "type": spec.type, "hints": spec.content_hints}
        name = f"rendered/media/{storage_name(spec.id)}.json"
        return self.store.save_file(case_id, name, to_canonical_bytes(descriptor))

    # -- structural stages --------------------------------------------------

    def normalize(
        self,
        case_id: str,
        specs: list[GenerationSpec],
        artifacts: list[GeneratedArtifact],
        timezone: str,
    ) -> NormalizedBundle:
        return normalize_artifacts(case_id, specs, artifacts, timezone=timezone)

    def build_index(self, bundle: NormalizedBundle, case_id: str) -> IndexedBundle:
        return build_index(bundle)

    def validate_rules(self, indexed: IndexedBundle, case_id: str) -> ValidatedBundle:
        return validate_bundle(indexed)

    # -- review -------------------------------------------------------------

    def review_global(self, validated: ValidatedBundle, case_id: str, iteration: int) -> ReviewAnalysis:
        issues = rule_issues(validated)
        areas = list(dict.fromkeys(issue.area for issue in issues))
        return ReviewAnalysis(
            case_id=case_id,
            scope="global",
            iteration=iteration,
            issues=issues,
            focus_areas=areas,
            requires_detailed_analysis=any(issue.severity != "low" for issue in issues),
            summary=f"{len(issues)} issue(s) across {len(validated.bundle.items())} artifacts",
        )

    def review_focused(
        self,
        validated: ValidatedBundle,
        case_id: str,
        iteration: int,
        focus_area: str,
        global_analysis: ReviewAnalysis,
    ) -> ReviewAnalysis:
        issues = [issue for issue in global_analysis.issues if issue.area == focus_area]
        if focus_area == "evidence":
            referenced = {ref for entry in validated.index for ref in entry.references}
            for item in validated.bundle.media:
                if item.id not in referenced:
                    issues.append(
                        ReviewIssue(
                            id=f"UNREFERENCED_MEDIA:{item.id}",
                            area="evidence",
                            severity="low",
                            description=f"{item.id} is not referenced by any other artifact",
                            target_ids=[item.id],
                        )
                    )
        return ReviewAnalysis(
            case_id=case_id,
            scope="focused",
            iteration=iteration,
            focus_area=focus_area,
            issues=issues,
            summary=f"{len(issues)} issue(s) in {focus_area}",
        )

    def is_clean(self, analyses: list[ReviewAnalysis], case_id: str, iteration: int) -> CleanVerdict:
        blocking = [issue.id for analysis in analyses for issue in analysis.blocking_issues]
        return CleanVerdict(
            case_id=case_id,
            iteration=iteration,
            clean=not blocking,
            blocking_issue_ids=list(dict.fromkeys(blocking)),
        )

    def repair(
        self,
        analyses: list[ReviewAnalysis],
        current: ValidatedBundle,
        case_id: str,
        iteration: int,
    ) -> ValidatedBundle:
        issues = list({issue.id: issue for analysis in analyses for issue in analysis.issues}.values())
        return apply_repairs(current, issues)

    # -- package ------------------------------------------------------------

    def package(self, final: ValidatedBundle, case_id: str, refinement: RefinementSummary) -> Manifest:
        return package_bundle(self.store, final, case_id, refinement)


# ---------------------------------------------------------------------------
# LLM-backed activities
# ---------------------------------------------------------------------------

class NarrativeSection(BaseModel):
    heading: str
    body: str


class NarrativeDraft(BaseModel):
    title: str
    summary: str
    sections: list[NarrativeSection] = Field(default_factory=list)


class SpecDraft(BaseModel):
    id: str
    title: str
    type: str
    content_hints: list[str] = Field(default_factory=list)
    gated: bool = False
    required_ids: list[str] = Field(default_factory=list)
    unlock_action: str | None = None


class DesignDraft(BaseModel):
    document_specs: list[SpecDraft] = Field(default_factory=list)
    media_specs: list[SpecDraft] = Field(default_factory=list)


class IssueDraft(BaseModel):
    area: str
    severity: str
    description: str
    target_ids: list[str] = Field(default_factory=list)


class ReviewDraft(BaseModel):
    summary: str
    issues: list[IssueDraft] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    requires_detailed_analysis: bool = False


def _spec_payload(draft: SpecDraft) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": draft.id,
        "title": draft.title,
        "type": draft.type,
        "contentHints": draft.content_hints,
        "gated": draft.gated,
    }
    if draft.gated or draft.required_ids:
        payload["gatingRule"] = {
            "requiredIds": draft.required_ids,
            "action": draft.unlock_action or "submit-evidence",
        }
    return payload


class LLMCaseActivities(CaseActivities):
    """Narrative, design, content and review activities answered by a chat model.

    Structural stages (normalize, index, rules, clean predicate, package)
    stay deterministic.
    """

    def __init__(self, store: CaseStateStore, *, settings: RuntimeSettings) -> None:
        super().__init__(store)
        self.settings = settings
        self._narrator: StructuredOutputAdapter[NarrativeDraft] = self._adapter(NarrativeDraft)
        self._designer: StructuredOutputAdapter[DesignDraft] = self._adapter(DesignDraft)
        self._reviewer: StructuredOutputAdapter[ReviewDraft] = self._adapter(ReviewDraft)

    def _adapter(self, schema: type[BaseModel]) -> StructuredOutputAdapter[Any]:
        return structured_model_for(self.settings, schema)

    def plan(self, request: CaseGenerationRequest, case_id: str) -> StageArtifact:
        prompt = (
            "You plan investigative mystery cases. Return a NarrativeDraft: a title, a one-paragraph premise "
            "as summary, and sections for victim, suspects, culprit and motive. "
            f"Request={request.model_dump_json(by_alias=True)}"
        )
        draft = self._narrator.invoke(prompt)
        return StageArtifact(case_id=case_id, stage="plan", content=draft.model_dump(mode="json"))

    def expand(self, plan: StageArtifact, case_id: str) -> StageArtifact:
        prompt = (
            "Expand this case plan into a detailed timeline, alibis and an evidence list. "
            "Return a NarrativeDraft with one section per topic. "
            f"Plan={json.dumps(plan.content)}"
        )
        draft = self._narrator.invoke(prompt)
        return StageArtifact(case_id=case_id, stage="expand", content=draft.model_dump(mode="json"), metadata={"source": "plan"})

    def design(
        self,
        plan: StageArtifact,
        expanded: StageArtifact,
        case_id: str,
        difficulty: str | None = None,
    ) -> DesignResult:
        prompt = (
            "Design the document and media artifacts a player receives. Use stable ids (DOC-*, EVD-*). "
            "Gated artifacts list the ids that unlock them and an unlock_action of submit-evidence, "
            "role-required or manual-unlock. "
            f"Difficulty={difficulty or 'Detective'}. Plan={json.dumps(plan.content)} Expanded={json.dumps(expanded.content)}"
        )
        draft = self._designer.invoke(prompt)
        return parse_design_output(
            {
                "documentSpecs": [_spec_payload(spec) for spec in draft.document_specs],
                "mediaSpecs": [_spec_payload(spec) for spec in draft.media_specs],
            }
        )

    def generate_document(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact:
        prompt = (
            f"Write the in-world document {spec.id} ({spec.type}) titled {spec.title!r}. "
            f"Hints={spec.content_hints}. Timezone={context.timezone}. "
            f"Case={json.dumps(context.expanded.content)}"
        )
        draft = self._narrator.invoke(prompt)
        content = draft.model_dump(mode="json")
        content["references"] = spec.gating_rule.required_ids if spec.gating_rule else []
        return self._artifact(spec, content)

    def generate_media(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact:
        prompt = (
            f"Describe the image {spec.id} titled {spec.title!r} as an image-generation prompt (summary) "
            f"and a caption section. Hints={spec.content_hints}. Case={json.dumps(context.expanded.content)}"
        )
        draft = self._narrator.invoke(prompt)
        content = {"title": spec.title, "type": spec.type, "prompt": draft.summary, "caption": draft.title}
        content["references"] = spec.gating_rule.required_ids if spec.gating_rule else []
        return self._artifact(spec, content)

    def review_global(self, validated: ValidatedBundle, case_id: str, iteration: int) -> ReviewAnalysis:
        analysis = super().review_global(validated, case_id, iteration)
        prompt = (
            "Red-team this case bundle for contradictions, unsolvable gating and timeline errors. "
            "Severity is one of low, medium, high, critical. "
            f"Bundle={validated.model_dump_json(by_alias=True)}"
        )
        return self._merge(analysis, self._reviewer.invoke(prompt))

    def review_focused(
        self,
        validated: ValidatedBundle,
        case_id: str,
        iteration: int,
        focus_area: str,
        global_analysis: ReviewAnalysis,
    ) -> ReviewAnalysis:
        analysis = super().review_focused(validated, case_id, iteration, focus_area, global_analysis)
        prompt = (
            f"Review only the {focus_area!r} aspect of this case bundle in depth. "
            f"Global analysis={global_analysis.model_dump_json(by_alias=True)} "
            f"Bundle={validated.model_dump_json(by_alias=True)}"
        )
        return self._merge(analysis, self._reviewer.invoke(prompt), area=focus_area)

    @staticmethod
    def _merge(analysis: ReviewAnalysis, draft: ReviewDraft, *, area: str | None = None) -> ReviewAnalysis:
        issues = list(analysis.issues)
        prefix = f"{area}-" if area else ""
        for position, issue in enumerate(draft.issues, start=1):
            severity = issue.severity.lower() if issue.severity.lower() in {"low", "medium", "high", "critical"} else "medium"
            issues.append(
                ReviewIssue(
                    id=f"LLM-{analysis.scope.upper()}-{analysis.iteration}-{prefix}{position}",
                    area=area or issue.area,
                    severity=severity,
                    description=issue.description,
                    target_ids=issue.target_ids,
                )
            )
        focus_areas = list(dict.fromkeys([*analysis.focus_areas, *(a.lower() for a in draft.focus_areas)]))
        return analysis.model_copy(
            update={
                "issues": issues,
                "focus_areas": focus_areas,
                "requires_detailed_analysis": analysis.requires_detailed_analysis or draft.requires_detailed_analysis,
                "summary": draft.summary or analysis.summary,
            }
        )

    def repair(
        self,
        analyses: list[ReviewAnalysis],
        current: ValidatedBundle,
        case_id: str,
        iteration: int,
    ) -> ValidatedBundle:
        repaired = super().repair(analyses, current, case_id, iteration)
        content_issues = [
            issue
            for analysis in analyses
            for issue in analysis.blocking_issues
            if issue.id.startswith("LLM-")
        ]
        if not content_issues:
            return repaired
        bundle = repaired.bundle
        targets = {target for issue in content_issues for target in issue.target_ids}
        items = []
        for item in bundle.items():
            if item.id not in targets:
                items.append(item)
                continue
            notes = "; ".join(issue.description for issue in content_issues if item.id in issue.target_ids)
            prompt = (
                f"Rewrite artifact {item.id} to resolve these review findings: {notes}. "
                f"Current content={json.dumps(item.content)}"
            )
            draft = self._narrator.invoke(prompt)
            items.append(item.model_copy(update={"content": {**item.content, **draft.model_dump(mode="json")}}))
        documents = [item for item in items if item.kind == "document"]
        media = [item for item in items if item.kind == "media"]
        rebuilt = bundle.model_copy(update={"documents": documents, "media": media})
        return validate_bundle(build_index(rebuilt))
