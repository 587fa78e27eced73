from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import BadRequestError


def utc_now() -> datetime:
    return datetime.now(UTC)


def is_valid_timezone(value: str | None) -> bool:
    """True for ``UTC`` or an ``Area/City`` name the IANA database knows."""
    if not value:
        return False
    if value == "UTC":
        return True
    if "/" not in value:
        return False
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


class CaseModel(BaseModel):
    """Base for every record that crosses an activity or storage boundary.

    Fields are snake_case in Python and camelCase on the wire; both spellings
    are accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class CaseGenerationRequest(CaseModel):
    """Start-generation payload. Unknown legacy fields are preserved as extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    timezone: str
    title: str | None = None
    location: str | None = None
    difficulty: str | None = None
    target_duration_minutes: int = Field(default=60, ge=5, le=600)
    generate_images: bool = True
    constraints: list[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_timezone(value):
            raise ValueError(f"timezone must be UTC or an IANA Area/City name, got: {value!r}")
        return value

    @field_validator("difficulty")
    @classmethod
    def _strip_difficulty(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


def parse_request(payload: dict[str, Any]) -> CaseGenerationRequest:
    """Validate a submission payload.

    Raises:
        BadRequestError: If the payload is not an object or fails validation.
    """
    if not isinstance(payload, dict):
        raise BadRequestError(f"request body must be a JSON object, got {type(payload).__name__}")
    try:
        return CaseGenerationRequest.model_validate(payload)
    except ValidationError as exc:
        raise BadRequestError(f"invalid generation request: {exc}") from exc


# ---------------------------------------------------------------------------
# Pipeline status
# ---------------------------------------------------------------------------

class PipelineStage(str, Enum):
    CREATED = "Created"
    PLANNING = "Planning"
    EXPANDING = "Expanding"
    DESIGNING = "Designing"
    GENERATING_CONTENT = "GeneratingContent"
    NORMALIZING = "Normalizing"
    INDEXING = "Indexing"
    VALIDATING_RULES = "ValidatingRules"
    REFINING = "Refining"
    PACKAGING = "Packaging"
    COMPLETED = "Completed"
    FAILED = "Failed"


STAGE_PROGRESS: dict[PipelineStage, float] = {
    PipelineStage.CREATED: 0.0,
    PipelineStage.PLANNING: 0.1,
    PipelineStage.EXPANDING: 0.2,
    PipelineStage.DESIGNING: 0.3,
    PipelineStage.GENERATING_CONTENT: 0.45,
    PipelineStage.NORMALIZING: 0.6,
    PipelineStage.INDEXING: 0.7,
    PipelineStage.VALIDATING_RULES: 0.8,
    PipelineStage.REFINING: 0.9,
    PipelineStage.PACKAGING: 0.95,
    PipelineStage.COMPLETED: 1.0,
}

TERMINAL_STAGES = frozenset({PipelineStage.COMPLETED, PipelineStage.FAILED})


class PipelineStatus(CaseModel):
    case_id: str
    stage: PipelineStage = PipelineStage.CREATED
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    completed_stages: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)
    error: str | None = None
    output: dict[str, Any] | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


# ---------------------------------------------------------------------------
# Design output
# ---------------------------------------------------------------------------

class UnlockAction(str, Enum):
    SUBMIT_EVIDENCE = "submit-evidence"
    ROLE_REQUIRED = "role-required"
    MANUAL_UNLOCK = "manual-unlock"


SpecKind = Literal["document", "media"]


class GatingRule(CaseModel):
    required_ids: list[str] = Field(default_factory=list)
    action: UnlockAction = UnlockAction.SUBMIT_EVIDENCE
    notes: str | None = None


class GenerationSpec(CaseModel):
    id: str = Field(min_length=1)
    kind: SpecKind
    title: str
    type: str = "generic"
    content_hints: list[str] = Field(default_factory=list)
    gated: bool = False
    gating_rule: GatingRule | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DesignResult(CaseModel):
    document_specs: list[GenerationSpec] = Field(default_factory=list)
    media_specs: list[GenerationSpec] = Field(default_factory=list)

    def all_specs(self) -> list[GenerationSpec]:
        return [*self.document_specs, *self.media_specs]


class StageArtifact(CaseModel):
    """Plan or expanded artifact: opaque content plus forward-compatible metadata."""

    case_id: str
    stage: str
    content: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationContext(CaseModel):
    """Flat context handed to every fan-out task."""

    case_id: str
    plan: StageArtifact
    expanded: StageArtifact
    difficulty: str | None = None
    timezone: str = "UTC"
    generate_images: bool = True


class GeneratedArtifact(CaseModel):
    spec_id: str
    kind: SpecKind
    raw_content: dict[str, Any]
    rendered_ref: str | None = None
    size_bytes: int | None = None
    hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Normalized bundle and gating graph
# ---------------------------------------------------------------------------

class NormalizedItem(CaseModel):
    id: str
    kind: SpecKind
    title: str
    type: str = "generic"
    gated: bool = False
    gating_rule: GatingRule | None = None
    content: dict[str, Any] = Field(default_factory=dict)
    rendered_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def required_ids(self) -> list[str]:
        if self.gating_rule is None:
            return []
        return list(self.gating_rule.required_ids)


class GatingNode(CaseModel):
    id: str
    type: SpecKind
    gated: bool
    unlock_action: UnlockAction | None = None
    required_ids: list[str] = Field(default_factory=list)


class GatingEdge(CaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    relationship: Literal["requires", "unlocks"]


class GatingGraph(CaseModel):
    nodes: list[GatingNode] = Field(default_factory=list)
    edges: list[GatingEdge] = Field(default_factory=list)
    has_cycles: bool = False
    cycle_descriptions: list[str] = Field(default_factory=list)


class NormalizedBundle(CaseModel):
    case_id: str
    version: str = "v1"
    documents: list[NormalizedItem] = Field(default_factory=list)
    media: list[NormalizedItem] = Field(default_factory=list)
    gating_graph: GatingGraph = Field(default_factory=GatingGraph)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def items(self) -> list[NormalizedItem]:
        return [*self.documents, *self.media]


class IndexEntry(CaseModel):
    id: str
    kind: SpecKind
    title: str
    type: str
    references: list[str] = Field(default_factory=list)


class IndexedBundle(CaseModel):
    bundle: NormalizedBundle
    index: list[IndexEntry] = Field(default_factory=list)


RuleStatus = Literal["PASS", "WARN", "FAIL"]


class RuleResult(CaseModel):
    rule: str
    status: RuleStatus
    description: str
    details: list[str] = Field(default_factory=list)


class ValidatedBundle(CaseModel):
    bundle: NormalizedBundle
    index: list[IndexEntry] = Field(default_factory=list)
    rule_results: list[RuleResult] = Field(default_factory=list)

    @property
    def failed_rules(self) -> list[RuleResult]:
        return [result for result in self.rule_results if result.status == "FAIL"]


# ---------------------------------------------------------------------------
# Review / refinement
# ---------------------------------------------------------------------------

Severity = Literal["low", "medium", "high", "critical"]
BLOCKING_SEVERITIES: frozenset[str] = frozenset({"high", "critical"})


class ReviewIssue(CaseModel):
    id: str
    area: str
    severity: Severity
    description: str
    target_ids: list[str] = Field(default_factory=list)


class ReviewAnalysis(CaseModel):
    case_id: str
    scope: Literal["global", "focused"]
    iteration: int = 0
    focus_area: str | None = None
    issues: list[ReviewIssue] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    requires_detailed_analysis: bool = False
    summary: str = ""

    @property
    def blocking_issues(self) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity in BLOCKING_SEVERITIES]


class CleanVerdict(CaseModel):
    case_id: str
    iteration: int
    clean: bool
    blocking_issue_ids: list[str] = Field(default_factory=list)


class RefinementSummary(CaseModel):
    clean: bool
    capped: bool
    iterations: int


# ---------------------------------------------------------------------------
# Package output
# ---------------------------------------------------------------------------

class Visibility(CaseModel):
    always_visible: list[str] = Field(default_factory=list)
    gated_visible: list[str] = Field(default_factory=list)
    hidden_until_unlocked: list[str] = Field(default_factory=list)


class ManifestEntry(CaseModel):
    id: str
    relative_path: str
    type: str
    gated: bool
    hash: str
    size_bytes: int


class Manifest(CaseModel):
    case_id: str
    version: str
    generated_at: datetime = Field(default_factory=utc_now)
    entries: list[ManifestEntry] = Field(default_factory=list)
    visibility: Visibility = Field(default_factory=Visibility)
    file_hashes: dict[str, str] = Field(default_factory=dict)
    refinement: RefinementSummary
    bundle_paths: list[str] = Field(default_factory=lambda: ["documents/", "media/"])
