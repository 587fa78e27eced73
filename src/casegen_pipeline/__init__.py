from importlib.metadata import PackageNotFoundError, version

from .activities import ActivityBackend, ActivityExecutor, CancellationToken, RetryPolicy, StepRunner
from .canonical import content_hash, to_canonical_json
from .errors import (
    ActivityFailure,
    BadRequestError,
    CaseGenError,
    CaseNotFoundError,
    DesignParseFailure,
    JoinFailure,
    PipelineCancelled,
    StaleStatusWriteError,
    StructuredOutputError,
)
from .fanout import FanOutCoordinator
from .gating import build_gating_graph, classify_visibility, detect_cycles
from .generation import CaseActivities, LLMCaseActivities, parse_design_output
from .models import (
    CaseGenerationRequest,
    DesignResult,
    GatingGraph,
    GatingRule,
    GeneratedArtifact,
    GenerationSpec,
    Manifest,
    NormalizedBundle,
    NormalizedItem,
    PipelineStage,
    PipelineStatus,
    ReviewAnalysis,
    UnlockAction,
    ValidatedBundle,
    Visibility,
    parse_request,
)
from .orchestrator import CaseOrchestrator, StatusPublisher
from .packaging import verify_manifest
from .refinement import RefinementLoop, RefinementResult, ReviewCache
from .service import CaseGenerationService
from .state_store import CaseStateStore


def get_version() -> str:
    try:
        return version("casegen-pipeline")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ActivityBackend",
    "ActivityExecutor",
    "ActivityFailure",
    "BadRequestError",
    "CancellationToken",
    "CaseActivities",
    "CaseGenError",
    "CaseGenerationRequest",
    "CaseGenerationService",
    "CaseNotFoundError",
    "CaseOrchestrator",
    "CaseStateStore",
    "DesignParseFailure",
    "DesignResult",
    "FanOutCoordinator",
    "GatingGraph",
    "GatingRule",
    "GeneratedArtifact",
    "GenerationSpec",
    "JoinFailure",
    "LLMCaseActivities",
    "Manifest",
    "NormalizedBundle",
    "NormalizedItem",
    "PipelineCancelled",
    "PipelineStage",
    "PipelineStatus",
    "RefinementLoop",
    "RefinementResult",
    "RetryPolicy",
    "ReviewAnalysis",
    "ReviewCache",
    "StaleStatusWriteError",
    "StatusPublisher",
    "StructuredOutputError",
    "StepRunner",
    "UnlockAction",
    "ValidatedBundle",
    "Visibility",
    "build_gating_graph",
    "classify_visibility",
    "content_hash",
    "detect_cycles",
    "get_version",
    "parse_design_output",
    "parse_request",
    "to_canonical_json",
    "verify_manifest",
]
