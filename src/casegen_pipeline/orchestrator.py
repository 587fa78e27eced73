from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph

from .activities import ActivityBackend, ActivityExecutor, CancellationToken, RetryPolicy, StepRunner
from .errors import PipelineCancelled, StaleStatusWriteError
from .fanout import FanOutCoordinator
from .generation import CaseActivities, LLMCaseActivities
from .models import (
    STAGE_PROGRESS,
    CaseGenerationRequest,
    DesignResult,
    GeneratedArtifact,
    GenerationContext,
    GenerationSpec,
    IndexedBundle,
    Manifest,
    NormalizedBundle,
    PipelineStage,
    PipelineStatus,
    RefinementSummary,
    StageArtifact,
    ValidatedBundle,
    parse_request,
    utc_now,
)
from .refinement import RefinementLoop, ReviewCache
from .settings import RuntimeSettings
from .state_store import CaseStateStore

logger = logging.getLogger(__name__)

_STAGE_ORDER: list[PipelineStage] = list(STAGE_PROGRESS)
_CAS_ATTEMPTS = 5


def new_case_id() -> str:
    return f"CASE-{utc_now():%Y%m%d}-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Status publisher
# ---------------------------------------------------------------------------

class StatusPublisher:
    """Sole writer of ``PipelineStatus``.

    Every write is a compare-and-set on the stored version. Progress never
    decreases, ``completed_stages`` only grows, the stage never moves backwards
    and a terminal status is never overwritten. A duplicate or resumed
    orchestrator therefore cannot clobber a later status with a stale one.
    """

    def __init__(self, store: CaseStateStore) -> None:
        self.store = store

    def create(self, case_id: str) -> PipelineStatus:
        return self.store.create_status(PipelineStatus(case_id=case_id))

    def enter(self, case_id: str, stage: PipelineStage) -> PipelineStatus:
        return self._update(case_id, stage=stage)

    def complete_stage(self, case_id: str, stage: PipelineStage) -> PipelineStatus:
        return self._update(case_id, stage=stage, completed=stage)

    def complete(self, case_id: str, output: dict[str, Any]) -> PipelineStatus:
        return self._update(case_id, stage=PipelineStage.COMPLETED, output=output)

    def fail(self, case_id: str, error: str) -> PipelineStatus:
        return self._update(case_id, stage=PipelineStage.FAILED, error=error)

    def _update(
        self,
        case_id: str,
        *,
        stage: PipelineStage,
        completed: PipelineStage | None = None,
        error: str | None = None,
        output: dict[str, Any] | None = None,
    ) -> PipelineStatus:
        for _ in range(_CAS_ATTEMPTS):
            current = self.store.read_status(case_id)
            if current.is_terminal:
                logger.debug("Ignoring %s update for terminal case %s", stage.value, case_id)
                return current
            updated = self._merge(current, stage=stage, completed=completed, error=error, output=output)
            try:
                return self.store.write_status(updated, expected_version=current.version)
            except StaleStatusWriteError:
                logger.debug("Status write for %s lost a race; retrying", case_id)
        raise StaleStatusWriteError(case_id, current.version, self.store.read_status(case_id).version)

    @staticmethod
    def _merge(
        current: PipelineStatus,
        *,
        stage: PipelineStage,
        completed: PipelineStage | None,
        error: str | None,
        output: dict[str, Any] | None,
    ) -> PipelineStatus:
        if stage == PipelineStage.FAILED:
            # Progress and completed stages freeze at their last successful values.
            return current.model_copy(update={"stage": stage, "error": error, "last_updated_at": utc_now()})

        if _STAGE_ORDER.index(stage) < _STAGE_ORDER.index(current.stage):
            stage = current.stage
        completed_stages = list(current.completed_stages)
        if completed is not None and completed.value not in completed_stages:
            completed_stages.append(completed.value)
        return current.model_copy(
            update={
                "stage": stage,
                "progress": max(current.progress, STAGE_PROGRESS[stage]),
                "completed_stages": completed_stages,
                "output": output if output is not None else current.output,
                "last_updated_at": utc_now(),
            }
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineState(TypedDict, total=False):
    case_id: str
    request: dict[str, Any]
    plan: dict[str, Any]
    expanded: dict[str, Any]
    design: dict[str, Any]
    artifacts: list[dict[str, Any]]
    bundle: dict[str, Any]
    indexed: dict[str, Any]
    validated: dict[str, Any]
    final_bundle: dict[str, Any]
    refinement: dict[str, Any]
    manifest: dict[str, Any]


class CaseOrchestrator:
    """Top-level pipeline: plan -> expand -> design -> generate -> normalize -> index -> validate -> refine -> package.

    The graph is checkpointed per case (``thread_id`` is the case id) and
    every node consults the step-result store before invoking an activity,
    so an interrupted run can be resumed without repeating recorded work.
    Any activity failure is fatal: the case moves to ``Failed`` and nothing
    is packaged.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        state_store_root: str | Path | None = None,
        backend: ActivityBackend | None = None,
        review_cache: ReviewCache | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        root = Path(state_store_root) if state_store_root is not None else Path(self.settings.state_store_root)
        self.store = CaseStateStore(root)
        self.publisher = StatusPublisher(self.store)
        if backend is None:
            backend = (
                LLMCaseActivities(self.store, settings=self.settings)
                if self.settings.use_llm
                else CaseActivities(self.store)
            )
        self.executor = ActivityExecutor(
            backend,
            policy=RetryPolicy(
                max_retries=self.settings.activity_max_retries,
                backoff_seconds=self.settings.activity_retry_backoff_seconds,
            ),
        )
        self.fanout: FanOutCoordinator[GeneratedArtifact] = FanOutCoordinator(
            max_workers=self.settings.max_fanout_workers
        )
        self.review_cache = (
            review_cache
            if review_cache is not None
            else ReviewCache(
                max_entries=self.settings.review_cache_max_entries,
                max_age_seconds=self.settings.review_cache_ttl_seconds,
            )
        )

        checkpoint_path = self.settings.checkpoint_path(self.store.root)
        checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_cases,
            thread_name_prefix="casegen-case",
        )
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._futures: dict[str, Future[PipelineStatus]] = {}

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("expand", self._expand_node)
        graph.add_node("design", self._design_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("normalize", self._normalize_node)
        graph.add_node("build_index", self._index_node)
        graph.add_node("validate_rules", self._validate_node)
        graph.add_node("refine", self._refine_node)
        graph.add_node("package", self._package_node)
        graph.add_node("complete", self._complete_node)

        graph.add_edge(START, "plan")
        graph.add_edge("plan", "expand")
        graph.add_edge("expand", "design")
        graph.add_edge("design", "generate")
        graph.add_edge("generate", "normalize")
        graph.add_edge("normalize", "build_index")
        graph.add_edge("build_index", "validate_rules")
        graph.add_edge("validate_rules", "refine")
        graph.add_edge("refine", "package")
        graph.add_edge("package", "complete")
        graph.add_edge("complete", END)
        return graph

    # -- plumbing -----------------------------------------------------------

    def _token(self, case_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(case_id)
            if token is None:
                token = CancellationToken()
                self._tokens[case_id] = token
            return token

    def _runner(self, case_id: str) -> StepRunner:
        return StepRunner(self.executor, self.store, case_id, cancel_token=self._token(case_id))

    def _enter(self, case_id: str, stage: PipelineStage, tag: str) -> StepRunner:
        self._token(case_id).raise_if_cancelled()
        self.publisher.enter(case_id, stage)
        self.store.log_event(case_id, f"{tag}_START")
        return self._runner(case_id)

    def _leave(self, case_id: str, stage: PipelineStage, tag: str, details: str = "") -> None:
        self.publisher.complete_stage(case_id, stage)
        self.store.log_event(case_id, f"{tag}_COMPLETE", details)

    # -- nodes --------------------------------------------------------------

    def _plan_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.PLANNING, "PLAN")
        request = CaseGenerationRequest.model_validate(state["request"])
        plan = runner.run("plan", StageArtifact, "plan", request, case_id)
        self._leave(case_id, PipelineStage.PLANNING, "PLAN")
        return {"plan": plan.to_record()}

    def _expand_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.EXPANDING, "EXPAND")
        plan = StageArtifact.model_validate(state["plan"])
        expanded = runner.run("expand", StageArtifact, "expand", plan, case_id)
        self._leave(case_id, PipelineStage.EXPANDING, "EXPAND")
        return {"expanded": expanded.to_record()}

    def _design_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.DESIGNING, "DESIGN")
        request = CaseGenerationRequest.model_validate(state["request"])
        design = runner.run(
            "design",
            DesignResult,
            "design",
            StageArtifact.model_validate(state["plan"]),
            StageArtifact.model_validate(state["expanded"]),
            case_id,
            request.difficulty,
        )
        details = f"documents={len(design.document_specs)} media={len(design.media_specs)}"
        self._leave(case_id, PipelineStage.DESIGNING, "DESIGN", details)
        return {"design": design.to_record()}

    def _generate_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.GENERATING_CONTENT, "GENERATE")
        token = self._token(case_id)
        request = CaseGenerationRequest.model_validate(state["request"])
        design = DesignResult.model_validate(state["design"])
        context = GenerationContext(
            case_id=case_id,
            plan=StageArtifact.model_validate(state["plan"]),
            expanded=StageArtifact.model_validate(state["expanded"]),
            difficulty=request.difficulty,
            timezone=request.timezone,
            generate_images=request.generate_images,
        )

        def generate(spec: GenerationSpec) -> GeneratedArtifact:
            step_id = f"generate:{spec.id}"
            recorded = runner.recorded(step_id, GeneratedArtifact)
            if recorded is not None:
                return recorded
            if spec.kind == "document":
                artifact = self.executor.execute("generate_document", spec, context, cancel_token=token)
                rendered = self.executor.execute("render_document", spec.id, artifact, case_id, cancel_token=token)
            else:
                artifact = self.executor.execute("generate_media", spec, context, cancel_token=token)
                rendered = (
                    self.executor.execute("render_media", spec, case_id, cancel_token=token)
                    if context.generate_images
                    else None
                )
            artifact = artifact.model_copy(update={"rendered_ref": rendered})
            return GeneratedArtifact.model_validate(runner.record(step_id, artifact))

        artifacts = self.fanout.run(design.all_specs(), generate, cancel_token=token)
        self._leave(case_id, PipelineStage.GENERATING_CONTENT, "GENERATE", f"artifacts={len(artifacts)}")
        return {"artifacts": [artifact.to_record() for artifact in artifacts]}

    def _normalize_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.NORMALIZING, "NORMALIZE")
        request = CaseGenerationRequest.model_validate(state["request"])
        design = DesignResult.model_validate(state["design"])
        artifacts = [GeneratedArtifact.model_validate(record) for record in state.get("artifacts", [])]
        bundle = runner.run(
            "normalize",
            NormalizedBundle,
            "normalize",
            case_id,
            design.all_specs(),
            artifacts,
            request.timezone,
        )
        self._leave(case_id, PipelineStage.NORMALIZING, "NORMALIZE")
        return {"bundle": bundle.to_record()}

    def _index_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.INDEXING, "INDEX")
        bundle = NormalizedBundle.model_validate(state["bundle"])
        indexed = runner.run("build_index", IndexedBundle, "build_index", bundle, case_id)
        self._leave(case_id, PipelineStage.INDEXING, "INDEX")
        return {"indexed": indexed.to_record()}

    def _validate_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.VALIDATING_RULES, "VALIDATE")
        indexed = IndexedBundle.model_validate(state["indexed"])
        validated = runner.run("validate_rules", ValidatedBundle, "validate_rules", indexed, case_id)
        failed = ",".join(result.rule for result in validated.failed_rules)
        self._leave(case_id, PipelineStage.VALIDATING_RULES, "VALIDATE", f"failed={failed}" if failed else "")
        return {"validated": validated.to_record()}

    def _refine_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.REFINING, "REFINE")
        loop = RefinementLoop(
            runner=runner,
            store=self.store,
            max_iterations=self.settings.max_refinement_iterations,
            default_focus_areas=self.settings.default_focus_areas,
            cache=self.review_cache,
            recursion_limit=self.settings.recursion_limit,
        )
        result = loop.run(ValidatedBundle.model_validate(state["validated"]), case_id)
        summary = result.summary
        self._leave(
            case_id,
            PipelineStage.REFINING,
            "REFINE",
            f"clean={summary.clean} capped={summary.capped} iterations={summary.iterations}",
        )
        return {"final_bundle": result.bundle.to_record(), "refinement": summary.to_record()}

    def _package_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        runner = self._enter(case_id, PipelineStage.PACKAGING, "PACKAGE")
        manifest = runner.run(
            "package",
            Manifest,
            "package",
            ValidatedBundle.model_validate(state["final_bundle"]),
            case_id,
            RefinementSummary.model_validate(state["refinement"]),
        )
        self._leave(case_id, PipelineStage.PACKAGING, "PACKAGE", f"entries={len(manifest.entries)}")
        return {"manifest": manifest.to_record()}

    def _complete_node(self, state: PipelineState) -> dict[str, Any]:
        case_id = state["case_id"]
        self.publisher.complete(case_id, {"manifest": state["manifest"]})
        self.store.log_event(case_id, "WORKFLOW_COMPLETE")
        return {}

    # -- entry points -------------------------------------------------------

    def submit(self, request: CaseGenerationRequest | dict[str, Any]) -> str:
        """Validate and record a new case without running it.

        Raises:
            BadRequestError: If *request* is malformed. No case is created.
        """
        parsed = request if isinstance(request, CaseGenerationRequest) else parse_request(request)
        case_id = new_case_id()
        self.publisher.create(case_id)
        self.store.write_request(case_id, parsed)
        self.store.log_event(case_id, "CASE_CREATED", parsed.title or "")
        return case_id

    def start(self, request: CaseGenerationRequest | dict[str, Any]) -> str:
        """Record a new case and run it on a background worker; returns the case id immediately."""
        case_id = self.submit(request)
        self._launch(case_id)
        return case_id

    def _launch(self, case_id: str) -> None:
        future = self._pool.submit(self._execute, case_id)
        with self._lock:
            self._futures[case_id] = future

    def run(self, case_id: str) -> PipelineStatus:
        """Run (or continue) *case_id* on the calling thread and return its terminal status."""
        return self._execute(case_id)

    def resume(self, case_id: str, *, background: bool = False) -> PipelineStatus:
        """Continue an interrupted case from its last checkpoint.

        Raises:
            CaseNotFoundError: If the case id is unknown.
            ValueError: If the case already reached a terminal stage.
        """
        status = self.store.read_status(case_id)
        if status.is_terminal:
            raise ValueError(f"Case {case_id} already finished with stage {status.stage.value}")
        self.store.log_event(case_id, "WORKFLOW_RESUMED", status.stage.value)
        if background:
            self._launch(case_id)
            return status
        return self._execute(case_id)

    def cancel(self, case_id: str, reason: str = "cancelled by caller") -> bool:
        """Request cooperative cancellation. Returns False if the case is already terminal."""
        status = self.store.read_status(case_id)
        if status.is_terminal:
            return False
        self._token(case_id).cancel(reason)
        self.store.log_event(case_id, "CANCEL_REQUESTED", reason)
        return True

    def get_status(self, case_id: str) -> PipelineStatus:
        return self.store.read_status(case_id)

    def wait(self, case_id: str, timeout: float | None = None) -> PipelineStatus:
        with self._lock:
            future = self._futures.get(case_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.read_status(case_id)

    def close(self) -> None:
        self._pool.shutdown(wait=True)
        self._conn.close()

    def _execute(self, case_id: str) -> PipelineStatus:
        config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": case_id},
        }
        snapshot = self.graph.get_state(config)
        payload: dict[str, Any] | None
        if snapshot.next:
            payload = None
        else:
            payload = {
                "case_id": case_id,
                "request": self.store.read_request(case_id).to_record(),
            }
        try:
            self.graph.invoke(payload, config=config)
        except PipelineCancelled as exc:
            self.store.log_event(case_id, "WORKFLOW_CANCELLED", str(exc))
            return self.publisher.fail(case_id, f"cancelled: {exc}")
        except Exception as exc:  # noqa: BLE001 - run boundary: every failure is recorded on the case.
            logger.exception("Case %s failed", case_id)
            self.store.log_event(case_id, "WORKFLOW_FAILED", str(exc))
            return self.publisher.fail(case_id, str(exc))
        finally:
            with self._lock:
                self._tokens.pop(case_id, None)
            self.review_cache.discard_case(case_id)
            self.review_cache.clear_expired()
        return self.store.read_status(case_id)
