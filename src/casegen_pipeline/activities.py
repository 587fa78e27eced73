from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel

from .errors import ActivityFailure, DesignParseFailure, PipelineCancelled, StructuredOutputError
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
    StageArtifact,
    ValidatedBundle,
)
from .state_store import CaseStateStore

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

ACTIVITY_NAMES: tuple[str, ...] = (
    "plan",
    "expand",
    "design",
    "generate_document",
    "generate_media",
    "render_document",
    "render_media",
    "normalize",
    "build_index",
    "validate_rules",
    "review_global",
    "review_focused",
    "is_clean",
    "repair",
    "package",
)


class CancellationToken:
    """Cooperative cancellation flag shared by the orchestrator, the fan-out and the executor."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled(self.reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class ActivityBackend(Protocol):
    """Every named unit of work the pipeline consumes.

    Each method is a pure function of its (serializable) arguments plus
    external generation/rendering calls; none may depend on pipeline position.
    """

    def plan(self, request: CaseGenerationRequest, case_id: str) -> StageArtifact: ...

    def expand(self, plan: StageArtifact, case_id: str) -> StageArtifact: ...

    def design(
        self,
        plan: StageArtifact,
        expanded: StageArtifact,
        case_id: str,
        difficulty: str | None = None,
    ) -> DesignResult: ...

    def generate_document(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact: ...

    def generate_media(self, spec: GenerationSpec, context: GenerationContext) -> GeneratedArtifact: ...

    def render_document(self, spec_id: str, artifact: GeneratedArtifact, case_id: str) -> str: ...

    def render_media(self, spec: GenerationSpec, case_id: str) -> str: ...

    def normalize(
        self,
        case_id: str,
        specs: list[GenerationSpec],
        artifacts: list[GeneratedArtifact],
        timezone: str,
    ) -> NormalizedBundle: ...

    def build_index(self, bundle: NormalizedBundle, case_id: str) -> IndexedBundle: ...

    def validate_rules(self, indexed: IndexedBundle, case_id: str) -> ValidatedBundle: ...

    def review_global(self, validated: ValidatedBundle, case_id: str, iteration: int) -> ReviewAnalysis: ...

    def review_focused(
        self,
        validated: ValidatedBundle,
        case_id: str,
        iteration: int,
        focus_area: str,
        global_analysis: ReviewAnalysis,
    ) -> ReviewAnalysis: ...

    def is_clean(self, analyses: list[ReviewAnalysis], case_id: str, iteration: int) -> CleanVerdict: ...

    def repair(
        self,
        analyses: list[ReviewAnalysis],
        current: ValidatedBundle,
        case_id: str,
        iteration: int,
    ) -> ValidatedBundle: ...

    def package(self, final: ValidatedBundle, case_id: str, refinement: RefinementSummary) -> Manifest: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Per-activity retry with exponential backoff: ``backoff * 2 ** (attempt - 1)``."""

    max_retries: int = 2
    backoff_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


_NO_RETRY: tuple[type[BaseException], ...] = (DesignParseFailure, PipelineCancelled)


def _is_empty_output(result: Any) -> bool:
    if result is None:
        return True
    if isinstance(result, str):
        return not result.strip()
    if isinstance(result, StageArtifact):
        return not result.content
    if isinstance(result, GeneratedArtifact):
        return not result.raw_content
    return False


class ActivityExecutor:
    """Runs one named activity on the backend with retry, output validation and cancellation.

    Retries are invisible to the orchestrator: a call either returns the
    activity's output or raises ``ActivityFailure`` once the retry budget is
    spent.
    """

    def __init__(
        self,
        backend: ActivityBackend,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.backend = backend
        self.policy = policy if policy is not None else RetryPolicy()
        self._sleep = sleep

    def execute(
        self,
        activity: str,
        *args: Any,
        cancel_token: CancellationToken | None = None,
        **kwargs: Any,
    ) -> Any:
        """Invoke ``backend.<activity>(*args, **kwargs)``.

        Raises:
            ActivityFailure: If every attempt failed or produced empty output.
            DesignParseFailure: Immediately, without retry.
            ActivityFailure: Also after the first attempt when a structured-output
                error is marked not retryable.
            PipelineCancelled: If cancellation was requested before an attempt.
        """
        if activity not in ACTIVITY_NAMES:
            raise ValueError(f"Unknown activity: {activity}")
        handler = getattr(self.backend, activity)
        attempts = self.policy.max_retries + 1
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                result = handler(*args, **kwargs)
            except _NO_RETRY:
                raise
            except Exception as exc:  # noqa: BLE001 - any collaborator error counts as an attempt failure.
                last_error = exc
                logger.warning("Activity %s attempt %d/%d failed: %s", activity, attempt, attempts, exc)
                if isinstance(exc, StructuredOutputError) and not exc.retryable:
                    break
            else:
                if not _is_empty_output(result):
                    return result
                last_error = ValueError("activity returned empty output")
                logger.warning("Activity %s attempt %d/%d returned empty output", activity, attempt, attempts)

            if attempt < attempts:
                self._backoff(attempt, cancel_token)

        if isinstance(last_error, ActivityFailure):
            raise last_error
        raise ActivityFailure(activity, str(last_error)) from last_error

    def _backoff(self, attempt: int, cancel_token: CancellationToken | None) -> None:
        delay = self.policy.delay_for(attempt)
        if delay <= 0:
            return
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel_token is not None:
            cancel_token.wait(delay)
        else:
            time.sleep(delay)


def _dump_result(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    return result


def _load_result(result_type: type[Any], payload: Any) -> Any:
    if isinstance(result_type, type) and issubclass(result_type, BaseModel):
        return result_type.model_validate(payload)
    return result_type(payload)


class StepRunner:
    """Checkpoint-consulting wrapper around the executor for one case.

    A step whose result is already recorded is never re-invoked; the recorded
    result is rehydrated instead. This makes every stage safe to re-execute
    after an interruption.
    """

    def __init__(
        self,
        executor: ActivityExecutor,
        store: CaseStateStore,
        case_id: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.case_id = case_id
        self.cancel_token = cancel_token

    def run(self, step_id: str, result_type: type[ResultT], activity: str, *args: Any, **kwargs: Any) -> ResultT:
        recorded = self.store.get_step_result(self.case_id, step_id)
        if recorded is not None:
            logger.debug("Replaying recorded result for %s/%s", self.case_id, step_id)
            return _load_result(result_type, recorded)
        result = self.executor.execute(activity, *args, cancel_token=self.cancel_token, **kwargs)
        stored = self.store.record_step_result(self.case_id, step_id, _dump_result(result))
        return _load_result(result_type, stored)

    def recorded(self, step_id: str, result_type: type[ResultT]) -> ResultT | None:
        payload = self.store.get_step_result(self.case_id, step_id)
        return None if payload is None else _load_result(result_type, payload)

    def record(self, step_id: str, result: Any) -> Any:
        return self.store.record_step_result(self.case_id, step_id, _dump_result(result))
