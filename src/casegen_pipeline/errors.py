from __future__ import annotations


class CaseGenError(Exception):
    """Base class for pipeline errors."""


class BadRequestError(CaseGenError, ValueError):
    """Submission payload is malformed or missing required fields. No run is created."""


class CaseNotFoundError(CaseGenError, KeyError):
    """Status or content was requested for a case id the store has never seen."""

    def __init__(self, case_id: str) -> None:
        super().__init__(case_id)
        self.case_id = case_id

    def __str__(self) -> str:
        return f"Case not found: {self.case_id}"


class ActivityFailure(CaseGenError, RuntimeError):
    """A stage activity failed definitively. Fatal to the run."""

    def __init__(self, activity: str, message: str) -> None:
        super().__init__(f"{activity}: {message}")
        self.activity = activity
        self.message = message


class DesignParseFailure(ActivityFailure):
    """Design output could not be parsed into a complete, typed spec set."""

    def __init__(self, message: str) -> None:
        super().__init__("design", message)


class JoinFailure(ActivityFailure):
    """First failed task (in start order) of a fan-out; sibling results are discarded."""

    def __init__(self, spec_id: str, cause: BaseException, *, failed_count: int = 1) -> None:
        super().__init__("generate", f"task for spec {spec_id} failed: {cause}")
        self.spec_id = spec_id
        self.cause = cause
        self.failed_count = failed_count


class StructuredOutputError(CaseGenError, RuntimeError):
    """A chat model response could not become the expected draft.

    ``retryable`` is False when another attempt cannot succeed.
    """

    def __init__(self, schema_name: str, message: str, *, retryable: bool) -> None:
        super().__init__(f"{schema_name}: {message}")
        self.schema_name = schema_name
        self.retryable = retryable


class PipelineCancelled(CaseGenError):
    """Cancellation was requested for the run."""


class StaleStatusWriteError(CaseGenError):
    """A status write lost the compare-and-set race on the version number."""

    def __init__(self, case_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Stale status write for {case_id}: expected version {expected_version}, found {actual_version}"
        )
        self.case_id = case_id
        self.expected_version = expected_version
        self.actual_version = actual_version
