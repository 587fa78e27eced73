from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import is_valid_timezone

_DEFAULT_FOCUS_AREAS: tuple[str, ...] = ("timeline", "evidence", "gating", "consistency")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    checkpoint_db: str = "checkpoints/pipeline.sqlite"
    default_request_path: str = "request.json"
    max_refinement_iterations: int = 3
    max_fanout_workers: int = 8
    max_concurrent_cases: int = 4
    activity_max_retries: int = 2
    activity_retry_backoff_ms: int = 0
    model_name: str = "gpt-4o-mini"
    use_llm: bool = False
    llm_temperature: float = 0.2
    llm_timeout_seconds: int = 120
    llm_client_retries: int = 2
    review_cache_max_entries: int = 512
    review_cache_ttl_seconds: int = 3600
    recursion_limit: int = 200
    default_timezone: str = "America/Sao_Paulo"
    default_focus_areas: tuple[str, ...] = _DEFAULT_FOCUS_AREAS

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("CASEGEN_STATE_STORE_ROOT", "state_store"),
            checkpoint_db=os.getenv("CASEGEN_CHECKPOINT_DB", "checkpoints/pipeline.sqlite"),
            default_request_path=os.getenv("CASEGEN_DEFAULT_REQUEST_PATH", "request.json"),
            max_refinement_iterations=_get_env_int("CASEGEN_MAX_REFINEMENT_ITERATIONS", default=3, minimum=0, maximum=20),
            max_fanout_workers=_get_env_int("CASEGEN_MAX_FANOUT_WORKERS", default=8, minimum=1, maximum=256),
            max_concurrent_cases=_get_env_int("CASEGEN_MAX_CONCURRENT_CASES", default=4, minimum=1, maximum=64),
            activity_max_retries=_get_env_int("CASEGEN_ACTIVITY_MAX_RETRIES", default=2, minimum=0, maximum=10),
            activity_retry_backoff_ms=_get_env_int("CASEGEN_ACTIVITY_RETRY_BACKOFF_MS", default=0, minimum=0, maximum=60_000),
            model_name=os.getenv("CASEGEN_MODEL_NAME", "gpt-4o-mini"),
            use_llm=_get_env_bool("CASEGEN_USE_LLM", default=False),
            llm_temperature=_get_env_float("CASEGEN_LLM_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            llm_timeout_seconds=_get_env_int("CASEGEN_LLM_TIMEOUT_SECONDS", default=120, minimum=1, maximum=3600),
            llm_client_retries=_get_env_int("CASEGEN_LLM_CLIENT_RETRIES", default=2, minimum=0, maximum=10),
            review_cache_max_entries=_get_env_int("CASEGEN_REVIEW_CACHE_MAX_ENTRIES", default=512, minimum=1, maximum=100_000),
            review_cache_ttl_seconds=_get_env_int("CASEGEN_REVIEW_CACHE_TTL_SECONDS", default=3600, minimum=1, maximum=604_800),
            recursion_limit=_get_env_int("CASEGEN_RECURSION_LIMIT", default=200, minimum=25),
            default_timezone=os.getenv("CASEGEN_DEFAULT_TIMEZONE", "America/Sao_Paulo"),
            default_focus_areas=_get_env_list("CASEGEN_DEFAULT_FOCUS_AREAS", default=_DEFAULT_FOCUS_AREAS),
        ).normalized()

    @property
    def activity_retry_backoff_seconds(self) -> float:
        return self.activity_retry_backoff_ms / 1000.0

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("CASEGEN_MODEL_NAME must be non-empty")

        if not self.state_store_root.strip():
            raise ValueError("CASEGEN_STATE_STORE_ROOT must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("CASEGEN_CHECKPOINT_DB must be non-empty")
        if not self.default_request_path.strip():
            raise ValueError("CASEGEN_DEFAULT_REQUEST_PATH must be non-empty")

        timezone = self.default_timezone.strip()
        if not is_valid_timezone(timezone):
            raise ValueError(f"CASEGEN_DEFAULT_TIMEZONE must be UTC or an IANA Area/City name, got: {timezone!r}")

        focus_areas = tuple(area.strip().lower() for area in self.default_focus_areas if area.strip())
        if not focus_areas:
            raise ValueError("CASEGEN_DEFAULT_FOCUS_AREAS must name at least one area")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            checkpoint_db=self.checkpoint_db,
            default_request_path=self.default_request_path,
            max_refinement_iterations=self.max_refinement_iterations,
            max_fanout_workers=self.max_fanout_workers,
            max_concurrent_cases=self.max_concurrent_cases,
            activity_max_retries=self.activity_max_retries,
            activity_retry_backoff_ms=self.activity_retry_backoff_ms,
            model_name=model_name,
            use_llm=self.use_llm,
            llm_temperature=self.llm_temperature,
            llm_timeout_seconds=self.llm_timeout_seconds,
            llm_client_retries=self.llm_client_retries,
            review_cache_max_entries=self.review_cache_max_entries,
            review_cache_ttl_seconds=self.review_cache_ttl_seconds,
            recursion_limit=self.recursion_limit,
            default_timezone=timezone,
            default_focus_areas=tuple(dict.fromkeys(focus_areas)),
        )

    def default_request_file(self, repo_root: Path) -> Path:
        path = Path(self.default_request_path)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, store_root: Path) -> Path:
        """Checkpoint database path; relative paths live under the state store root."""
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else store_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())
