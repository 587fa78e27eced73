from __future__ import annotations

import fcntl
import fnmatch
import hashlib
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Iterator

from pydantic import ValidationError

from .errors import CaseNotFoundError, StaleStatusWriteError
from .models import CaseGenerationRequest, PipelineStatus, ReviewAnalysis, utc_now

logger = logging.getLogger(__name__)

_CASE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_PLAIN_NAME = 120
_NAME_DIGEST_CHARS = 16

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lives next to the data file so ``os.replace`` of the data
    file never disturbs the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* to a temp file in the target directory, fsync, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(data)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _atomic_write_text(path: Path, content: str) -> None:
    _atomic_write_bytes(path, content.encode("utf-8"))


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def is_valid_case_id(case_id: str) -> bool:
    return bool(_CASE_ID_RE.match(case_id or ""))


def safe_file_component(value: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", value).strip("._")
    return cleaned or "item"


def storage_name(value: str) -> str:
    """File name for *value* that no other value maps to.

    Safe, short values are used as they are. Anything else becomes its cleaned
    form plus ``+`` and a digest of the raw value; ``+`` never occurs in a safe
    value, so the two shapes cannot meet.
    """
    cleaned = safe_file_component(value)
    if cleaned == value and len(value) <= _MAX_PLAIN_NAME:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:_NAME_DIGEST_CHARS]
    return f"{cleaned[:_MAX_PLAIN_NAME]}+{digest}"


def _relative_blob_path(name: str) -> PurePosixPath:
    relative = PurePosixPath(name.replace("\\", "/"))
    if relative.is_absolute() or not relative.parts or ".." in relative.parts:
        raise ValueError(f"blob name must be a relative path without '..': {name!r}")
    return relative


@dataclass(frozen=True)
class StoredFile:
    """One match of a ``read_files`` content query."""

    path: str
    size_bytes: int
    data: bytes

    def to_record(self) -> dict[str, Any]:
        try:
            payload: Any = self.data.decode("utf-8")
        except UnicodeDecodeError:
            payload = self.data.hex()
        return {"path": self.path, "sizeBytes": self.size_bytes, "data": payload}


# ---------------------------------------------------------------------------
# CaseStateStore
# ---------------------------------------------------------------------------

class CaseStateStore:
    """Filesystem store keyed by case id.

    Holds the per-case status document (versioned, compare-and-set), the
    step-result checkpoints that make the orchestrator re-executable, the
    review audit trail, a JSON-lines step log, and the blob container the
    packaged case is written into.  Every write is atomic; read-modify-write
    paths are guarded by ``fcntl`` locks so a resumed orchestrator in another
    process cannot interleave with this one.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.cases_dir = self.root / "cases"
        self.blobs_dir = self.root / "blobs"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.cases_dir, self.blobs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # -- paths --------------------------------------------------------------

    def case_dir(self, case_id: str) -> Path:
        if not is_valid_case_id(case_id):
            raise CaseNotFoundError(case_id)
        return self.cases_dir / case_id

    def _status_path(self, case_id: str) -> Path:
        return self.case_dir(case_id) / "status.json"

    def _step_path(self, case_id: str, step_id: str) -> Path:
        return self.case_dir(case_id) / "steps" / f"{storage_name(step_id)}.json"

    def case_exists(self, case_id: str) -> bool:
        return is_valid_case_id(case_id) and self._status_path(case_id).is_file()

    # -- status -------------------------------------------------------------

    def create_status(self, status: PipelineStatus) -> PipelineStatus:
        path = self._status_path(status.case_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Case already exists: {status.case_id}")
            _atomic_write_text(path, status.model_dump_json(by_alias=True, indent=2))
        return status

    def read_status(self, case_id: str) -> PipelineStatus:
        """Return the latest status for *case_id*.

        Raises:
            CaseNotFoundError: If the case id is unknown.
            ValueError: If the stored document is corrupt.
        """
        path = self._status_path(case_id)
        if not path.is_file():
            raise CaseNotFoundError(case_id)
        text = _safe_read_json(path, "PipelineStatus")
        try:
            return PipelineStatus.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"PipelineStatus at {path} is invalid: {exc}") from exc

    def write_status(self, status: PipelineStatus, *, expected_version: int) -> PipelineStatus:
        """Atomically replace the status if the stored version still equals *expected_version*.

        Returns:
            The written status, carrying ``expected_version + 1``.

        Raises:
            CaseNotFoundError: If the case was never created.
            StaleStatusWriteError: If another writer advanced the version first.
        """
        path = self._status_path(status.case_id)
        with _locked_file(path):
            current = self.read_status(status.case_id)
            if current.version != expected_version:
                raise StaleStatusWriteError(status.case_id, expected_version, current.version)
            written = status.model_copy(update={"version": expected_version + 1})
            _atomic_write_text(path, written.model_dump_json(by_alias=True, indent=2))
        return written

    # -- request ------------------------------------------------------------

    def write_request(self, case_id: str, request: CaseGenerationRequest) -> None:
        _atomic_write_text(
            self.case_dir(case_id) / "request.json",
            request.model_dump_json(by_alias=True, indent=2),
        )

    def read_request(self, case_id: str) -> CaseGenerationRequest:
        path = self.case_dir(case_id) / "request.json"
        if not path.is_file():
            raise CaseNotFoundError(case_id)
        text = _safe_read_json(path, "CaseGenerationRequest")
        try:
            return CaseGenerationRequest.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"CaseGenerationRequest at {path} is invalid: {exc}") from exc

    # -- step checkpoints -----------------------------------------------------

    def record_step_result(self, case_id: str, step_id: str, result: Any) -> Any:
        """Record the JSON-serializable result of *step_id*; the first recorded result wins.

        Returns:
            The result that is durably recorded for the step.
        """
        path = self._step_path(case_id, step_id)
        with _locked_file(path):
            if path.is_file():
                existing = self.get_step_result(case_id, step_id)
                if existing is not None:
                    logger.debug("Step %s for %s already recorded; keeping first result", step_id, case_id)
                    return existing
            record = {"stepId": step_id, "recordedAt": utc_now().isoformat(), "result": result}
            _atomic_write_text(path, json.dumps(record, indent=2, sort_keys=True))
        return result

    def get_step_result(self, case_id: str, step_id: str) -> Any | None:
        path = self._step_path(case_id, step_id)
        if not path.is_file():
            return None
        record = json.loads(_safe_read_json(path, f"step result {step_id}"))
        if record.get("stepId") != step_id:
            raise ValueError(f"Step record at {path} belongs to {record.get('stepId')!r}, not {step_id!r}")
        return record.get("result")

    def list_step_ids(self, case_id: str) -> list[str]:
        steps_dir = self.case_dir(case_id) / "steps"
        if not steps_dir.is_dir():
            return []
        step_ids: list[str] = []
        for path in sorted(steps_dir.glob("*.json")):
            record = json.loads(_safe_read_json(path, "step result"))
            step_ids.append(str(record.get("stepId")))
        return step_ids

    # -- review audit -------------------------------------------------------

    def write_analysis(self, case_id: str, analysis: ReviewAnalysis) -> Path:
        name = f"iter-{analysis.iteration:02d}-{analysis.scope}"
        if analysis.focus_area:
            name = f"{name}-{storage_name(analysis.focus_area)}"
        path = self.case_dir(case_id) / "analyses" / f"{name}.json"
        _atomic_write_text(path, analysis.model_dump_json(by_alias=True, indent=2))
        return path

    def list_analyses(self, case_id: str) -> list[ReviewAnalysis]:
        analyses_dir = self.case_dir(case_id) / "analyses"
        if not analyses_dir.is_dir():
            return []
        return [
            ReviewAnalysis.model_validate_json(_safe_read_json(path, "ReviewAnalysis"))
            for path in sorted(analyses_dir.glob("*.json"))
        ]

    # -- step log -----------------------------------------------------------

    def log_event(self, case_id: str, step: str, details: str = "") -> None:
        path = self.case_dir(case_id) / "events.jsonl"
        line = json.dumps(
            {"timestamp": utc_now().isoformat(), "caseId": case_id, "step": step, "details": details},
            sort_keys=True,
        )
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        logger.info("[%s] %s %s", case_id, step, details)

    def read_events(self, case_id: str) -> list[dict[str, Any]]:
        path = self.case_dir(case_id) / "events.jsonl"
        if not path.is_file():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    # -- blob container -----------------------------------------------------

    def save_file(self, container: str, name: str, data: bytes) -> str:
        """Store *data* under ``container/name`` and return its URL."""
        if not is_valid_case_id(container):
            raise ValueError(f"Invalid container name: {container!r}")
        path = self.blobs_dir / container / Path(*_relative_blob_path(name).parts)
        _atomic_write_bytes(path, data)
        return path.resolve().as_uri()

    def read_files(self, case_id: str, pattern: str = "*") -> list[StoredFile]:
        """Return every stored file of *case_id* whose relative path matches the glob *pattern*.

        Raises:
            CaseNotFoundError: If the case has neither a status nor stored content.
        """
        container = self.blobs_dir / case_id if is_valid_case_id(case_id) else None
        if container is None or (not container.is_dir() and not self.case_exists(case_id)):
            raise CaseNotFoundError(case_id)
        if not container.is_dir():
            return []
        matches: list[StoredFile] = []
        for path in sorted(container.rglob("*")):
            if not path.is_file() or path.name.startswith("."):
                continue
            relative = path.relative_to(container).as_posix()
            if fnmatch.fnmatchcase(relative, pattern):
                data = path.read_bytes()
                matches.append(StoredFile(path=relative, size_bytes=len(data), data=data))
        return matches
