from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Callable

from casegen_pipeline.activities import ACTIVITY_NAMES
from casegen_pipeline.models import GatingRule, NormalizedBundle, NormalizedItem, UnlockAction, ValidatedBundle
from casegen_pipeline.normalizer import build_index, refresh_gating_graph, validate_bundle
from casegen_pipeline.settings import RuntimeSettings

FailureHook = Callable[..., BaseException | None]


class RecordingBackend:
    """Wraps a real backend, counts activity calls and injects failures per activity."""

    def __init__(self, inner: Any, *, failures: dict[str, FailureHook] | None = None) -> None:
        self.inner = inner
        self.calls: Counter[str] = Counter()
        self.failures = dict(failures or {})
        self._lock = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.inner, name)
        if name not in ACTIVITY_NAMES:
            return target

        def call(*args: Any, **kwargs: Any) -> Any:
            with self._lock:
                self.calls[name] += 1
            hook = self.failures.get(name)
            if hook is not None:
                error = hook(*args, **kwargs)
                if error is not None:
                    raise error
            return target(*args, **kwargs)

        return call


def make_settings(tmp_path: Any, **overrides: Any) -> RuntimeSettings:
    values: dict[str, Any] = {
        "state_store_root": str(tmp_path / "state_store"),
        "activity_max_retries": 0,
        "max_fanout_workers": 4,
    }
    values.update(overrides)
    return RuntimeSettings(**values).normalized()


def item(
    item_id: str,
    *,
    kind: str = "document",
    requires: list[str] | None = None,
    action: UnlockAction = UnlockAction.SUBMIT_EVIDENCE,
    gated: bool | None = None,
) -> NormalizedItem:
    is_gated = gated if gated is not None else requires is not None
    return NormalizedItem(
        id=item_id,
        kind=kind,
        title=f"Artifact {item_id}",
        gated=is_gated,
        gating_rule=GatingRule(required_ids=requires or [], action=action) if is_gated or requires is not None else None,
        content={"title": item_id},
    )


def validated_bundle(items: list[NormalizedItem], *, case_id: str = "CASE-1", timezone: str = "UTC") -> ValidatedBundle:
    bundle = NormalizedBundle(
        case_id=case_id,
        documents=[entry for entry in items if entry.kind == "document"],
        media=[entry for entry in items if entry.kind == "media"],
        metadata={"timezone": timezone, "revision": 0},
    )
    return validate_bundle(build_index(refresh_gating_graph(bundle)))
