from __future__ import annotations

from pathlib import Path

from casegen_pipeline.activities import ActivityExecutor, StepRunner
from casegen_pipeline.generation import CaseActivities
from casegen_pipeline.models import ReviewAnalysis, ReviewIssue, ValidatedBundle
from casegen_pipeline.refinement import RefinementLoop, ReviewCache
from casegen_pipeline.state_store import CaseStateStore

from support import RecordingBackend, item, validated_bundle


class AlwaysDirtyActivities(CaseActivities):
    """Every global review reports a critical timeline contradiction that repair cannot fix."""

    def review_global(self, validated: ValidatedBundle, case_id: str, iteration: int) -> ReviewAnalysis:
        return ReviewAnalysis(
            case_id=case_id,
            scope="global",
            iteration=iteration,
            issues=[
                ReviewIssue(
                    id=f"TIMELINE-{iteration}",
                    area="timeline",
                    severity="critical",
                    description="Suspect is in two places at once",
                    target_ids=["DOC-1"],
                )
            ],
            focus_areas=["timeline"],
            requires_detailed_analysis=True,
        )


def _loop(store: CaseStateStore, backend: RecordingBackend, case_id: str = "CASE-1", **kwargs) -> RefinementLoop:  # noqa: ANN003
    runner = StepRunner(ActivityExecutor(backend), store, case_id)
    return RefinementLoop(runner=runner, store=store, **kwargs)


def test_clean_bundle_finishes_without_repair(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    backend = RecordingBackend(CaseActivities(store))

    result = _loop(store, backend).run(validated_bundle([item("DOC-1"), item("EVD-1", kind="media")]), "CASE-1")

    assert result.clean is True
    assert result.capped is False
    assert result.iterations == 0
    assert backend.calls["repair"] == 0
    # No global focus areas, so every default area gets a focused pass.
    assert backend.calls["review_focused"] == 4
    assert [analysis.scope for analysis in result.analyses] == ["global"] + ["focused"] * 4


def test_persistent_blocking_issue_exits_capped(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    backend = RecordingBackend(AlwaysDirtyActivities(store))

    result = _loop(store, backend, max_iterations=2).run(validated_bundle([item("DOC-1")]), "CASE-1")

    assert result.clean is False
    assert result.capped is True
    assert result.iterations == 2
    assert backend.calls["review_global"] == 3
    assert backend.calls["repair"] == 2
    assert result.summary.capped is True
    # One global and one focused analysis per review cycle, all persisted.
    assert len(store.list_analyses("CASE-1")) == 6


def test_zero_iteration_cap_reviews_once(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    backend = RecordingBackend(AlwaysDirtyActivities(store))

    result = _loop(store, backend, max_iterations=0).run(validated_bundle([item("DOC-1")]), "CASE-1")

    assert result.capped is True
    assert result.iterations == 0
    assert backend.calls["review_global"] == 1
    assert backend.calls["repair"] == 0


def test_gating_cycle_is_repaired_in_one_iteration(tmp_path: Path) -> None:
    store = CaseStateStore(tmp_path)
    backend = RecordingBackend(CaseActivities(store))
    validated = validated_bundle([item("DOC-A", requires=["DOC-B"]), item("DOC-B", requires=["DOC-A"])])
    assert validated.bundle.gating_graph.has_cycles is True

    result = _loop(store, backend).run(validated, "CASE-1")

    assert result.clean is True
    assert result.iterations == 1
    assert result.bundle.bundle.gating_graph.has_cycles is False
    assert result.bundle.failed_rules == []
    assert result.bundle.bundle.metadata["revision"] == 1


def test_review_cache_replays_reviews_within_one_case_only(tmp_path: Path) -> None:
    cache = ReviewCache()
    validated = validated_bundle([item("DOC-1"), item("EVD-1", kind="media")])

    first_store = CaseStateStore(tmp_path / "first")
    first = RecordingBackend(CaseActivities(first_store))
    _loop(first_store, first, "CASE-1", cache=cache).run(validated, "CASE-1")
    assert len(cache) == 5

    # Same case, fresh step store: every review comes from the cache.
    replay_store = CaseStateStore(tmp_path / "replay")
    replay = RecordingBackend(CaseActivities(replay_store))
    result = _loop(replay_store, replay, "CASE-1", cache=cache).run(validated, "CASE-1")
    assert replay.calls["review_global"] == 0
    assert replay.calls["review_focused"] == 0
    assert result.clean is True
    assert len(replay_store.list_analyses("CASE-1")) == 5

    other = RecordingBackend(CaseActivities(first_store))
    _loop(first_store, other, "CASE-2", cache=cache).run(validated, "CASE-2")
    assert other.calls["review_global"] == 1

    assert cache.discard_case("CASE-1") == 5
    assert cache.get("CASE-1", ReviewCache.key(validated.to_record(), "global", [])) is None
    assert len(cache) == 5


def test_review_cache_is_bounded_by_size_and_age() -> None:
    now = [0.0]
    cache = ReviewCache(max_entries=2, max_age_seconds=10, clock=lambda: now[0])

    cache.put("CASE-1", "a", {"n": 1})
    cache.put("CASE-1", "b", {"n": 2})
    assert cache.get("CASE-1", "a") == {"n": 1}
    cache.put("CASE-1", "c", {"n": 3})

    assert cache.get("CASE-1", "b") is None
    assert cache.get("CASE-1", "a") == {"n": 1}
    assert len(cache) == 2

    now[0] = 11.0
    assert cache.get("CASE-1", "a") is None
    assert cache.clear_expired() == 1
    assert len(cache) == 0
