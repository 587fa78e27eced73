from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .activities import StepRunner
from .canonical import content_hash
from .models import CleanVerdict, RefinementSummary, ReviewAnalysis, ValidatedBundle
from .state_store import CaseStateStore

logger = logging.getLogger(__name__)


class ReviewCache:
    """Per-case cache of review analyses keyed by bundle content.

    The key is the canonical hash of the reviewed bundle plus the review scope
    and the sorted focus areas. Entries belong to one case, are dropped when
    that case's run ends, and expire after ``max_age_seconds``. Past
    ``max_entries`` the least recently used entry is evicted.
    """

    def __init__(
        self,
        *,
        max_entries: int = 512,
        max_age_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got: {max_entries}")
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], tuple[float, dict[str, Any]]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(bundle_record: dict[str, Any], scope: str, focus_areas: list[str]) -> str:
        return content_hash({"bundle": bundle_record, "scope": scope, "focusAreas": sorted(focus_areas)})

    def get(self, case_id: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get((case_id, key))
            if entry is None:
                return None
            stored_at, analysis = entry
            if self._clock() - stored_at > self.max_age_seconds:
                del self._entries[(case_id, key)]
                return None
            self._entries.move_to_end((case_id, key))
            return analysis

    def put(self, case_id: str, key: str, analysis: dict[str, Any]) -> None:
        with self._lock:
            self._entries[(case_id, key)] = (self._clock(), analysis)
            self._entries.move_to_end((case_id, key))
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def discard_case(self, case_id: str) -> int:
        """Drop every entry of *case_id*; returns how many were removed."""
        with self._lock:
            stale = [entry_key for entry_key in self._entries if entry_key[0] == case_id]
            for entry_key in stale:
                del self._entries[entry_key]
        return len(stale)

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                entry_key
                for entry_key, (stored_at, _) in self._entries.items()
                if now - stored_at > self.max_age_seconds
            ]
            for entry_key in expired:
                del self._entries[entry_key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RefinementState(TypedDict, total=False):
    case_id: str
    iteration: int
    max_iterations: int
    bundle: dict[str, Any]
    global_analysis: dict[str, Any]
    analyses: list[dict[str, Any]]
    history: list[dict[str, Any]]
    clean: bool
    capped: bool


@dataclass
class RefinementResult:
    bundle: ValidatedBundle
    clean: bool
    capped: bool
    iterations: int
    analyses: list[ReviewAnalysis] = field(default_factory=list)

    @property
    def summary(self) -> RefinementSummary:
        return RefinementSummary(clean=self.clean, capped=self.capped, iterations=self.iterations)


class RefinementLoop:
    """Bounded review/repair loop: review_global -> review_focused -> evaluate -> repair/finish.

    Runs at most ``max_iterations + 1`` review cycles. Exiting unclean at the
    cap is a normal outcome flagged ``capped``, not an error. Every analysis is
    persisted to the store as soon as it exists.
    """

    def __init__(
        self,
        *,
        runner: StepRunner,
        store: CaseStateStore,
        max_iterations: int = 3,
        default_focus_areas: tuple[str, ...] = ("timeline", "evidence", "gating", "consistency"),
        cache: ReviewCache | None = None,
        recursion_limit: int = 200,
    ) -> None:
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got: {max_iterations}")
        self.runner = runner
        self.store = store
        self.max_iterations = max_iterations
        self.default_focus_areas = default_focus_areas
        self.cache = cache
        self.recursion_limit = max(recursion_limit, 5 * (max_iterations + 1) + 5)
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RefinementState)
        graph.add_node("review_global", self._review_global)
        graph.add_node("review_focused", self._review_focused)
        graph.add_node("evaluate", self._evaluate)
        graph.add_node("repair", self._repair)
        graph.add_node("finish", self._finish)

        graph.add_edge(START, "review_global")
        graph.add_edge("review_global", "review_focused")
        graph.add_edge("review_focused", "evaluate")
        graph.add_edge("repair", "review_global")
        graph.add_edge("finish", END)
        return graph

    def _review(self, state: RefinementState, step_id: str, scope: str, focus_areas: list[str], *args: Any) -> ReviewAnalysis:
        case_id = state["case_id"]
        iteration = int(state.get("iteration", 0))
        cache_key = self.cache.key(state["bundle"], scope, focus_areas) if self.cache is not None else None

        analysis = self.runner.recorded(step_id, ReviewAnalysis)
        if analysis is None and cache_key is not None:
            cached = self.cache.get(case_id, cache_key)
            if cached is not None:
                logger.debug("Review cache hit for %s %s", case_id, step_id)
                analysis = ReviewAnalysis.model_validate(cached).model_copy(
                    update={"case_id": case_id, "iteration": iteration}
                )
                self.runner.record(step_id, analysis)
        if analysis is None:
            validated = ValidatedBundle.model_validate(state["bundle"])
            activity = "review_global" if scope == "global" else "review_focused"
            analysis = self.runner.run(step_id, ReviewAnalysis, activity, validated, case_id, iteration, *args)
        if cache_key is not None:
            self.cache.put(case_id, cache_key, analysis.to_record())
        self.store.write_analysis(case_id, analysis)
        return analysis

    def _review_global(self, state: RefinementState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 0))
        analysis = self._review(state, f"refine:{iteration}:review_global", "global", [])
        record = analysis.to_record()
        return {
            "global_analysis": record,
            "analyses": [record],
            "history": [*state.get("history", []), record],
        }

    def _review_focused(self, state: RefinementState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 0))
        global_analysis = ReviewAnalysis.model_validate(state["global_analysis"])
        areas = global_analysis.focus_areas or list(self.default_focus_areas)
        analyses = list(state.get("analyses", []))
        history = list(state.get("history", []))
        for area in areas:
            analysis = self._review(
                state,
                f"refine:{iteration}:review_focused:{area}",
                "focused",
                [area],
                area,
                global_analysis,
            )
            record = analysis.to_record()
            analyses.append(record)
            history.append(record)
        return {"analyses": analyses, "history": history}

    def _evaluate(self, state: RefinementState) -> Command[str]:
        case_id = state["case_id"]
        iteration = int(state.get("iteration", 0))
        max_iterations = int(state.get("max_iterations", self.max_iterations))
        analyses = [ReviewAnalysis.model_validate(record) for record in state.get("analyses", [])]
        verdict = self.runner.run(f"refine:{iteration}:is_clean", CleanVerdict, "is_clean", analyses, case_id, iteration)
        if verdict.clean:
            logger.info("Refinement for %s clean after %d repair(s)", case_id, iteration)
            return Command(goto="finish", update={"clean": True, "capped": False})
        if iteration < max_iterations:
            return Command(goto="repair")
        logger.warning(
            "Refinement for %s capped at %d iteration(s) with %d blocking issue(s)",
            case_id,
            iteration,
            len(verdict.blocking_issue_ids),
        )
        return Command(goto="finish", update={"clean": False, "capped": True})

    def _repair(self, state: RefinementState) -> dict[str, Any]:
        case_id = state["case_id"]
        iteration = int(state.get("iteration", 0))
        analyses = [ReviewAnalysis.model_validate(record) for record in state.get("analyses", [])]
        current = ValidatedBundle.model_validate(state["bundle"])
        repaired = self.runner.run(
            f"refine:{iteration}:repair",
            ValidatedBundle,
            "repair",
            analyses,
            current,
            case_id,
            iteration,
        )
        return {"bundle": repaired.to_record(), "iteration": iteration + 1}

    def _finish(self, state: RefinementState) -> dict[str, Any]:
        return {}

    def run(self, validated: ValidatedBundle, case_id: str) -> RefinementResult:
        result = self.graph.invoke(
            {
                "case_id": case_id,
                "iteration": 0,
                "max_iterations": self.max_iterations,
                "bundle": validated.to_record(),
                "analyses": [],
                "history": [],
                "clean": False,
                "capped": False,
            },
            config={"recursion_limit": self.recursion_limit},
        )
        return RefinementResult(
            bundle=ValidatedBundle.model_validate(result["bundle"]),
            clean=bool(result.get("clean")),
            capped=bool(result.get("capped")),
            iterations=int(result.get("iteration", 0)),
            analyses=[ReviewAnalysis.model_validate(record) for record in result.get("history", [])],
        )
