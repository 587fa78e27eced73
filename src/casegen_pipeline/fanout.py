from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Generic, Sequence, TypeVar

from .activities import CancellationToken
from .errors import JoinFailure, PipelineCancelled
from .models import GenerationSpec

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

_POLL_SECONDS = 0.05


class FanOutCoordinator(Generic[ResultT]):
    """Run one task per generation spec concurrently and join on all of them.

    Join policy: every task runs to a terminal state. If any failed, the
    first failure in spec order is raised as ``JoinFailure`` and every
    sibling result is discarded. Otherwise results come back in spec order,
    whatever order the tasks finished in.
    """

    def __init__(self, *, max_workers: int = 8) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got: {max_workers}")
        self.max_workers = max_workers

    def run(
        self,
        specs: Sequence[GenerationSpec],
        task: Callable[[GenerationSpec], ResultT],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[ResultT]:
        """Fan out ``task(spec)`` over *specs*.

        Raises:
            JoinFailure: If one or more tasks failed.
            PipelineCancelled: If cancellation was requested while tasks were pending.
        """
        if not specs:
            return []

        workers = min(self.max_workers, len(specs))
        logger.info("Fanning out %d generation tasks over %d workers", len(specs), workers)
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="casegen-fanout")
        futures: list[Future[ResultT]] = [
            pool.submit(self._guarded, task, spec, cancel_token) for spec in specs
        ]
        abandoned = False
        try:
            pending: set[Future[ResultT]] = set(futures)
            while pending:
                _, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                if pending and cancel_token is not None and cancel_token.cancelled:
                    abandoned = True
                    raise PipelineCancelled(cancel_token.reason or "cancelled")
        finally:
            # Abandoned in-flight tasks are left to finish in the background.
            pool.shutdown(wait=not abandoned, cancel_futures=abandoned)

        return self._join(specs, futures)

    @staticmethod
    def _guarded(
        task: Callable[[GenerationSpec], ResultT],
        spec: GenerationSpec,
        cancel_token: CancellationToken | None,
    ) -> ResultT:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return task(spec)

    @staticmethod
    def _join(specs: Sequence[GenerationSpec], futures: list[Future[ResultT]]) -> list[ResultT]:
        failures: list[tuple[GenerationSpec, BaseException]] = []
        for spec, future in zip(specs, futures):
            error = future.exception()
            if error is not None:
                failures.append((spec, error))

        if failures:
            first_spec, first_error = failures[0]
            if isinstance(first_error, PipelineCancelled):
                raise first_error
            logger.error(
                "Fan-out join failed: %d of %d tasks failed; first failure on %s",
                len(failures),
                len(specs),
                first_spec.id,
            )
            raise JoinFailure(first_spec.id, first_error, failed_count=len(failures)) from first_error

        return [future.result() for future in futures]
