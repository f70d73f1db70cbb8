"""Concurrent fan-out executor.

Runs an action over every element of a finite collection.  The collection is
split into contiguous cursors, one worker thread drains each cursor in order,
and the caller blocks until every worker is done.  Failures are collected and
re-raised together once all workers have been observed.
"""
from __future__ import annotations

import concurrent.futures
import contextvars
import numbers
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .config import get_executor_value
from .errors import AggregateFailure, FanOutCancelled, InvalidConfiguration, WorkerFailure
from .progress import ProgressController
from .runtime import ResourceMonitor, ResourceSnapshot, available_parallelism
from .structured_logger import StructuredLogger

__all__ = [
    "ExecutorEvents",
    "ExecutorPolicy",
    "FanOutExecutor",
    "FanOutReport",
    "for_each_parallel",
    "split_cursors",
]

T = TypeVar("T")

logger = StructuredLogger.get_logger("parallel_executor")


@dataclass
class ExecutorPolicy:
    degree_of_parallelism: Optional[int] = field(default_factory=lambda: get_executor_value("degree_of_parallelism", int))
    propagate_context: bool = field(default_factory=lambda: get_executor_value("propagate_context", bool, False))
    show_progress: bool = field(default_factory=lambda: get_executor_value("show_progress", bool, False))
    thread_name_prefix: str = field(default_factory=lambda: get_executor_value("thread_name_prefix", str, "fan-out"))


@dataclass
class ExecutorEvents:
    on_start: Callable[["FanOutExecutor", int, int], None] = lambda executor, item_count, worker_count: None
    on_item_done: Callable[["FanOutExecutor", Any, float], None] = lambda executor, item, latency: None
    on_failure: Callable[["FanOutExecutor", Any, BaseException], None] = lambda executor, item, exc: None
    on_stop: Callable[["FanOutExecutor", "FanOutReport"], None] = lambda executor, report: None


@dataclass(frozen=True)
class FanOutReport:
    worker_count: int
    item_count: int
    processed: int
    failed: int
    elapsed: float
    cursor_sizes: Tuple[int, ...] = ()
    cancelled: bool = False
    resource: Optional[ResourceSnapshot] = None


@dataclass
class _CursorOutcome:
    processed: int = 0
    skipped: int = 0
    failures: List[WorkerFailure] = field(default_factory=list)


def _as_degree(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidConfiguration(f"degree_of_parallelism must be an integer, got {value!r}")
    return int(value)


def split_cursors(items: Sequence[T], count: int) -> List[Sequence[T]]:
    """Split ``items`` into ``count`` contiguous slices whose sizes differ by at most one."""
    if count <= 0:
        raise ValueError("count must be positive")
    if count > len(items):
        raise ValueError("cannot split into more cursors than items")
    base, extra = divmod(len(items), count)
    cursors: List[Sequence[T]] = []
    start = 0
    for idx in range(count):
        size = base + (1 if idx < extra else 0)
        cursors.append(items[start:start + size])
        start += size
    return cursors


def _run_in_context(context: Optional[contextvars.Context], fn: Callable[..., Any], *args: Any) -> Any:
    # without an explicit caller context, workers get a fresh empty one
    target = context.copy() if context is not None else contextvars.Context()
    return target.run(fn, *args)


class FanOutExecutor:
    def __init__(
        self,
        policy: Optional[ExecutorPolicy] = None,
        events: Optional[ExecutorEvents] = None,
        monitor: Optional[ResourceMonitor] = None,
    ) -> None:
        self._policy = policy or ExecutorPolicy()
        self._events = events or ExecutorEvents()
        self._monitor = monitor

    @property
    def policy(self) -> ExecutorPolicy:
        return self._policy

    def resolve_degree(self, requested: Optional[int] = None) -> int:
        """Resolve the worker count before clamping to the item count.

        An explicit ``requested`` value wins; zero or a negative value means
        "use the host's parallelism".  ``None`` defers to the policy's degree
        and then to the host.
        """
        if requested is not None:
            degree = _as_degree(requested)
            return degree if degree > 0 else available_parallelism()
        if self._policy.degree_of_parallelism is not None:
            degree = _as_degree(self._policy.degree_of_parallelism)
            if degree > 0:
                return degree
        return available_parallelism()

    def for_each(
        self,
        items: Iterable[T],
        action: Callable[[T], Any],
        degree_of_parallelism: Optional[int] = None,
        *,
        propagate_context: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FanOutReport:
        """Invoke ``action`` on every item and block until all workers finish.

        Raises :class:`AggregateFailure` when any action raised, after every
        worker has stopped.  Raises :class:`FanOutCancelled` when
        ``cancel_event`` caused items to be skipped and nothing failed.
        """
        materialised: Tuple[T, ...] = tuple(items)
        item_count = len(materialised)
        if item_count == 0:
            logger.debug("executor.empty_input")
            return FanOutReport(worker_count=0, item_count=0, processed=0, failed=0, elapsed=0.0)

        worker_count = min(self.resolve_degree(degree_of_parallelism), item_count)
        cursors = split_cursors(materialised, worker_count)
        propagate = self._policy.propagate_context if propagate_context is None else propagate_context
        caller_context = contextvars.copy_context() if propagate else None

        logger.info(
            "executor.start",
            item_count=item_count,
            worker_count=worker_count,
            propagate_context=propagate,
        )
        self._events.on_start(self, item_count, worker_count)
        started = time.perf_counter()
        progress = ProgressController(item_count, "fan-out") if self._policy.show_progress else None
        outcomes: List[_CursorOutcome] = []
        try:
            if progress is not None:
                progress.start()
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=worker_count,
                thread_name_prefix=self._policy.thread_name_prefix,
            ) as pool:
                futures = [
                    pool.submit(_run_in_context, caller_context, self._drain, idx, cursor, action, cancel_event, progress)
                    for idx, cursor in enumerate(cursors)
                ]
                for idx, future in enumerate(futures):
                    try:
                        outcomes.append(future.result())
                    except Exception as exc:
                        logger.error("executor.worker_crashed", worker=idx, exc=exc)
                        outcomes.append(_CursorOutcome(failures=[WorkerFailure(worker=idx, item=None, error=exc)]))
        finally:
            if progress is not None:
                progress.close()

        failures = [failure for outcome in outcomes for failure in outcome.failures]
        skipped = sum(outcome.skipped for outcome in outcomes)
        report = FanOutReport(
            worker_count=worker_count,
            item_count=item_count,
            processed=sum(outcome.processed for outcome in outcomes),
            failed=len(failures),
            elapsed=time.perf_counter() - started,
            cursor_sizes=tuple(len(cursor) for cursor in cursors),
            cancelled=skipped > 0,
            resource=self._monitor.snapshot() if self._monitor is not None else None,
        )
        self._events.on_stop(self, report)
        if failures:
            logger.error(
                "executor.aggregate_failure",
                failed=len(failures),
                processed=report.processed,
                item_count=item_count,
                exc=failures[0].error,
            )
            raise AggregateFailure(failures)
        if report.cancelled:
            logger.warning("executor.cancelled", processed=report.processed, item_count=item_count)
            raise FanOutCancelled(report.processed, item_count)
        logger.info(
            "executor.finish",
            item_count=item_count,
            worker_count=worker_count,
            latency_ms=round(report.elapsed * 1000.0, 3),
        )
        return report

    def _drain(
        self,
        worker: int,
        cursor: Sequence[T],
        action: Callable[[T], Any],
        cancel_event: Optional[threading.Event],
        progress: Optional[ProgressController],
    ) -> _CursorOutcome:
        outcome = _CursorOutcome()
        logger.debug("executor.cursor_start", worker=worker, size=len(cursor))
        for position, item in enumerate(cursor):
            if cancel_event is not None and cancel_event.is_set():
                outcome.skipped = len(cursor) - position
                break
            start = time.perf_counter()
            try:
                action(item)
            except Exception as exc:
                self._record_failure(outcome, worker, position, item, exc, stage="action")
                try:
                    self._events.on_failure(self, item, exc)
                except Exception as callback_exc:
                    self._record_failure(outcome, worker, position, item, callback_exc, stage="on_failure")
                break
            outcome.processed += 1
            try:
                self._events.on_item_done(self, item, time.perf_counter() - start)
                if progress is not None:
                    progress.advance(1)
            except Exception as exc:
                self._record_failure(outcome, worker, position, item, exc, stage="on_item_done")
                break
        return outcome

    def _record_failure(
        self,
        outcome: _CursorOutcome,
        worker: int,
        position: int,
        item: Any,
        exc: BaseException,
        *,
        stage: str,
    ) -> None:
        logger.warning(
            "executor.item_failed",
            worker=worker,
            position=position,
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        outcome.failures.append(WorkerFailure(worker=worker, item=item, error=exc))


def for_each_parallel(
    items: Iterable[T],
    action: Callable[[T], Any],
    degree_of_parallelism: Optional[int] = None,
    **kwargs: Any,
) -> FanOutReport:
    """Run ``action`` over ``items`` with a default :class:`FanOutExecutor`."""
    return FanOutExecutor().for_each(items, action, degree_of_parallelism, **kwargs)
