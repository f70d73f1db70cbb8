"""Load-balanced page splitter.

Splits a weighted sequence of items into a self-selected number of groups
("pages") so that the heaviest and the lightest page differ as little as
possible.  The design follows a few rules:

* **Deterministic** – items are stable-sorted by weight once, every candidate
  group count is evaluated with the same greedy pass, and ties are broken by
  group index during placement and by the larger group count during
  selection.
* **Concurrent** – candidate group counts are independent and are evaluated
  through :class:`~page_balancer.parallel_executor.FanOutExecutor`.  Each
  worker writes its result into its own pre-sized slot.
* **Fail loud** – bad tuning parameters raise
  :class:`~page_balancer.errors.InvalidConfiguration` before any work, and a
  weight function that breaks its contract raises
  :class:`~page_balancer.errors.InvalidWeight` naming the item.
* **Observable** – :meth:`PageSplitter.plan` returns the whole deviation
  table together with balance metrics (Gini coefficient, imbalance ratio).

The public interface::

    partition(items, weight_of, round_deviation_up_to, max_groups) -> List[List[item]]
    PageSplitter(settings).plan(items, weight_of, ...) -> PartitionPlan

Greedy placement is the longest-processing-time-first heuristic: seed ``k``
groups with the ``k`` heaviest items, then append each remaining item, in
descending weight order, to the group with the smallest running sum.
"""
from __future__ import annotations

import base64
import dataclasses
import decimal
import hashlib
import logging
import math
import numbers
import statistics
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from typing_extensions import TypeAlias

from .config import PartitionSettings
from .errors import InvalidWeight
from .parallel_executor import ExecutorPolicy, FanOutExecutor
from .structured_logger import StructuredLogger

__all__ = [
    "CandidateAssignment",
    "PageSplitter",
    "PartitionMetrics",
    "PartitionPlan",
    "WeightedItem",
    "evaluate_candidate",
    "partition",
    "score_for",
    "search_space",
    "select_candidate",
]

T = TypeVar("T")

WeightFunction: TypeAlias = Callable[[Any], float]

logger = StructuredLogger.get_logger("page_splitter")


@dataclass(frozen=True)
class WeightedItem(Generic[T]):
    """A caller item paired with its precomputed weight."""

    source: T
    weight: float
    index: int


@dataclass(frozen=True)
class CandidateAssignment(Generic[T]):
    """Greedy assignment of every item to exactly ``group_count`` groups."""

    group_count: int
    groups: Tuple[Tuple[WeightedItem[T], ...], ...]
    group_weights: Tuple[float, ...]
    deviation: float
    score: float

    def sources(self) -> List[List[T]]:
        return [[entry.source for entry in group] for group in self.groups]

    def snapshot(self) -> Mapping[str, Any]:
        return {
            "group_count": self.group_count,
            "group_weights": list(self.group_weights),
            "group_sizes": [len(group) for group in self.groups],
            "deviation": self.deviation,
            "score": self.score,
        }


@dataclass(frozen=True)
class PartitionMetrics:
    """Balance statistics of the selected assignment."""

    group_count: int
    item_count: int
    total_weight: float
    min_group_weight: float
    max_group_weight: float
    mean_group_weight: float
    stddev_group_weight: float
    weight_gini: float
    imbalance_ratio: float


@dataclass
class PartitionPlan(Generic[T]):
    """Outcome of one partitioning call, including the full deviation table."""

    plan_id: str
    groups: List[List[T]]
    winner: CandidateAssignment[T]
    candidates: Mapping[int, CandidateAssignment[T]]
    metrics: PartitionMetrics
    settings: PartitionSettings
    elapsed: float
    created_at: float = field(default_factory=time.time)

    def snapshot(self) -> Mapping[str, Any]:
        """Return a serialisable snapshot (items themselves are omitted)."""

        return {
            "plan_id": self.plan_id,
            "winner": dict(self.winner.snapshot()),
            "candidates": {k: dict(candidate.snapshot()) for k, candidate in sorted(self.candidates.items())},
            "metrics": dataclasses.asdict(self.metrics),
            "settings": dataclasses.asdict(self.settings),
            "elapsed": self.elapsed,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Core algorithm
# ---------------------------------------------------------------------------


def search_space(item_count: int, max_groups: int) -> range:
    """Candidate group counts ``2 .. min(item_count, max_groups)``."""
    return range(2, min(item_count, max_groups) + 1)


def score_for(group_count: int, deviation: float) -> float:
    """``group_count / deviation``; a perfectly balanced candidate scores ``inf``."""
    if deviation == 0:
        return math.inf
    return group_count / deviation


def evaluate_candidate(
    ordered: Sequence[WeightedItem[T]],
    group_count: int,
    round_deviation_up_to: float,
) -> CandidateAssignment[T]:
    """Greedy placement of ``ordered`` (heaviest first) into ``group_count`` groups."""
    if group_count < 1 or group_count > len(ordered):
        raise ValueError(f"group_count must be within 1..{len(ordered)}, got {group_count}")
    groups: List[List[WeightedItem[T]]] = [[entry] for entry in ordered[:group_count]]
    sums: List[float] = [entry.weight for entry in ordered[:group_count]]
    for entry in ordered[group_count:]:
        # min() keeps the first index among equal sums
        idx = min(range(group_count), key=sums.__getitem__)
        groups[idx].append(entry)
        sums[idx] += entry.weight
    deviation = max(sums) - min(sums)
    if deviation < round_deviation_up_to:
        deviation = round_deviation_up_to
    return CandidateAssignment(
        group_count=group_count,
        groups=tuple(tuple(group) for group in groups),
        group_weights=tuple(sums),
        deviation=deviation,
        score=score_for(group_count, deviation),
    )


def _scores_tied(score: float, best: float, tolerance: float) -> bool:
    if score == best:
        return True
    if tolerance <= 0 or math.isinf(score) or math.isinf(best):
        return False
    return math.isclose(score, best, rel_tol=0.0, abs_tol=tolerance)


def _ranking_score(candidate: CandidateAssignment[Any]) -> float:
    # nan ranks below every real score
    return -math.inf if math.isnan(candidate.score) else candidate.score


def select_candidate(
    candidates: Iterable[CandidateAssignment[T]], score_tolerance: float = 0.0
) -> CandidateAssignment[T]:
    """Best score wins; among tied scores the largest group count wins."""
    pool = list(candidates)
    if not pool:
        raise ValueError("no candidates to select from")
    best = max(_ranking_score(candidate) for candidate in pool)
    tied = [candidate for candidate in pool if _scores_tied(_ranking_score(candidate), best, score_tolerance)]
    return max(tied, key=lambda candidate: candidate.group_count)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


class PageSplitter:
    """Evaluate every candidate group count concurrently and keep the best."""

    def __init__(
        self,
        settings: Optional[PartitionSettings] = None,
        *,
        executor: Optional[FanOutExecutor] = None,
    ) -> None:
        self._settings = settings or PartitionSettings()
        self._executor = executor or FanOutExecutor(ExecutorPolicy(degree_of_parallelism=self._settings.degree_of_parallelism))

    @property
    def settings(self) -> PartitionSettings:
        return self._settings

    def plan(
        self,
        items: Iterable[T],
        weight_of: Callable[[T], float],
        round_deviation_up_to: Optional[float] = None,
        max_groups: Optional[int] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> PartitionPlan[T]:
        settings = self._resolve_settings(round_deviation_up_to, max_groups)
        started = time.perf_counter()
        sources = tuple(items)
        weighted = self._weigh(sources, weight_of)
        ordered = tuple(sorted(weighted, key=lambda entry: entry.weight, reverse=True))
        space = search_space(len(ordered), settings.max_groups)
        logger.info(
            "partition.start",
            item_count=len(ordered),
            max_groups=settings.max_groups,
            round_deviation_up_to=settings.round_deviation_up_to,
            candidates=len(space),
        )

        if len(ordered) < 2:
            winner = self._trivial(weighted, settings.round_deviation_up_to)
            candidates: Dict[int, CandidateAssignment[T]] = {}
        else:
            slots: List[Optional[CandidateAssignment[T]]] = [None] * len(space)

            def evaluate(group_count: int) -> None:
                slots[group_count - space.start] = evaluate_candidate(ordered, group_count, settings.round_deviation_up_to)

            self._executor.for_each(space, evaluate, cancel_event=cancel_event)
            candidates = {}
            for group_count, candidate in zip(space, slots):
                if candidate is None:  # pragma: no cover - for_each raises before this
                    raise RuntimeError(f"candidate {group_count} was not evaluated")
                candidates[group_count] = candidate
                if logger.is_enabled_for(logging.DEBUG):
                    logger.debug("partition.candidate", **candidate.snapshot())
            winner = select_candidate(candidates.values(), settings.score_tolerance)

        metrics = self._calculate_metrics(winner)
        plan_id = self._make_plan_id(winner)
        elapsed = time.perf_counter() - started
        logger.info(
            "partition.selected",
            plan_id=plan_id,
            group_count=winner.group_count,
            deviation=winner.deviation,
            score=winner.score,
            latency_ms=round(elapsed * 1000.0, 3),
        )
        return PartitionPlan(
            plan_id=plan_id,
            groups=winner.sources(),
            winner=winner,
            candidates=candidates,
            metrics=metrics,
            settings=settings,
            elapsed=elapsed,
        )

    def partition(
        self,
        items: Iterable[T],
        weight_of: Callable[[T], float],
        round_deviation_up_to: Optional[float] = None,
        max_groups: Optional[int] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[List[T]]:
        return self.plan(items, weight_of, round_deviation_up_to, max_groups, cancel_event=cancel_event).groups

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _resolve_settings(self, round_deviation_up_to: Optional[float], max_groups: Optional[int]) -> PartitionSettings:
        overrides: Dict[str, Any] = {}
        if round_deviation_up_to is not None:
            overrides["round_deviation_up_to"] = round_deviation_up_to
        if max_groups is not None:
            overrides["max_groups"] = max_groups
        if not overrides:
            return self._settings
        # __post_init__ validation raises InvalidConfiguration
        return dataclasses.replace(self._settings, **overrides)

    def _weigh(self, sources: Sequence[T], weight_of: Callable[[T], float]) -> Tuple[WeightedItem[T], ...]:
        weighted: List[WeightedItem[T]] = []
        total = 0.0
        for index, source in enumerate(sources):
            try:
                raw = weight_of(source)
            except Exception as exc:
                raise InvalidWeight(source, index, f"weight function raised {type(exc).__name__}: {exc}") from exc
            if isinstance(raw, bool) or not isinstance(raw, (numbers.Real, decimal.Decimal)):
                raise InvalidWeight(source, index, f"weight must be a real number, got {type(raw).__name__}", raw)
            weight = float(raw)
            if not math.isfinite(weight):
                raise InvalidWeight(source, index, "weight must be finite", raw)
            if weight < 0:
                raise InvalidWeight(source, index, "weight must be non-negative", raw)
            # every group sum is bounded by the total
            total += weight
            if not math.isfinite(total):
                raise InvalidWeight(source, index, "cumulative weight overflows a float", raw)
            weighted.append(WeightedItem(source=source, weight=weight, index=index))
        return tuple(weighted)

    def _trivial(self, weighted: Sequence[WeightedItem[T]], round_deviation_up_to: float) -> CandidateAssignment[T]:
        total = sum(entry.weight for entry in weighted)
        return CandidateAssignment(
            group_count=1,
            groups=(tuple(weighted),),
            group_weights=(total,),
            deviation=round_deviation_up_to,
            score=score_for(1, round_deviation_up_to),
        )

    def _calculate_metrics(self, winner: CandidateAssignment[Any]) -> PartitionMetrics:
        weights = list(winner.group_weights)
        total_weight = sum(weights)
        mean_weight = total_weight / len(weights)
        return PartitionMetrics(
            group_count=winner.group_count,
            item_count=sum(len(group) for group in winner.groups),
            total_weight=total_weight,
            min_group_weight=min(weights),
            max_group_weight=max(weights),
            mean_group_weight=mean_weight,
            stddev_group_weight=statistics.pstdev(weights) if len(weights) > 1 else 0.0,
            weight_gini=self._gini(weights),
            imbalance_ratio=max(weights) / mean_weight if mean_weight else 0.0,
        )

    def _gini(self, values: Sequence[float]) -> float:
        sorted_values = sorted(values)
        n = len(sorted_values)
        cumulative = 0.0
        cumulative_sum = 0.0
        for value in sorted_values:
            cumulative += value
            cumulative_sum += cumulative
        if not cumulative:
            return 0.0
        return (n + 1 - 2 * (cumulative_sum / cumulative)) / n

    def _make_plan_id(self, winner: CandidateAssignment[Any]) -> str:
        digest = hashlib.blake2b(digest_size=16)
        digest.update(str(winner.group_count).encode("ascii"))
        for group in winner.groups:
            digest.update(b"|")
            for entry in group:
                digest.update(f"{entry.index}:{entry.weight!r};".encode("ascii"))
        return base64.b32encode(digest.digest()).decode("ascii").rstrip("=")


def partition(
    items: Iterable[T],
    weight_of: WeightFunction,
    round_deviation_up_to: float,
    max_groups: int,
    *,
    executor: Optional[FanOutExecutor] = None,
) -> List[List[T]]:
    """Split ``items`` into the best-balanced list of groups.

    Raises :class:`InvalidConfiguration` for ``max_groups < 2`` or a negative
    ``round_deviation_up_to`` before the weight function is ever called.
    """
    settings = PartitionSettings(round_deviation_up_to=round_deviation_up_to, max_groups=max_groups)
    return PageSplitter(settings, executor=executor).partition(items, weight_of)
