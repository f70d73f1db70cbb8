"""Error hierarchy shared by the executor and the partitioner."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

__all__ = [
    "PageBalancerError",
    "InvalidConfiguration",
    "InvalidWeight",
    "WorkerFailure",
    "AggregateFailure",
    "FanOutCancelled",
]


class PageBalancerError(Exception):
    """Base class for every error raised by :mod:`page_balancer`."""


class InvalidConfiguration(PageBalancerError, ValueError):
    """Tuning parameters are unusable; raised before any work starts."""


class InvalidWeight(PageBalancerError, ValueError):
    """A weight function violated its contract for one item."""

    def __init__(self, item: Any, index: int, reason: str, weight: Any = None) -> None:
        self.item = item
        self.index = index
        self.weight = weight
        self.reason = reason
        super().__init__(f"invalid weight for item #{index} ({item!r}): {reason}")


@dataclass(frozen=True)
class WorkerFailure:
    """One action failure observed by a fan-out worker."""

    worker: int
    item: Any
    error: BaseException


class AggregateFailure(PageBalancerError):
    """One or more fan-out actions failed; carries every observed failure."""

    def __init__(self, failures: Sequence[WorkerFailure]) -> None:
        if not failures:
            raise ValueError("AggregateFailure requires at least one failure")
        self.failures: Tuple[WorkerFailure, ...] = tuple(failures)
        first = self.failures[0].error
        super().__init__(
            f"{len(self.failures)} fan-out action(s) failed; first: {type(first).__name__}: {first}"
        )

    @property
    def errors(self) -> Tuple[BaseException, ...]:
        return tuple(failure.error for failure in self.failures)

    def first(self) -> Optional[BaseException]:
        return self.failures[0].error if self.failures else None


class FanOutCancelled(PageBalancerError):
    """The caller's cancel event stopped a fan-out before every item ran."""

    def __init__(self, processed: int, item_count: int) -> None:
        self.processed = processed
        self.item_count = item_count
        super().__init__(f"fan-out cancelled after {processed}/{item_count} item(s)")
