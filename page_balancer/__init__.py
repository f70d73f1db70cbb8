"""Load-balanced page splitting with a concurrent fan-out executor."""

from .config import Config, LoggerSettings, PartitionSettings
from .errors import (
    AggregateFailure,
    FanOutCancelled,
    InvalidConfiguration,
    InvalidWeight,
    PageBalancerError,
    WorkerFailure,
)
from .page_splitter import (
    CandidateAssignment,
    PageSplitter,
    PartitionMetrics,
    PartitionPlan,
    WeightedItem,
    partition,
)
from .parallel_executor import ExecutorEvents, ExecutorPolicy, FanOutExecutor, FanOutReport, for_each_parallel
from .progress import ProgressController
from .structured_logger import StructuredLogger

__all__ = [
    "AggregateFailure",
    "CandidateAssignment",
    "Config",
    "ExecutorEvents",
    "ExecutorPolicy",
    "FanOutCancelled",
    "FanOutExecutor",
    "FanOutReport",
    "InvalidConfiguration",
    "InvalidWeight",
    "LoggerSettings",
    "PageBalancerError",
    "PageSplitter",
    "PartitionMetrics",
    "PartitionPlan",
    "PartitionSettings",
    "ProgressController",
    "StructuredLogger",
    "WeightedItem",
    "WorkerFailure",
    "for_each_parallel",
    "partition",
]
