"""Core runtime components for IlluBatch."""

from .aggregator import StatusAggregator
from .coordinator import BatchCoordinator
from .graceful_shutdown import GracefulShutdown
from .progress_reporter import ProgressReporter
from .retry_policy import RetryDecision, RetryPolicy
from .scheduler import Scheduler
from .system_monitor import SystemMonitor

__all__ = [
    "BatchCoordinator",
    "GracefulShutdown",
    "ProgressReporter",
    "RetryDecision",
    "RetryPolicy",
    "Scheduler",
    "StatusAggregator",
    "SystemMonitor",
]
