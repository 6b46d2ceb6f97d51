"""Derive batch status reports from task state alone."""

from __future__ import annotations

import math
from statistics import mean
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models import (
    Batch,
    BatchStatistics,
    BatchStatusReport,
    Task,
    TaskStatus,
)

HOUR_SECONDS = 3600.0

_QUEUED = (TaskStatus.QUEUED, TaskStatus.WAITING, TaskStatus.RETRYING)
_RUNNING = (TaskStatus.RUNNING, TaskStatus.PAUSED)
_FAILED = (TaskStatus.FAILED, TaskStatus.TIMEOUT)


class StatusAggregator:
    """Builds ``BatchStatusReport`` objects.

    Holds no state and never reads a wall clock: every time-based figure is
    anchored on the latest timestamp recorded in the tasks themselves, so two
    calls over unchanged tasks give identical reports.
    """

    def __init__(self, *, include_task_details: bool = True) -> None:
        self.include_task_details = include_task_details

    def report(self, batch: Batch, tasks: Sequence[Task]) -> BatchStatusReport:
        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        # Cancelled tasks leave the counted set: total is the sum of the four buckets.
        counted = [task for task in tasks if task.status is not TaskStatus.CANCELLED]
        total = len(counted)

        completed = counts[TaskStatus.COMPLETED]
        failed = sum(counts[status] for status in _FAILED)
        running = sum(counts[status] for status in _RUNNING)
        queued = sum(counts[status] for status in _QUEUED)
        cancelled = counts[TaskStatus.CANCELLED]

        statistics = BatchStatistics(
            average_execution_time_ms=self._average_execution_ms(tasks),
            total_api_costs=round(sum(task.metrics.total_cost for task in tasks), 6),
            error_rate=(failed / total) if total else 0.0,
            throughput_per_hour=self._throughput_per_hour(batch, tasks),
            peak_concurrent_tasks=peak_concurrency(tasks),
            queue_utilization=(running / batch.max_parallel) if batch.max_parallel else 0.0,
            timeout_tasks=counts[TaskStatus.TIMEOUT],
            retried_tasks=sum(1 for task in tasks if task.retry_count > 0),
        )
        return BatchStatusReport(
            batch_id=batch.id,
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            running_tasks=running,
            queued_tasks=queued,
            cancelled_tasks=cancelled,
            overall_progress=overall_progress(counted),
            statistics=statistics,
            estimated_remaining_ms=self._estimate_remaining_ms(batch, tasks, statistics),
            task_details=[task.to_dict() for task in tasks] if self.include_task_details else [],
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _average_execution_ms(tasks: Iterable[Task]) -> float:
        samples = [
            task.metrics.execution_time_ms
            for task in tasks
            if task.status is TaskStatus.COMPLETED
        ]
        return float(mean(samples)) if samples else 0.0

    @staticmethod
    def _throughput_per_hour(batch: Batch, tasks: Sequence[Task]) -> float:
        as_of = latest_event(batch, tasks)
        window = min(HOUR_SECONDS, as_of - batch.created_at)
        if window <= 0:
            return 0.0
        window_start = as_of - window
        completed = sum(
            1
            for task in tasks
            if task.status is TaskStatus.COMPLETED
            and task.completed_at is not None
            and task.completed_at >= window_start
        )
        return completed * (HOUR_SECONDS / window)

    @staticmethod
    def _estimate_remaining_ms(batch: Batch, tasks: Sequence[Task], statistics: BatchStatistics) -> Optional[int]:
        remaining = sum(1 for task in tasks if not task.is_terminal)
        if remaining == 0:
            return 0
        if not statistics.average_execution_time_ms:
            return None
        waves = math.ceil(remaining / max(1, batch.max_parallel))
        return int(waves * statistics.average_execution_time_ms)


def overall_progress(tasks: Sequence[Task]) -> float:
    """Mean task progress in [0, 1]; completed tasks count as fully done."""

    if not tasks:
        return 0.0
    total = 0.0
    for task in tasks:
        if task.status is TaskStatus.COMPLETED:
            total += 1.0
        else:
            total += max(0, min(100, task.progress)) / 100.0
    return total / len(tasks)


def latest_event(batch: Batch, tasks: Iterable[Task]) -> float:
    latest = batch.created_at
    for task in tasks:
        for stamp in (task.enqueued_at, task.started_at, task.completed_at):
            if stamp is not None and stamp > latest:
                latest = stamp
    return latest


def peak_concurrency(tasks: Iterable[Task]) -> int:
    """Largest number of overlapping execution windows; open windows count as running."""

    edges: List[Tuple[float, int]] = []
    for task in tasks:
        for start, end in task.execution_windows:
            edges.append((start, 1))
            if end is not None:
                edges.append((end, -1))
    # Ends sort before starts at the same instant so back-to-back attempts do not overlap.
    edges.sort(key=lambda edge: (edge[0], edge[1]))
    current = peak = 0
    for _, delta in edges:
        current += delta
        peak = max(peak, current)
    return peak


__all__ = ["StatusAggregator", "latest_event", "overall_progress", "peak_concurrency"]
