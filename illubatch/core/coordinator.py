"""Batch-level lifecycle: submission, cancellation, manual retry, and queries."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ValidationError
from ..logging_utils import batch_context
from ..models import (
    Batch,
    BatchSpec,
    BatchStatusReport,
    IllustrationRequest,
    Task,
    TaskPriority,
    TaskStatus,
)
from ..providers.base import ProviderAdapter
from .aggregator import StatusAggregator
from .retry_policy import RetryPolicy
from .scheduler import Scheduler

HOUR_SECONDS = 3600.0


class BatchCoordinator:
    """Expands submissions into tasks and owns CANCELLED and manual requeue transitions."""

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        providers: Mapping[str, ProviderAdapter],
        default_provider: str,
        retry_policy: RetryPolicy,
        logger: logging.Logger,
        aggregator: StatusAggregator | None = None,
    ) -> None:
        if default_provider not in providers:
            raise ValueError(f"Default provider {default_provider!r} is not configured")
        self.scheduler = scheduler
        self.providers = dict(providers)
        self.default_provider = default_provider
        self.retry_policy = retry_policy
        self.logger = logger
        self.aggregator = aggregator or StatusAggregator()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, spec: BatchSpec) -> str:
        requests = self._validate(spec)
        provider_name = spec.provider or self.default_provider
        provider = self.providers[provider_name]

        batch = Batch(
            id=f"batch_{uuid.uuid4().hex[:12]}",
            name=spec.name.strip(),
            description=spec.description,
            priority=spec.priority,
            max_parallel=spec.max_parallel,
            created_at=self.scheduler.clock(),
            provider_name=provider_name,
            tags=tuple(spec.tags),
        )
        tasks: List[Task] = []
        for request in requests:
            task = Task(
                id=uuid.uuid4().hex,
                batch_id=batch.id,
                request=request,
                priority=request.priority or spec.priority,
                max_retries=self.retry_policy.max_retries,
            )
            if request.depends_on:
                task.depends_on = tuple(tasks[index].id for index in request.depends_on)
                task.status = TaskStatus.WAITING
            tasks.append(task)
        batch.task_ids = [task.id for task in tasks]

        # Everything above is side-effect free; the scheduler registers all tasks at once.
        self.scheduler.enqueue(batch, tasks, provider)
        self.logger.info(
            "Submitted batch %s (%s) with %d task(s)",
            batch.id,
            batch.name,
            len(tasks),
            extra=batch_context(batch.id),
        )
        return batch.id

    def _validate(self, spec: BatchSpec) -> List[IllustrationRequest]:
        if not spec.name or not spec.name.strip():
            raise ValidationError("Batch name must not be empty")
        if not spec.requests:
            raise ValidationError("A batch needs at least one request")
        require_int(spec.max_parallel, "max_parallel", minimum=1)
        if spec.provider is not None and spec.provider not in self.providers:
            raise ValidationError(f"Unknown provider: {spec.provider}")

        requests: List[IllustrationRequest] = []
        for index, raw in enumerate(spec.requests):
            request = raw if isinstance(raw, IllustrationRequest) else IllustrationRequest.from_mapping(raw)
            if not request.prompt or not request.prompt.strip():
                raise ValidationError(f"Request {index} has an empty prompt")
            for dependency in request.depends_on:
                if not 0 <= dependency < index:
                    raise ValidationError(
                        f"Request {index} depends on {dependency}, which is not an earlier request"
                    )
            requests.append(request)

        capacity = self.scheduler.max_queue_size
        if capacity and self.scheduler.pending_count() + len(requests) > capacity:
            raise ValidationError(
                f"Queue is full: {self.scheduler.pending_count()} pending + {len(requests)} new > {capacity}"
            )
        return requests

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def cancel(self, batch_id: str) -> int:
        """Cancel pending tasks now; running ones are cancelled when their call returns."""

        batch = self.scheduler.get_batch(batch_id)
        batch.cancelled = True
        now = self.scheduler.clock()
        cancelled = 0
        deferred = 0
        for task in self.scheduler.tasks_for(batch_id):
            if task.is_pending:
                self.scheduler.withdraw(task)
                task.transition(TaskStatus.CANCELLED)
                task.completed_at = now
                cancelled += 1
            elif task.is_active:
                task.cancel_requested = True
                deferred += 1
        self.scheduler.refresh(batch_id)
        self.logger.info(
            "Cancelled batch %s: %d task(s) cancelled, %d awaiting in-flight calls",
            batch_id,
            cancelled,
            deferred,
            extra=batch_context(batch_id),
        )
        return cancelled

    def retry_failed_tasks(self, batch_id: str) -> int:
        batch = self.scheduler.get_batch(batch_id)
        if batch.cancelled:
            self.logger.info("Batch %s is cancelled; nothing to retry.", batch_id, extra=batch_context(batch_id))
            return 0
        retried = 0
        restored = 0
        skipped = 0
        for task in self.scheduler.tasks_for(batch_id):
            if task.status not in (TaskStatus.FAILED, TaskStatus.TIMEOUT):
                continue
            if not self.retry_policy.should_retry(task):
                skipped += 1
                continue
            task.transition(TaskStatus.QUEUED, revive=True)
            task.progress = 0
            task.retry_count += 1
            task.completed_at = None
            self.scheduler.requeue(task)
            retried += 1
            restored += self.scheduler.restore_dependents(task)
        self.scheduler.refresh(batch_id)
        self.logger.info(
            "Batch %s: %d task(s) requeued, %d dependent(s) waiting again, %d left failed",
            batch_id,
            retried,
            restored,
            skipped,
            extra=batch_context(batch_id),
        )
        return retried + restored

    def pause(self, batch_id: str) -> None:
        batch = self.scheduler.get_batch(batch_id)
        batch.paused = True
        self.logger.info("Batch %s paused; in-flight tasks will finish.", batch_id, extra=batch_context(batch_id))

    def resume(self, batch_id: str) -> None:
        batch = self.scheduler.get_batch(batch_id)
        batch.paused = False
        self.scheduler.wake()
        self.logger.info("Batch %s resumed.", batch_id, extra=batch_context(batch_id))

    def purge_finished(self, older_than_hours: float = 24.0) -> int:
        """Forget batches whose tasks all settled more than ``older_than_hours`` ago."""

        cutoff = self.scheduler.clock() - older_than_hours * HOUR_SECONDS
        purged = 0
        for batch_id in list(self.scheduler.batches):
            tasks = self.scheduler.tasks_for(batch_id)
            if not all(task.is_terminal for task in tasks):
                continue
            finished_at = max((task.completed_at or 0.0 for task in tasks), default=0.0)
            if finished_at <= cutoff:
                self.scheduler.forget(batch_id)
                purged += 1
        if purged:
            self.logger.info("Purged %d finished batch(es)", purged)
        return purged

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_status(self, batch_id: str) -> BatchStatusReport:
        batch = self.scheduler.get_batch(batch_id)
        return self.aggregator.report(batch, self.scheduler.tasks_for(batch_id))

    def list_batches(self) -> List[Dict[str, Any]]:
        summaries: List[Dict[str, Any]] = []
        for batch in self.scheduler.batches.values():
            report = self.aggregator.report(batch, self.scheduler.tasks_for(batch.id))
            summary = batch.to_dict()
            summary.update(
                {
                    "state": batch_state(batch, report),
                    "completed_tasks": report.completed_tasks,
                    "failed_tasks": report.failed_tasks,
                    "running_tasks": report.running_tasks,
                    "queued_tasks": report.queued_tasks,
                    "cancelled_tasks": report.cancelled_tasks,
                    "overall_progress": report.overall_progress,
                }
            )
            summaries.append(summary)
        return summaries

    def queue_statistics(self) -> Dict[str, Any]:
        return self.scheduler.queue_statistics()

    def resolve_priority(self, value: Any, default: Optional[TaskPriority] = None) -> TaskPriority:
        try:
            return TaskPriority.parse(value, default or TaskPriority.NORMAL)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc


def require_int(value: Any, name: str, *, minimum: int) -> int:
    # bool is an int subclass; True must not pass as 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ValidationError(f"{name} must be at least {minimum}, got {value}")
    return value


def batch_state(batch: Batch, report: BatchStatusReport) -> str:
    if not report.is_finished:
        return "paused" if batch.paused else "active"
    if batch.cancelled:
        return "cancelled"
    if report.failed_tasks:
        return "failed" if report.completed_tasks == 0 else "partial"
    return "completed"


__all__ = ["BatchCoordinator", "batch_state", "require_int"]
