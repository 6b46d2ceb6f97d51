"""Event-driven priority scheduler that drives tasks through their providers."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..errors import (
    ConcurrencyExceededError,
    DependencyFailedError,
    InvalidTransitionError,
    NotFoundError,
    ProviderTimeoutError,
)
from ..logging_utils import batch_context, task_context
from ..models import Batch, Task, TaskStatus
from ..providers.base import ImageResult, ProviderAdapter
from .retry_policy import RetryPolicy
from .system_monitor import process_memory_mb

# Dependency outcomes that keep a dependent failed.
_BLOCKING = (TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.CANCELLED)


class Scheduler:
    """Owns the task registry and every RUNNING/terminal transition.

    One logical loop runs on the event loop and sleeps until something
    changes: a submission, a freed slot, an expired retry delay, an expired
    rate-limit spacing, or a resumed batch. Each wake-up fills every free
    slot with the best ready task.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy,
        logger: logging.Logger,
        task_timeout: float = 300.0,
        global_max_parallel: int | None = None,
        fair_share: bool = True,
        max_queue_size: int = 100,
        clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], float] = process_memory_mb,
    ) -> None:
        self.retry_policy = retry_policy
        self.logger = logger
        self.task_timeout = float(task_timeout)
        self.global_max_parallel = global_max_parallel
        self.fair_share = fair_share
        self.max_queue_size = int(max_queue_size)
        self.clock = clock
        self.memory_probe = memory_probe

        self.batches: Dict[str, Batch] = {}
        self.tasks: Dict[str, Task] = {}
        self._providers: Dict[str, ProviderAdapter] = {}
        self._queue: Dict[str, Task] = {}
        self._running: Dict[str, int] = {}
        self._total_running = 0
        self._peak_running = 0
        self._inflight: Dict[str, asyncio.Task] = {}
        self._abandoned: Set[asyncio.Future] = set()
        self._next_dispatch_at: Dict[str, float] = {}
        self._finished_events: Dict[str, asyncio.Event] = {}
        self._timers: Set[asyncio.TimerHandle] = set()
        self._sequence = itertools.count()

        self._wakeup = asyncio.Event()
        self._stopping = False
        self._loop_task: Optional[asyncio.Task] = None
        self._fatal: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._stopping = False
        self._loop_task = asyncio.create_task(self.run(), name="illubatch-scheduler")

    async def run(self) -> None:
        self.logger.debug("Scheduler loop started.")
        while not self._stopping:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._fatal is not None:
                raise self._fatal
            if self._stopping:
                break
            try:
                self._dispatch_ready()
            except (ConcurrencyExceededError, InvalidTransitionError) as exc:
                self.logger.critical("Scheduler invariant violated: %s", exc)
                self._fatal = exc
                raise
        self.logger.debug("Scheduler loop exiting.")

    async def stop(self) -> None:
        self._stopping = True
        self.wake()
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        inflight = list(self._inflight.values())
        for job in inflight:
            job.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        # Calls abandoned after a timeout still hold provider clients.
        abandoned = list(self._abandoned)
        for call in abandoned:
            call.cancel()
        if abandoned:
            await asyncio.gather(*abandoned, return_exceptions=True)
        self._abandoned.clear()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

    def wake(self) -> None:
        self._wakeup.set()

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def enqueue(self, batch: Batch, tasks: List[Task], provider: ProviderAdapter) -> None:
        """Register ``batch`` and all of its tasks in one step."""

        if batch.id in self.batches:
            raise ValueError(f"Batch {batch.id} is already registered")
        now = self.clock()
        self.batches[batch.id] = batch
        self._providers[batch.id] = provider
        self._running[batch.id] = 0
        self._finished_events[batch.id] = asyncio.Event()
        for task in tasks:
            task.sequence = next(self._sequence)
            task.enqueued_at = now
            self.tasks[task.id] = task
            if task.status is TaskStatus.QUEUED:
                self._queue[task.id] = task
        self.logger.info(
            "Enqueued %d task(s) for batch %s (%s) max_parallel=%d provider=%s",
            len(tasks),
            batch.id,
            batch.name,
            batch.max_parallel,
            provider.name,
            extra=batch_context(batch.id),
        )
        self.wake()

    def requeue(self, task: Task) -> None:
        """Put a task that was just moved back to QUEUED at the tail of its priority."""

        task.sequence = next(self._sequence)
        task.enqueued_at = self.clock()
        self._queue[task.id] = task
        event = self._finished_events.get(task.batch_id)
        if event is not None:
            event.clear()
        self.wake()

    def withdraw(self, task: Task) -> None:
        self._queue.pop(task.id, None)

    def get_batch(self, batch_id: str) -> Batch:
        try:
            return self.batches[batch_id]
        except KeyError:
            raise NotFoundError(f"Unknown batch: {batch_id}") from None

    def tasks_for(self, batch_id: str) -> List[Task]:
        batch = self.get_batch(batch_id)
        return [self.tasks[task_id] for task_id in batch.task_ids]

    def pending_count(self) -> int:
        return sum(1 for task in self.tasks.values() if task.is_pending)

    def forget(self, batch_id: str) -> None:
        batch = self.batches.pop(batch_id)
        for task_id in batch.task_ids:
            self.tasks.pop(task_id, None)
            self._queue.pop(task_id, None)
        self._providers.pop(batch_id, None)
        self._running.pop(batch_id, None)
        self._next_dispatch_at.pop(batch_id, None)
        self._finished_events.pop(batch_id, None)

    # ------------------------------------------------------------------
    # Completion tracking
    # ------------------------------------------------------------------
    def refresh(self, batch_id: str) -> None:
        """Re-evaluate whether a batch has settled and wake the loop."""

        event = self._finished_events.get(batch_id)
        if event is not None:
            if all(self.tasks[task_id].is_terminal for task_id in self.batches[batch_id].task_ids):
                event.set()
            else:
                event.clear()
        self.wake()

    async def wait_for_batch(self, batch_id: str, timeout: float | None = None) -> bool:
        """Wait until every task of the batch is terminal; False on timeout."""

        self.get_batch(batch_id)
        event = self._finished_events[batch_id]
        if event.is_set():
            return True
        waiter = asyncio.ensure_future(event.wait())
        watched = {waiter}
        if self._loop_task is not None:
            watched.add(self._loop_task)
        try:
            done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        if waiter in done:
            return True
        if self._loop_task is not None and self._loop_task in done and self._loop_task.exception():
            raise self._loop_task.exception()
        return False

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _global_cap(self) -> int | None:
        if self.global_max_parallel == 0:
            return None
        if self.global_max_parallel is not None:
            return int(self.global_max_parallel)
        limits = [
            batch.max_parallel
            for batch in self.batches.values()
            if not batch.cancelled and self._has_live_tasks(batch)
        ]
        return max(limits) if limits else None

    def _has_live_tasks(self, batch: Batch) -> bool:
        return self._running.get(batch.id, 0) > 0 or any(
            task.batch_id == batch.id for task in self._queue.values()
        )

    def _candidates(self, now: float) -> tuple[List[Task], float | None]:
        ready: List[Task] = []
        earliest_blocked: float | None = None
        for task in self._queue.values():
            batch = self.batches[task.batch_id]
            if batch.cancelled or batch.paused:
                continue
            if self._running[batch.id] >= batch.max_parallel:
                continue
            not_before = self._next_dispatch_at.get(batch.id, 0.0)
            if now < not_before:
                if earliest_blocked is None or not_before < earliest_blocked:
                    earliest_blocked = not_before
                continue
            ready.append(task)
        return ready, earliest_blocked

    def _select(self, now: float) -> tuple[Task | None, float | None]:
        cap = self._global_cap()
        if cap is not None and self._total_running >= cap:
            return None, None
        ready, earliest_blocked = self._candidates(now)
        if not ready:
            return None, earliest_blocked
        pool = ready
        if self.fair_share:
            starving = [task for task in ready if self._running[task.batch_id] == 0]
            if starving:
                pool = starving
        return min(pool, key=lambda task: (-int(task.priority), task.sequence)), earliest_blocked

    def _dispatch_ready(self) -> None:
        loop = asyncio.get_running_loop()
        earliest_blocked: float | None = None
        while True:
            task, blocked = self._select(loop.time())
            if blocked is not None:
                earliest_blocked = blocked
            if task is None:
                break
            self._start(task)
        if earliest_blocked is not None:
            self._call_later(max(0.0, earliest_blocked - loop.time()), self.wake)

    def _start(self, task: Task) -> None:
        batch = self.batches[task.batch_id]
        if self._running[batch.id] >= batch.max_parallel:
            raise ConcurrencyExceededError(
                f"Batch {batch.id} already runs {self._running[batch.id]}/{batch.max_parallel} task(s)"
            )
        cap = self._global_cap()
        if cap is not None and self._total_running >= cap:
            raise ConcurrencyExceededError(f"Global cap of {cap} running task(s) reached")

        provider = self._providers[batch.id]
        loop = asyncio.get_running_loop()
        now = self.clock()
        del self._queue[task.id]
        task.transition(TaskStatus.RUNNING)
        task.attempt += 1
        task.started_at = now
        task.completed_at = None
        task.metrics.queue_time_ms += int(max(0.0, now - (task.enqueued_at or now)) * 1000)
        task.execution_windows.append((now, None))
        task.advance_progress(10)

        self._running[batch.id] += 1
        self._total_running += 1
        self._peak_running = max(self._peak_running, self._total_running)
        if provider.min_interval_seconds > 0:
            self._next_dispatch_at[batch.id] = loop.time() + provider.min_interval_seconds

        self.logger.debug(
            "Dispatching task %s (batch=%s priority=%s attempt=%d) [%d/%d running]",
            task.id,
            batch.id,
            task.priority.name,
            task.attempt,
            self._running[batch.id],
            batch.max_parallel,
            extra=task_context(task),
        )
        job = asyncio.create_task(self._execute(task, provider, task.attempt), name=f"illustration-{task.id}")
        self._inflight[task.id] = job

    async def _execute(self, task: Task, provider: ProviderAdapter, attempt: int) -> None:
        call = asyncio.ensure_future(provider.generate(task.request.prompt, task.request.generation_options()))
        task.advance_progress(20)
        try:
            done, _ = await asyncio.wait({call}, timeout=self.task_timeout)
        except asyncio.CancelledError:
            call.cancel()
            raise
        try:
            if call not in done:
                # The call is abandoned, not killed; whatever it returns later is dropped.
                self._abandoned.add(call)
                call.add_done_callback(self._discard_late_result)
                self._finish(
                    task,
                    attempt,
                    error=ProviderTimeoutError(
                        f"Generation exceeded {self.task_timeout:g}s", provider=provider.name
                    ),
                    timed_out=True,
                )
                return
            try:
                result = call.result()
            except asyncio.CancelledError:
                self._finish(task, attempt, error=ProviderTimeoutError("Generation call was cancelled", provider=provider.name))
            except Exception as exc:
                self._finish(task, attempt, error=exc)
            else:
                self._finish(task, attempt, result=result)
        except (ConcurrencyExceededError, InvalidTransitionError) as exc:
            self.logger.critical(
                "Scheduler invariant violated while finishing %s: %s", task.id, exc, extra=task_context(task)
            )
            self._fatal = exc
            self.wake()

    def _discard_late_result(self, call: asyncio.Future) -> None:
        self._abandoned.discard(call)
        if call.cancelled():
            return
        error = call.exception()
        if error is not None:
            self.logger.debug("Abandoned generation call failed late: %s", error)
        else:
            self.logger.debug("Discarded late result from an abandoned generation call.")

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def _finish(
        self,
        task: Task,
        attempt: int,
        *,
        result: ImageResult | None = None,
        error: BaseException | None = None,
        timed_out: bool = False,
    ) -> None:
        if self._inflight.get(task.id) is asyncio.current_task():
            del self._inflight[task.id]
        if task.attempt != attempt or task.status is not TaskStatus.RUNNING:
            self.logger.debug(
                "Dropping stale outcome for task %s (attempt %d)", task.id, attempt, extra=task_context(task)
            )
            return

        batch = self.batches[task.batch_id]
        now = self.clock()
        task.close_window(now)
        self._running[batch.id] -= 1
        self._total_running -= 1
        task.metrics.execution_time_ms += int(max(0.0, now - (task.started_at or now)) * 1000)
        task.metrics.api_calls_count += result.api_calls if result is not None else 1
        if result is not None and result.memory_usage_mb is not None:
            task.metrics.memory_usage_mb = float(result.memory_usage_mb)
        else:
            task.metrics.memory_usage_mb = self.memory_probe()

        if task.cancel_requested or batch.cancelled:
            task.transition(TaskStatus.CANCELLED)
            task.completed_at = now
            self.logger.info(
                "Task %s cancelled after its in-flight call returned.", task.id, extra=task_context(task)
            )
            self._fail_dependents(task)
        elif error is None:
            task.result = result
            task.metrics.total_cost += result.cost
            task.advance_progress(100)
            task.transition(TaskStatus.COMPLETED)
            task.completed_at = now
            self.logger.info(
                "Task %s completed in %dms (%d bytes)",
                task.id,
                task.metrics.execution_time_ms,
                result.size_bytes,
                extra=task_context(task),
            )
            self._release_dependents(task)
        else:
            task.record_error(error)
            if self.retry_policy.auto_retry and self.retry_policy.should_retry(task):
                self._schedule_retry(task)
            else:
                task.transition(TaskStatus.TIMEOUT if timed_out else TaskStatus.FAILED)
                task.completed_at = now
                self.logger.warning(
                    "Task %s %s after %d retr%s: %s",
                    task.id,
                    task.status.value,
                    task.retry_count,
                    "y" if task.retry_count == 1 else "ies",
                    task.error_message,
                    extra=task_context(task),
                )
                self._fail_dependents(task)
        self.refresh(batch.id)

    def _schedule_retry(self, task: Task) -> None:
        delay = self.retry_policy.delay_for(task)
        task.transition(TaskStatus.RETRYING)
        task.retry_count += 1
        self.logger.warning(
            "Task %s failed (%s); retry %d/%d in %.1fs",
            task.id,
            task.last_error,
            task.retry_count,
            self.retry_policy.max_retries,
            delay,
            extra=task_context(task),
        )
        self._call_later(delay, self._requeue_after_delay, task.id, task.attempt)

    def _requeue_after_delay(self, task_id: str, attempt: int) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.attempt != attempt or task.status is not TaskStatus.RETRYING:
            return
        task.progress = 0
        task.transition(TaskStatus.QUEUED)
        self.requeue(task)

    def _call_later(self, delay: float, callback: Callable[..., None], *args: object) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _run() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, _run)
        self._timers.add(handle)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------
    def _dependents(self, task: Task) -> Iterable[Task]:
        batch = self.batches[task.batch_id]
        for task_id in batch.task_ids:
            candidate = self.tasks[task_id]
            if candidate.status is TaskStatus.WAITING and task.id in candidate.depends_on:
                yield candidate

    def _release_dependents(self, task: Task) -> None:
        for dependent in list(self._dependents(task)):
            if all(self.tasks[dep].status is TaskStatus.COMPLETED for dep in dependent.depends_on):
                dependent.transition(TaskStatus.QUEUED)
                self.requeue(dependent)

    def _fail_dependents(self, task: Task) -> None:
        for dependent in list(self._dependents(task)):
            dependent.record_error(
                DependencyFailedError(f"Dependency {task.id} ended as {task.status.value}")
            )
            dependent.transition(TaskStatus.FAILED)
            dependent.completed_at = self.clock()
            self._fail_dependents(dependent)

    def restore_dependents(self, task: Task) -> int:
        """Move tasks failed only by ``task``'s failure back to WAITING; returns how many."""

        batch = self.batches[task.batch_id]
        restored = 0
        for task_id in batch.task_ids:
            dependent = self.tasks[task_id]
            if (
                dependent.status is not TaskStatus.FAILED
                or not isinstance(dependent.last_error, DependencyFailedError)
                or task.id not in dependent.depends_on
            ):
                continue
            if any(self.tasks[dep].status in _BLOCKING for dep in dependent.depends_on):
                continue
            dependent.transition(TaskStatus.WAITING, revive=True)
            dependent.last_error = None
            dependent.completed_at = None
            dependent.progress = 0
            restored += 1 + self.restore_dependents(dependent)
        return restored

    def queue_statistics(self) -> Dict[str, object]:
        return {
            "batches": len(self.batches),
            "queued_tasks": len(self._queue),
            "pending_tasks": self.pending_count(),
            "running_tasks": self._total_running,
            "peak_running_tasks": self._peak_running,
            "global_cap": self._global_cap(),
            "max_queue_size": self.max_queue_size,
            "queue_utilization": (self.pending_count() / self.max_queue_size) if self.max_queue_size else 0.0,
        }


__all__ = ["Scheduler"]
