"""Public batch API: every call returns a ``{"success": ...}`` mapping."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .core.aggregator import StatusAggregator
from .core.coordinator import BatchCoordinator, require_int
from .core.retry_policy import RetryPolicy
from .core.scheduler import Scheduler
from .errors import IlluBatchError, ValidationError
from .models import BatchSpec, BatchStatusReport
from .providers.base import ProviderAdapter

_ACTIVE_STATES = ("active", "paused")
_FAILED_STATES = ("failed", "partial")
_TUNABLE = (
    "global_max_parallel",
    "task_timeout",
    "max_queue_size",
    "fair_share",
    "default_max_parallel",
    "retry",
)


class BatchService:
    """Facade over the coordinator and scheduler.

    No exception leaves a public method: failures are logged and turned into
    ``{"success": False, "message": ...}``. Use it as an async context
    manager, or call :meth:`start` and :meth:`stop` from inside a running
    event loop.
    """

    def __init__(
        self,
        *,
        providers: Mapping[str, ProviderAdapter],
        default_provider: str,
        logger: logging.Logger,
        retry_policy: RetryPolicy | None = None,
        task_timeout: float = 300.0,
        global_max_parallel: int | None = None,
        fair_share: bool = True,
        max_queue_size: int = 100,
        default_max_parallel: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = logger
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_max_parallel = int(default_max_parallel)
        self.scheduler = Scheduler(
            retry_policy=self.retry_policy,
            logger=logger,
            task_timeout=task_timeout,
            global_max_parallel=global_max_parallel,
            fair_share=fair_share,
            max_queue_size=max_queue_size,
            clock=clock,
        )
        self.coordinator = BatchCoordinator(
            scheduler=self.scheduler,
            providers=providers,
            default_provider=default_provider,
            retry_policy=self.retry_policy,
            logger=logger,
            aggregator=StatusAggregator(),
        )

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        providers: Mapping[str, ProviderAdapter],
        default_provider: str,
        logger: logging.Logger,
    ) -> "BatchService":
        scheduler = config.get("scheduler", {})
        return cls(
            providers=providers,
            default_provider=default_provider,
            logger=logger,
            retry_policy=RetryPolicy.from_config(config.get("retry", {})),
            task_timeout=float(scheduler.get("task_timeout_seconds", 300)),
            global_max_parallel=scheduler.get("global_max_parallel"),
            fair_share=bool(scheduler.get("fair_share", True)),
            max_queue_size=int(scheduler.get("max_queue_size", 100)),
            default_max_parallel=int(scheduler.get("default_max_parallel", 3)),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        for provider in self.coordinator.providers.values():
            await provider.aclose()

    async def __aenter__(self) -> "BatchService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def wait_for_batch(self, batch_id: str, timeout: float | None = None) -> Dict[str, Any]:
        try:
            finished = await self.scheduler.wait_for_batch(batch_id, timeout=timeout)
        except Exception as exc:
            return self._failure("wait for batch", exc)
        return {"success": True, "batch_id": batch_id, "finished": finished}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def submit_batch(
        self,
        name: str,
        priority: Any = "normal",
        requests: Sequence[Any] = (),
        max_parallel: int | None = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        try:
            self._ensure_healthy()
            spec = BatchSpec(
                name=name,
                requests=list(requests or ()),
                priority=self.coordinator.resolve_priority(priority),
                max_parallel=self.default_max_parallel if max_parallel is None else max_parallel,
                description=str(extra.get("description") or ""),
                provider=extra.get("provider"),
                tags=tuple(extra.get("tags") or ()),
            )
            batch_id = self.coordinator.submit(spec)
        except Exception as exc:
            return self._failure("submit batch", exc)
        return {
            "success": True,
            "batch_id": batch_id,
            "message": f"Batch {name!r} submitted with {len(spec.requests)} task(s)",
        }

    def cancel_batch(self, batch_id: str) -> Dict[str, Any]:
        try:
            cancelled = self.coordinator.cancel(batch_id)
        except Exception as exc:
            return self._failure("cancel batch", exc)
        return {
            "success": True,
            "cancelled_tasks": cancelled,
            "message": f"Batch {batch_id} cancelled ({cancelled} pending task(s) cancelled)",
        }

    def retry_failed_tasks(self, batch_id: str) -> Dict[str, Any]:
        try:
            self._ensure_healthy()
            retried = self.coordinator.retry_failed_tasks(batch_id)
        except Exception as exc:
            return self._failure("retry failed tasks", exc)
        message = f"Requeued {retried} failed task(s)" if retried else "No failed tasks eligible for retry"
        return {"success": True, "retried_tasks": retried, "message": message}

    def pause_batch(self, batch_id: str) -> Dict[str, Any]:
        try:
            self.coordinator.pause(batch_id)
        except Exception as exc:
            return self._failure("pause batch", exc)
        return {"success": True, "message": f"Batch {batch_id} paused"}

    def resume_batch(self, batch_id: str) -> Dict[str, Any]:
        try:
            self.coordinator.resume(batch_id)
        except Exception as exc:
            return self._failure("resume batch", exc)
        return {"success": True, "message": f"Batch {batch_id} resumed"}

    def cleanup_completed_tasks(self, older_than_hours: float = 24.0) -> Dict[str, Any]:
        try:
            if older_than_hours < 0:
                raise ValidationError("older_than_hours must be >= 0")
            removed = self.coordinator.purge_finished(older_than_hours)
        except Exception as exc:
            return self._failure("clean up batches", exc)
        return {"success": True, "removed_batches": removed, "message": f"Removed {removed} finished batch(es)"}

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        """Change scheduling and retry settings of the running service.

        Accepts any of ``global_max_parallel``, ``task_timeout``,
        ``max_queue_size``, ``fair_share``, ``default_max_parallel`` and
        ``retry`` (a mapping of retry policy fields). Every value is checked
        before any is applied. Tasks already in flight keep the timeout they
        started with.
        """

        try:
            settings = self._validate_settings(changes)
        except Exception as exc:
            return self._failure("update configuration", exc)

        if "retry" in settings:
            self.retry_policy = settings.pop("retry")
            self.scheduler.retry_policy = self.retry_policy
            self.coordinator.retry_policy = self.retry_policy
        if "default_max_parallel" in settings:
            self.default_max_parallel = settings.pop("default_max_parallel")
        for key, value in settings.items():
            setattr(self.scheduler, key, value)
        self.scheduler.wake()
        self.logger.info("Configuration updated: %s", ", ".join(sorted(changes)) or "nothing")
        return {"success": True, "config": self._current_config(), "message": "Configuration updated"}

    def get_config(self) -> Dict[str, Any]:
        return {"success": True, "config": self._current_config()}

    def _validate_settings(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = sorted(set(changes) - set(_TUNABLE))
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(unknown)}")
        settings: Dict[str, Any] = {}
        if "global_max_parallel" in changes:
            value = changes["global_max_parallel"]
            settings["global_max_parallel"] = (
                None if value is None else require_int(value, "global_max_parallel", minimum=0)
            )
        if "task_timeout" in changes:
            value = changes["task_timeout"]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ValidationError(f"task_timeout must be a positive number, got {value!r}")
            settings["task_timeout"] = float(value)
        if "max_queue_size" in changes:
            settings["max_queue_size"] = require_int(changes["max_queue_size"], "max_queue_size", minimum=0)
        if "default_max_parallel" in changes:
            settings["default_max_parallel"] = require_int(
                changes["default_max_parallel"], "default_max_parallel", minimum=1
            )
        if "fair_share" in changes:
            if not isinstance(changes["fair_share"], bool):
                raise ValidationError(f"fair_share must be true or false, got {changes['fair_share']!r}")
            settings["fair_share"] = changes["fair_share"]
        if "retry" in changes:
            retry = changes["retry"]
            if not isinstance(retry, Mapping):
                raise ValidationError("retry must be a mapping of retry settings")
            try:
                policy = dataclasses.replace(self.retry_policy, **retry)
            except TypeError as exc:
                raise ValidationError(f"Invalid retry settings: {exc}") from exc
            require_int(policy.max_retries, "retry.max_retries", minimum=0)
            settings["retry"] = policy
        return settings

    def _current_config(self) -> Dict[str, Any]:
        return {
            "global_max_parallel": self.scheduler.global_max_parallel,
            "task_timeout": self.scheduler.task_timeout,
            "max_queue_size": self.scheduler.max_queue_size,
            "fair_share": self.scheduler.fair_share,
            "default_max_parallel": self.default_max_parallel,
            "retry": dataclasses.asdict(self.retry_policy),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        try:
            report = self.coordinator.get_status(batch_id)
            batch = self.scheduler.get_batch(batch_id)
        except Exception as exc:
            return self._failure("get batch status", exc)
        return {"success": True, "batch": batch.to_dict(), "report": report.to_dict()}

    def get_all_batches_summary(self) -> Dict[str, Any]:
        try:
            batches = self.coordinator.list_batches()
        except Exception as exc:
            return self._failure("summarise batches", exc)
        states = [batch["state"] for batch in batches]
        return {
            "success": True,
            "batches": batches,
            "total_batches": len(batches),
            "active_batches": sum(1 for state in states if state in _ACTIVE_STATES),
            "completed_batches": states.count("completed"),
            "failed_batches": sum(1 for state in states if state in _FAILED_STATES),
            "cancelled_batches": states.count("cancelled"),
        }

    def get_queue_statistics(self) -> Dict[str, Any]:
        try:
            statistics = self.coordinator.queue_statistics()
        except Exception as exc:
            return self._failure("get queue statistics", exc)
        return {"success": True, "statistics": statistics}

    # ------------------------------------------------------------------
    # In-process accessors
    # ------------------------------------------------------------------
    def reports(self, batch_ids: Iterable[str] | None = None) -> List[BatchStatusReport]:
        ids = list(batch_ids) if batch_ids is not None else list(self.scheduler.batches)
        return [self.coordinator.get_status(batch_id) for batch_id in ids if batch_id in self.scheduler.batches]

    # ------------------------------------------------------------------
    def _ensure_healthy(self) -> None:
        error: Optional[BaseException] = self.scheduler.fatal_error
        if error is not None:
            raise IlluBatchError(f"Scheduler stopped after an internal error: {error}")

    def _failure(self, action: str, exc: Exception) -> Dict[str, Any]:
        if isinstance(exc, IlluBatchError):
            self.logger.warning("Could not %s: %s", action, exc)
        else:
            self.logger.exception("Unexpected error while trying to %s", action)
        return {"success": False, "message": str(exc) or type(exc).__name__}


__all__ = ["BatchService"]
