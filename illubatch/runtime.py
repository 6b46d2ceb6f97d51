"""Runtime orchestration for a single CLI batch run."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .core import GracefulShutdown, ProgressReporter, SystemMonitor
from .providers import build_providers
from .output_writer import OutputWriter
from .service import BatchService


@dataclass
class BatchJob:
    """A batch as read from a requests file, before CLI overrides."""

    name: str
    requests: List[Mapping[str, Any]] = field(default_factory=list)
    priority: str = "normal"
    max_parallel: Optional[int] = None
    provider: Optional[str] = None
    description: str = ""


def load_batch_file(path: str | Path) -> BatchJob:
    """Read a YAML or JSON requests file.

    The root is either a list of requests or a mapping with ``requests`` and
    optional ``name``, ``priority``, ``max_parallel``, ``provider`` and
    ``description`` keys.
    """

    source = Path(path)
    with source.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if isinstance(data, list):
        return BatchJob(name=source.stem, requests=data)
    if not isinstance(data, Mapping):
        raise ValueError(f"{source} must contain a list of requests or a mapping with 'requests'")
    requests = data.get("requests")
    if not isinstance(requests, list):
        raise ValueError(f"{source}: 'requests' must be a list")
    return BatchJob(
        name=str(data.get("name") or source.stem),
        requests=requests,
        priority=str(data.get("priority") or "normal"),
        max_parallel=data.get("max_parallel"),
        provider=data.get("provider"),
        description=str(data.get("description") or ""),
    )


class IlluBatchRuntime:
    def __init__(self, config: Dict[str, Any], logger) -> None:
        self.config = config
        self.logger = logger
        self.interrupted = False

    async def run(self, job: BatchJob) -> bool:
        """Run ``job`` to completion; True when every task completed."""

        paths = self.config.get("paths", {})
        metrics_config = self.config.get("metrics", {})
        providers, default_provider = build_providers(self.config, self.logger)
        service = BatchService.from_config(
            self.config,
            providers=providers,
            default_provider=default_provider,
            logger=self.logger,
        )
        writer = OutputWriter(paths.get("outputs"), logger=self.logger)
        shutdown = GracefulShutdown(logger=self.logger)

        async with service:
            submitted = service.submit_batch(
                job.name,
                job.priority,
                job.requests,
                job.max_parallel,
                provider=job.provider,
                description=job.description,
            )
            if not submitted["success"]:
                self.logger.error("Batch rejected: %s", submitted["message"])
                return False
            batch_id = submitted["batch_id"]
            self.logger.info(submitted["message"])

            shutdown.add_callback(lambda: service.cancel_batch(batch_id))
            shutdown.install()
            include_system = bool(metrics_config.get("include_system", True))
            reporter = ProgressReporter(
                paths.get("metrics"),
                source=lambda: service.reports([batch_id]),
                report_interval=float(metrics_config.get("report_interval", 10)),
                include_system=include_system,
                logger=self.logger,
                monitor=SystemMonitor(logger=self.logger) if include_system else None,
                show_progress=bool(metrics_config.get("progress_bar", True)),
            )
            reporter_task = asyncio.create_task(reporter.run(), name="illubatch-progress")
            try:
                waited = await service.wait_for_batch(batch_id)
            finally:
                reporter.stop()
                await asyncio.gather(reporter_task, return_exceptions=True)
                shutdown.uninstall()
            self.interrupted = shutdown.is_triggered()
            if not waited["success"]:
                self.logger.error("Batch %s did not finish: %s", batch_id, waited["message"])
                return False

            status = service.get_batch_status(batch_id)
            for index, task in enumerate(service.scheduler.tasks_for(batch_id)):
                writer.write(task, index=index)

        report = dict(status["report"])
        report.pop("task_details", None)
        self._log_report(report)
        self._write_summary(paths.get("summaries"), {"batch": status["batch"], "report": report})
        return report["cancelled_tasks"] == 0 and report["completed_tasks"] == report["total_tasks"]

    def _log_report(self, report: Mapping[str, Any]) -> None:
        statistics = report["statistics"]
        self.logger.info("=== BATCH SUMMARY ===")
        self.logger.info(
            "Completed: %d/%d  Failed: %d  Cancelled: %d",
            report["completed_tasks"],
            report["total_tasks"],
            report["failed_tasks"],
            report["cancelled_tasks"],
        )
        self.logger.info(
            "Avg execution: %.0fms  Cost: $%.2f  Peak concurrency: %d",
            statistics["average_execution_time_ms"],
            statistics["total_api_costs"],
            statistics["peak_concurrent_tasks"],
        )

    def _write_summary(self, directory: str | None, summary: Dict[str, Any]) -> None:
        if not directory:
            return
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        timestamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
        summary_path = target_dir / f"run-summary-{timestamp}.json"
        summary_path.write_text(json.dumps(summary, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        self.logger.info("Run summary written to %s", summary_path)


__all__ = ["BatchJob", "IlluBatchRuntime", "load_batch_file"]
