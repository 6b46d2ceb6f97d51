"""Periodic batch snapshots to metrics.jsonl and an optional tqdm bar."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from tqdm import tqdm

from ..models import BatchStatusReport
from .system_monitor import SystemMonitor


class ProgressReporter:
    def __init__(
        self,
        metrics_dir: str | Path,
        *,
        source: Callable[[], Sequence[BatchStatusReport]],
        report_interval: float,
        include_system: bool,
        logger,
        monitor: SystemMonitor | None = None,
        show_progress: bool = False,
    ) -> None:
        self.metrics_dir = Path(metrics_dir)
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_path = self.metrics_dir / "metrics.jsonl"
        self.source = source
        self.report_interval = float(report_interval)
        self.include_system = include_system
        self.logger = logger
        self.monitor = monitor
        self.show_progress = show_progress
        self._stop = asyncio.Event()
        self._bar: Optional[tqdm] = None

    # ------------------------------------------------------------------
    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.report_interval)
            except asyncio.TimeoutError:
                self.flush()
        self.flush(final=True)
        self.close()

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    # ------------------------------------------------------------------
    def flush(self, *, final: bool = False) -> None:
        reports = list(self.source())
        timestamp = time.time()
        for report in reports:
            self._append_json(self.snapshot(report, timestamp=timestamp, final=final))
        if self.include_system and self.monitor is not None:
            stats = self.monitor.collect()
            if stats:
                self._append_json({"type": "system", "timestamp": timestamp, **stats})
        if self.show_progress:
            self._update_bar(reports)
        self.logger.debug("Progress snapshot written for %d batch(es)", len(reports))

    @staticmethod
    def snapshot(report: BatchStatusReport, *, timestamp: float, final: bool = False) -> Dict[str, Any]:
        statistics = report.statistics
        return {
            "type": "batch",
            "timestamp": timestamp,
            "final": final,
            "batch_id": report.batch_id,
            "total_tasks": report.total_tasks,
            "completed_tasks": report.completed_tasks,
            "failed_tasks": report.failed_tasks,
            "running_tasks": report.running_tasks,
            "queued_tasks": report.queued_tasks,
            "cancelled_tasks": report.cancelled_tasks,
            "overall_progress": round(report.overall_progress, 4),
            "estimated_remaining_ms": report.estimated_remaining_ms,
            "total_api_costs": statistics.total_api_costs,
            "error_rate": round(statistics.error_rate, 4),
            "throughput_per_hour": round(statistics.throughput_per_hour, 2),
            "peak_concurrent_tasks": statistics.peak_concurrent_tasks,
        }

    def _update_bar(self, reports: Sequence[BatchStatusReport]) -> None:
        total = sum(report.total_tasks + report.cancelled_tasks for report in reports)
        done = sum(
            report.completed_tasks + report.failed_tasks + report.cancelled_tasks for report in reports
        )
        if self._bar is None:
            self._bar = tqdm(total=total, desc="Illustrations", unit="img")
        self._bar.total = total
        self._bar.n = done
        self._bar.set_postfix(
            failed=sum(report.failed_tasks for report in reports),
            running=sum(report.running_tasks for report in reports),
            refresh=False,
        )
        self._bar.refresh()

    def _append_json(self, payload: Mapping[str, Any]) -> None:
        with self.metrics_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


__all__ = ["ProgressReporter"]
