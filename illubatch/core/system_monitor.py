"""Process and host resource sampling via psutil."""

from __future__ import annotations

import os
from typing import Any, Dict

import psutil

_MB = 1024 * 1024


def process_memory_mb() -> float:
    """Resident memory of the current process in megabytes."""

    try:
        return round(psutil.Process(os.getpid()).memory_info().rss / _MB, 2)
    except psutil.Error:  # pragma: no cover - process table unavailable
        return 0.0


class SystemMonitor:
    def __init__(self, *, logger) -> None:
        self.logger = logger
        self._process = psutil.Process(os.getpid())
        # Prime the CPU counters; the first reading is always 0.0.
        self._process.cpu_percent(interval=None)

    def collect(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        try:
            stats["cpu_percent"] = psutil.cpu_percent(interval=None)
            memory = psutil.virtual_memory()
            stats["memory_percent"] = memory.percent
            stats["process_cpu_percent"] = self._process.cpu_percent(interval=None)
            stats["process_memory_mb"] = round(self._process.memory_info().rss / _MB, 2)
        except psutil.Error as exc:  # pragma: no cover - platform specific
            self.logger.debug("System monitor failed: %s", exc)
        return stats


__all__ = ["SystemMonitor", "process_memory_mb"]
