"""Write generated images and their JSON sidecars atomically."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

from .models import Task, TaskStatus
from .providers.prompting import prompt_hash

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class OutputWriter:
    """Layout: ``<outputs>/<batch_id>/<nnn>-<task>.<ext>`` plus ``.json`` sidecar.

    Tasks that did not complete only get a sidecar, under ``failed/``.
    """

    def __init__(self, outputs_dir: str | Path, *, logger) -> None:
        self.outputs_dir = Path(outputs_dir)
        self.logger = logger
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def write(self, task: Task, *, index: int) -> Path:
        """Persist ``task`` and return the path of its sidecar."""

        batch_dir = self.outputs_dir / task.batch_id
        stem = f"{index:03d}-{task.id[:8]}"
        record = self._build_record(task)
        if task.status is TaskStatus.COMPLETED and task.result is not None:
            batch_dir.mkdir(parents=True, exist_ok=True)
            extension = _EXTENSIONS.get(task.result.content_type, ".bin")
            image_path = batch_dir / f"{stem}{extension}"
            self._atomic_write(image_path, task.result.data)
            record["image_path"] = str(image_path)
            sidecar = batch_dir / f"{stem}.json"
        else:
            failed_dir = batch_dir / "failed"
            failed_dir.mkdir(parents=True, exist_ok=True)
            sidecar = failed_dir / f"{stem}.json"
        payload = json.dumps(record, indent=2, ensure_ascii=False) + "\n"
        self._atomic_write(sidecar, payload.encode("utf-8"))
        self.logger.debug("Wrote output for task %s to %s", task.id, sidecar)
        return sidecar

    def _build_record(self, task: Task) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "task_id": task.id,
            "batch_id": task.batch_id,
            "status": task.status.value,
            "retry_count": task.retry_count,
            "error_message": task.error_message,
            "request": task.request.to_dict(),
            "performance_metrics": asdict(task.metrics),
        }
        if task.result is not None:
            record["provider"] = task.result.provider
            record["engineered_prompt"] = task.result.prompt
            record["prompt_hash"] = prompt_hash(task.result.prompt)
            record["content_type"] = task.result.content_type
            record["size_bytes"] = task.result.size_bytes
            record["provider_metadata"] = task.result.metadata
        return record

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)


__all__ = ["OutputWriter"]
