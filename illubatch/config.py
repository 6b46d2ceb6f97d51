"""Configuration loading and validation for IlluBatch."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Tuple

import yaml


PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_PATH = CONFIG_DIR / "config.yaml"
ENV_CONFIG_PATH = "ILLUBATCH_CONFIG"


DEFAULT_CONFIG: Dict[str, Any] = {
    "scheduler": {
        # null: largest max_parallel among active batches; 0: no global cap.
        "global_max_parallel": None,
        "fair_share": True,
        "task_timeout_seconds": 300,
        "max_queue_size": 100,
        "default_max_parallel": 3,
    },
    "retry": {
        "max_retries": 3,
        "delay_seconds": 2.0,
        "delay_step_seconds": 2.0,
        "max_delay_seconds": 30.0,
        "auto_retry": True,
    },
    "providers": {
        "default": "pollinations",
        "pollinations": {
            "enabled": True,
            "base_url": "https://image.pollinations.ai",
            "model": "flux",
            "timeout_seconds": 120,
            "min_interval_seconds": 1.0,
            "enhance": False,
        },
        "imagen": {
            "enabled": False,
            "model": "imagen-3.0-generate-002",
            "api_key_env": "GEMINI_API_KEY",
            "timeout_seconds": 120,
            "cost_per_image": 0.04,
            "person_generation": "allow_adult",
            "min_interval_seconds": 0.0,
        },
    },
    "paths": {
        "outputs": "data/outputs",
        "summaries": "data/summaries",
        "metrics": "data/metrics",
        "logs": "logs",
    },
    "logging": {
        "console_level": "INFO",
        "file_level": "DEBUG",
        "json_logs": False,
        "color": True,
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 5,
        "quiet_http": True,
    },
    "metrics": {
        "report_interval": 10,
        "include_system": True,
        "progress_bar": True,
    },
    "testing": {
        "dry_run": False,
        "dry_run_delay_seconds": 0.2,
        "dry_run_failure_rate": 0.0,
    },
}


@dataclass(frozen=True)
class ConfigLoadResult:
    """Container for the merged configuration."""

    config: Dict[str, Any]
    sources: Tuple[str, ...]


def _ensure_default_config(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(DEFAULT_CONFIG, handle, sort_keys=True)
    tmp.replace(path)


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, MutableMapping):
        raise ValueError(f"Configuration file {path} must contain a mapping at the root")
    return dict(data)


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MutableMapping)
            and isinstance(value, MutableMapping)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_path(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return (base_dir / path).resolve()


def _apply_path_defaults(config: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    paths = dict(config.get("paths", {}))
    for key, rel_path in paths.items():
        if isinstance(rel_path, str):
            paths[key] = str(_resolve_path(base_dir, rel_path))
    config["paths"] = paths
    return config


def _ensure_directories(config: Mapping[str, Any]) -> None:
    for value in config.get("paths", {}).values():
        if value:
            Path(value).mkdir(parents=True, exist_ok=True)


def _collect_sources(path: str | os.PathLike[str] | None) -> Iterable[Tuple[Path, bool]]:
    if path is not None:
        yield Path(path), False
        return
    yield CONFIG_PATH, True
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        yield Path(env_path), False


def _validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    for section in ("scheduler", "retry", "providers", "paths"):
        if not isinstance(config.get(section), Mapping):
            raise ValueError(f"Configuration must define a '{section}' section")

    scheduler = config["scheduler"]
    if float(scheduler.get("task_timeout_seconds") or 0) <= 0:
        raise ValueError("scheduler.task_timeout_seconds must be > 0")
    if int(scheduler.get("default_max_parallel") or 0) < 1:
        raise ValueError("scheduler.default_max_parallel must be >= 1")
    if int(scheduler.get("max_queue_size", 0)) < 0:
        raise ValueError("scheduler.max_queue_size must be >= 0")
    global_cap = scheduler.get("global_max_parallel")
    if global_cap is not None and int(global_cap) < 0:
        raise ValueError("scheduler.global_max_parallel must be null or >= 0")

    retry = config["retry"]
    if int(retry.get("max_retries", 0)) < 0:
        raise ValueError("retry.max_retries must be >= 0")
    for key in ("delay_seconds", "delay_step_seconds", "max_delay_seconds"):
        if float(retry.get(key, 0)) < 0:
            raise ValueError(f"retry.{key} must be >= 0")

    if not config["providers"].get("default"):
        raise ValueError("providers.default must name a provider")
    if float(config.get("metrics", {}).get("report_interval", 1)) <= 0:
        raise ValueError("metrics.report_interval must be > 0")
    return config


def load_config(
    path: str | os.PathLike[str] | None = None,
    *,
    include_sources: bool = False,
) -> ConfigLoadResult | Dict[str, Any]:
    """Load and validate configuration settings.

    Without ``path`` the project's ``config/config.yaml`` is used (written with
    defaults on first load) and the file named by ``ILLUBATCH_CONFIG`` is
    layered on top. An explicit ``path`` must exist and its relative paths are
    resolved against its own directory.
    """

    config: Dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG))
    sources: list[str] = []
    base_dir = PROJECT_ROOT

    for source, required in _collect_sources(path):
        if required:
            _ensure_default_config(source)
        elif path is not None and not source.exists():
            raise FileNotFoundError(f"Configuration file not found: {source}")
        if not source.exists():
            continue
        data = _load_yaml(source)
        config = _deep_merge(config, data)
        sources.append(str(source.resolve()))
        if path is not None:
            base_dir = source.resolve().parent

    config = json.loads(json.dumps(config))  # deep copy via JSON for immutability
    config = _apply_path_defaults(config, base_dir)
    config = _validate_config(config)
    _ensure_directories(config)

    result = ConfigLoadResult(config=config, sources=tuple(sources))
    if include_sources:
        return result
    return result.config


__all__ = ["DEFAULT_CONFIG", "ConfigLoadResult", "load_config"]
