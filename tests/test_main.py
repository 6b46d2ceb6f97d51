"""Tests for the ``main`` module entrypoint helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import yaml

import main
from illubatch.config import ConfigLoadResult
from illubatch.runtime import BatchJob


def install_fakes(monkeypatch, *, success: bool = True, interrupted: bool = False):
    logger = logging.getLogger("test-logger")
    runtime = Mock()
    runtime.run = AsyncMock(return_value=success)
    runtime.interrupted = interrupted
    job = BatchJob(name="from-file", requests=[{"prompt": "a"}])

    configure = Mock(return_value=logger)
    load = Mock(return_value=ConfigLoadResult(config={"logging": {}, "paths": {"logs": "logs"}}, sources=()))
    load_batch = Mock(return_value=job)
    runtime_cls = Mock(return_value=runtime)

    monkeypatch.setattr(main, "configure_logging", configure)
    monkeypatch.setattr(main, "load_config", load)
    monkeypatch.setattr(main, "load_batch_file", load_batch)
    monkeypatch.setattr(main, "IlluBatchRuntime", runtime_cls)
    return configure, load, load_batch, runtime_cls, runtime, job


def test_main_runs_batch_successfully(monkeypatch):
    configure, load, load_batch, runtime_cls, runtime, job = install_fakes(monkeypatch)

    exit_code = main.main(["--requests", "batch.yaml"])

    assert exit_code == 0
    load.assert_called_once_with(None, include_sources=True)
    configure.assert_called_once_with({"log_dir": "logs"}, level=None)
    load_batch.assert_called_once_with("batch.yaml")
    runtime.run.assert_awaited_once_with(job)
    assert job.name == "from-file"


def test_main_honours_overrides(monkeypatch):
    configure, load, _, _, runtime, job = install_fakes(monkeypatch, success=False)

    exit_code = main.main(
        [
            "--requests",
            "batch.yaml",
            "--config",
            "alt.yaml",
            "--log-level",
            "DEBUG",
            "--name",
            "Chapter 9",
            "--priority",
            "urgent",
            "--max-parallel",
            "5",
            "--provider",
            "imagen",
        ]
    )

    assert exit_code == 2
    load.assert_called_once_with("alt.yaml", include_sources=True)
    configure.assert_called_once_with({"log_dir": "logs"}, level="DEBUG")
    assert (job.name, job.priority, job.max_parallel, job.provider) == ("Chapter 9", "urgent", 5, "imagen")


def test_main_reports_interruption(monkeypatch):
    install_fakes(monkeypatch, success=False, interrupted=True)
    assert main.main(["--requests", "batch.yaml"]) == 1


def test_main_rejects_unreadable_config(monkeypatch):
    monkeypatch.setattr(main, "load_config", Mock(side_effect=ValueError("bad config")))
    assert main.main(["--requests", "batch.yaml"]) == 1


def test_main_end_to_end_dry_run(tmp_path: Path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "paths": {"outputs": "out", "summaries": "summaries", "metrics": "metrics", "logs": "logs"},
                "logging": {"color": False},
                "metrics": {"include_system": False, "progress_bar": False},
                "testing": {"dry_run": True, "dry_run_delay_seconds": 0.0},
            }
        ),
        encoding="utf-8",
    )
    requests_path = tmp_path / "requests.yaml"
    requests_path.write_text(yaml.safe_dump({"requests": [{"prompt": "a"}, {"prompt": "b"}]}), encoding="utf-8")

    exit_code = main.main(["--config", str(config_path), "--requests", str(requests_path), "--max-parallel", "2"])

    assert exit_code == 0
    assert (tmp_path / "logs" / "illubatch.log").exists()
    assert len(list((tmp_path / "out").glob("*/*.png"))) == 2
