"""Command-line entry point for IlluBatch."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

import yaml

from illubatch.config import load_config
from illubatch.logging_utils import configure_logging
from illubatch.runtime import IlluBatchRuntime, load_batch_file


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a batch of illustrations.")
    parser.add_argument("--requests", required=True, help="YAML/JSON file with the batch requests")
    parser.add_argument("--config", help="Path to a configuration file")
    parser.add_argument("--log-level", default=None, help="Console log level (e.g. DEBUG)")
    parser.add_argument("--name", help="Batch name (defaults to the file's name)")
    parser.add_argument("--priority", help="low, normal, high, critical or urgent")
    parser.add_argument("--max-parallel", type=int, help="Concurrent tasks for this batch")
    parser.add_argument("--provider", help="Provider to use instead of the configured default")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        result = load_config(args.config, include_sources=True)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1
    config, sources = result.config, result.sources
    logging_config = dict(config.get("logging", {}))
    logging_config.setdefault("log_dir", config.get("paths", {}).get("logs"))
    logger = configure_logging(logging_config, level=args.log_level)
    logger.info("Loaded configuration from: %s", ", ".join(sources) or "<defaults>")

    try:
        job = load_batch_file(args.requests)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Could not read requests file: %s", exc)
        return 1
    if args.name:
        job.name = args.name
    if args.priority:
        job.priority = args.priority
    if args.max_parallel is not None:
        job.max_parallel = args.max_parallel
    if args.provider:
        job.provider = args.provider

    runtime = IlluBatchRuntime(config, logger)
    try:
        success = asyncio.run(runtime.run(job))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("Interrupted by user.")
        return 1
    except Exception as exc:
        logger.exception("Runtime terminated due to unexpected error: %s", exc)
        return 1
    if runtime.interrupted:
        return 1
    return 0 if success else 2


if __name__ == "__main__":
    sys.exit(main())
