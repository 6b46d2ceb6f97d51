"""Build provider adapters from the ``providers`` configuration section."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Tuple

from .base import ProviderAdapter
from .dry_run import DryRunProvider
from .imagen import DEFAULT_COST_PER_IMAGE, DEFAULT_MODEL, ImagenProvider
from .pollinations import DEFAULT_BASE_URL, PollinationsProvider


def build_providers(
    config: Mapping[str, Any], logger: logging.Logger
) -> Tuple[Dict[str, ProviderAdapter], str]:
    """Return ``(adapters by name, default provider name)``.

    With ``testing.dry_run`` enabled every request is routed to the offline
    placeholder provider instead of a real service.
    """

    section = config.get("providers", {}) or {}
    testing = config.get("testing", {}) or {}
    if testing.get("dry_run"):
        dry = DryRunProvider(
            logger=logger,
            delay_seconds=float(testing.get("dry_run_delay_seconds", 0.2)),
            failure_rate=float(testing.get("dry_run_failure_rate", 0.0)),
        )
        logger.warning("Dry run enabled; no provider requests will be sent.")
        return {dry.name: dry}, dry.name

    providers: Dict[str, ProviderAdapter] = {}
    pollinations = section.get("pollinations", {}) or {}
    if pollinations.get("enabled", True):
        providers["pollinations"] = PollinationsProvider(
            logger=logger,
            base_url=str(pollinations.get("base_url") or DEFAULT_BASE_URL),
            model=str(pollinations.get("model") or "flux"),
            timeout=float(pollinations.get("timeout_seconds", 120)),
            min_interval_seconds=float(pollinations.get("min_interval_seconds", 1.0)),
            enhance=bool(pollinations.get("enhance", False)),
        )

    imagen = section.get("imagen", {}) or {}
    if imagen.get("enabled", False):
        api_key = imagen.get("api_key") or os.getenv(str(imagen.get("api_key_env") or "GEMINI_API_KEY"))
        if not api_key:
            logger.warning("Imagen is enabled but no API key was found; its requests will fail.")
        providers["imagen"] = ImagenProvider(
            api_key=api_key,
            logger=logger,
            model=str(imagen.get("model") or DEFAULT_MODEL),
            timeout=float(imagen.get("timeout_seconds", 120)),
            cost_per_image=float(imagen.get("cost_per_image", DEFAULT_COST_PER_IMAGE)),
            person_generation=str(imagen.get("person_generation") or "allow_adult"),
            min_interval_seconds=float(imagen.get("min_interval_seconds", 0.0)),
        )

    if not providers:
        raise ValueError("No image providers are enabled in the configuration")
    default = str(section.get("default") or next(iter(providers)))
    if default not in providers:
        raise ValueError(f"Default provider {default!r} is not enabled")
    logger.info("Configured provider(s): %s (default=%s)", ", ".join(providers), default)
    return providers, default


__all__ = ["build_providers"]
