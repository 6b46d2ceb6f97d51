"""Offline provider used when ``testing.dry_run`` is enabled."""

from __future__ import annotations

import asyncio
import base64
import logging
import random

from ..errors import TransientProviderError
from .base import GenerationOptions, ImageResult, ProviderAdapter
from .prompting import build_prompt

# 1x1 transparent PNG.
PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class DryRunProvider(ProviderAdapter):
    name = "dry_run"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        delay_seconds: float = 0.2,
        failure_rate: float = 0.0,
        random_source: random.Random | None = None,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        self.logger = logger
        self.delay_seconds = float(delay_seconds)
        self.failure_rate = float(failure_rate)
        self.random = random_source or random.Random()

    def calculate_cost(self) -> float:
        return 0.0

    async def generate(self, prompt: str, options: GenerationOptions) -> ImageResult:
        await asyncio.sleep(self.delay_seconds)
        if self.failure_rate and self.random.random() < self.failure_rate:
            raise TransientProviderError("Simulated provider failure", provider=self.name)
        engineered = build_prompt(prompt, options)
        self.logger.debug("Dry run generated placeholder for %r", engineered[:60])
        return ImageResult(
            data=PLACEHOLDER_PNG,
            content_type="image/png",
            provider=self.name,
            prompt=engineered,
            cost=self.calculate_cost(),
            metadata={"dry_run": True},
        )


__all__ = ["DryRunProvider", "PLACEHOLDER_PNG"]
