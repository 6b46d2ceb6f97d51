"""Async adapter for the free Pollinations image endpoint."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict
from urllib.parse import quote

import httpx

from ..errors import TransientProviderError
from .base import GenerationOptions, ImageResult, ProviderAdapter, SafetyLevel
from .http import raise_for_status, send
from .prompting import build_prompt, dimensions, negative_prompt

DEFAULT_BASE_URL = "https://image.pollinations.ai"


class PollinationsProvider(ProviderAdapter):
    name = "pollinations"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "flux",
        timeout: float = 120.0,
        min_interval_seconds: float = 1.0,
        enhance: bool = False,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.logger = logger
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.enhance = enhance
        self.min_interval_seconds = float(min_interval_seconds)
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout, follow_redirects=True)

    def calculate_cost(self) -> float:
        return 0.0

    def build_request(self, prompt: str, options: GenerationOptions) -> tuple[str, Dict[str, Any]]:
        engineered = build_prompt(prompt, options)
        width, height = dimensions(options.aspect_ratio)
        params: Dict[str, Any] = {
            "width": width,
            "height": height,
            "model": self.model,
            "nologo": "true",
            "private": "true",
            "enhance": "true" if self.enhance else "false",
            "safe": "false" if options.safety_level is SafetyLevel.BLOCK_FEW else "true",
        }
        if options.seed is not None:
            params["seed"] = options.seed
        negative = negative_prompt(options)
        if negative:
            params["negative_prompt"] = negative
        return f"/prompt/{quote(engineered, safe='')}", params

    async def generate(self, prompt: str, options: GenerationOptions) -> ImageResult:
        path, params = self.build_request(prompt, options)
        start = time.perf_counter()
        response = await send(self._client.get(path, params=params), provider=self.name)
        elapsed = time.perf_counter() - start
        raise_for_status(response, provider=self.name)

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            raise TransientProviderError(
                f"{self.name} returned {content_type or 'no content type'} instead of an image",
                provider=self.name,
                status_code=response.status_code,
            )
        if not response.content:
            raise TransientProviderError(f"{self.name} returned an empty image", provider=self.name)

        self.logger.debug("%s responded in %.2fs (%d bytes)", self.name, elapsed, len(response.content))
        return ImageResult(
            data=response.content,
            content_type=content_type,
            provider=self.name,
            prompt=build_prompt(prompt, options),
            cost=self.calculate_cost(),
            metadata={
                "model": self.model,
                "width": params["width"],
                "height": params["height"],
                "seed": options.seed,
                "elapsed_seconds": round(elapsed, 3),
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["PollinationsProvider", "DEFAULT_BASE_URL"]
