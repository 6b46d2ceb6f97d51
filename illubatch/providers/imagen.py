"""Async adapter for Google's Imagen models on the Gemini API."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any, Dict, Mapping

import httpx

from ..errors import AuthenticationError, SafetyFilterError, TransientProviderError
from .base import GenerationOptions, ImageResult, ProviderAdapter, SafetyLevel
from .http import raise_for_status, send
from .prompting import build_prompt, negative_prompt

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "imagen-3.0-generate-002"
DEFAULT_COST_PER_IMAGE = 0.04

SAFETY_SETTINGS = {
    SafetyLevel.BLOCK_MOST: "block_low_and_above",
    SafetyLevel.BLOCK_SOME: "block_medium_and_above",
    SafetyLevel.BLOCK_FEW: "block_only_high",
}


class ImagenProvider(ProviderAdapter):
    """Paid provider; each successful image is charged ``cost_per_image``."""

    name = "imagen"

    def __init__(
        self,
        *,
        api_key: str | None,
        logger: logging.Logger,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        cost_per_image: float = DEFAULT_COST_PER_IMAGE,
        person_generation: str = "allow_adult",
        min_interval_seconds: float = 0.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.logger = logger
        self.model = model
        self.cost_per_image = float(cost_per_image)
        self.person_generation = person_generation
        self.min_interval_seconds = float(min_interval_seconds)
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    def calculate_cost(self) -> float:
        return self.cost_per_image

    def build_payload(self, prompt: str, options: GenerationOptions) -> Dict[str, Any]:
        instance: Dict[str, Any] = {"prompt": build_prompt(prompt, options)}
        negative = negative_prompt(options)
        if negative:
            instance["negativePrompt"] = negative
        parameters: Dict[str, Any] = {
            "sampleCount": 1,
            "aspectRatio": options.aspect_ratio.value,
            "personGeneration": self.person_generation,
            "safetySetting": SAFETY_SETTINGS[options.safety_level],
        }
        if options.seed is not None:
            # Imagen only honours a seed when watermarking is off.
            parameters["seed"] = options.seed
            parameters["addWatermark"] = False
        return {"instances": [instance], "parameters": parameters}

    async def generate(self, prompt: str, options: GenerationOptions) -> ImageResult:
        if not self.api_key:
            raise AuthenticationError("No API key configured for imagen", provider=self.name)
        payload = self.build_payload(prompt, options)
        start = time.perf_counter()
        response = await send(
            self._client.post(
                f"/models/{self.model}:predict",
                json=payload,
                headers={"x-goog-api-key": self.api_key},
            ),
            provider=self.name,
        )
        elapsed = time.perf_counter() - start
        raise_for_status(response, provider=self.name)
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientProviderError(f"{self.name} returned invalid JSON", provider=self.name) from exc

        image, mime_type = self.extract_image(data)
        self.logger.debug("%s responded in %.2fs (%d bytes)", self.model, elapsed, len(image))
        return ImageResult(
            data=image,
            content_type=mime_type,
            provider=self.name,
            prompt=payload["instances"][0]["prompt"],
            cost=self.calculate_cost(),
            metadata={
                "model": self.model,
                "aspect_ratio": options.aspect_ratio.value,
                "seed": options.seed,
                "elapsed_seconds": round(elapsed, 3),
            },
        )

    def extract_image(self, data: Mapping[str, Any]) -> tuple[bytes, str]:
        predictions = data.get("predictions") if isinstance(data, Mapping) else None
        filtered_reason = None
        for prediction in predictions or []:
            if not isinstance(prediction, Mapping):
                continue
            encoded = prediction.get("bytesBase64Encoded")
            if isinstance(encoded, str) and encoded:
                try:
                    return base64.b64decode(encoded), str(prediction.get("mimeType") or "image/png")
                except (binascii.Error, ValueError) as exc:
                    raise TransientProviderError(
                        f"{self.name} returned undecodable image data", provider=self.name
                    ) from exc
            filtered_reason = filtered_reason or prediction.get("raiFilteredReason")
        if filtered_reason or not predictions:
            # An empty prediction list is how Imagen reports a prompt it refused.
            raise SafetyFilterError(
                f"{self.name} filtered the prompt: {filtered_reason or 'no image returned'}",
                provider=self.name,
            )
        raise TransientProviderError(f"{self.name} returned no image data", provider=self.name)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["ImagenProvider", "DEFAULT_COST_PER_IMAGE", "DEFAULT_MODEL"]
