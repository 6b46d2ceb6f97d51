from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Sequence

import pytest

from illubatch.core.retry_policy import RetryPolicy
from illubatch.providers.base import GenerationOptions, ImageResult, ProviderAdapter
from illubatch.service import BatchService


class FakeProvider(ProviderAdapter):
    """Scripted in-process provider.

    ``outcomes`` maps a prompt to the results of its successive calls: an
    exception instance is raised, anything else means success.
    """

    name = "fake"

    def __init__(
        self,
        *,
        delay: float = 0.01,
        outcomes: Dict[str, Sequence[object]] | None = None,
        cost: float = 0.0,
        min_interval_seconds: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.delay = delay
        self.outcomes = {prompt: list(script) for prompt, script in (outcomes or {}).items()}
        self.cost = cost
        self.min_interval_seconds = min_interval_seconds
        self.gate = gate
        self.started: List[str] = []
        self.start_times: List[float] = []
        self.active = 0
        self.peak = 0

    def calculate_cost(self) -> float:
        return self.cost

    async def generate(self, prompt: str, options: GenerationOptions) -> ImageResult:
        self.started.append(prompt)
        self.start_times.append(asyncio.get_running_loop().time())
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delay)
            script = self.outcomes.get(prompt)
            if script:
                outcome = script.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
            return ImageResult(
                data=b"\x89PNG fake",
                content_type="image/png",
                provider=self.name,
                prompt=prompt,
                cost=self.cost,
            )
        finally:
            self.active -= 1


def fast_policy(**overrides) -> RetryPolicy:
    options = {"max_retries": 2, "delay_seconds": 0.0, "delay_step_seconds": 0.0, "max_delay_seconds": 0.0}
    options.update(overrides)
    return RetryPolicy(**options)


def make_service(provider: ProviderAdapter, *, retry_policy: RetryPolicy | None = None, **options) -> BatchService:
    return BatchService(
        providers={provider.name: provider},
        default_provider=provider.name,
        logger=logging.getLogger("illubatch-tests"),
        retry_policy=retry_policy or fast_policy(),
        **options,
    )


def prompts(*names: str) -> List[Dict[str, object]]:
    return [{"prompt": name} for name in names]


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("illubatch-tests")
