"""Translate httpx failures into the provider error hierarchy."""

from __future__ import annotations

from typing import Awaitable

import httpx

from ..errors import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    SafetyFilterError,
    TransientProviderError,
)

_SAFETY_MARKERS = ("safety", "nsfw", "blocked", "responsible ai")
_QUOTA_MARKERS = ("quota", "billing", "insufficient")


async def send(request: Awaitable[httpx.Response], *, provider: str) -> httpx.Response:
    """Await an httpx call and convert transport failures."""

    try:
        return await request
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"{provider} request timed out: {exc}", provider=provider) from exc
    except httpx.TransportError as exc:
        raise NetworkError(f"{provider} request failed: {exc}", provider=provider) from exc


def raise_for_status(response: httpx.Response, *, provider: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = _detail(response)
    message = f"{provider} responded with HTTP {status}: {detail}" if detail else f"{provider} responded with HTTP {status}"
    lowered = detail.lower()
    error: ProviderError
    if status in (401, 403):
        error = AuthenticationError(message, provider=provider, status_code=status)
    elif status == 402:
        error = QuotaExceededError(message, provider=provider, status_code=status)
    elif status in (408, 429) or status >= 500:
        if status == 429 and any(marker in lowered for marker in _QUOTA_MARKERS):
            error = QuotaExceededError(message, provider=provider, status_code=status)
        else:
            error = TransientProviderError(message, provider=provider, status_code=status)
    elif any(marker in lowered for marker in _SAFETY_MARKERS):
        error = SafetyFilterError(message, provider=provider, status_code=status)
    else:
        error = InvalidRequestError(message, provider=provider, status_code=status)
    raise error


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200].strip()
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return str(payload)[:200]


__all__ = ["raise_for_status", "send"]
