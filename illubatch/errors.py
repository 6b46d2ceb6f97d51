"""Exception hierarchy shared by the batch orchestrator and its providers."""

from __future__ import annotations


class IlluBatchError(Exception):
    pass


class ValidationError(IlluBatchError):
    """Rejected submission input; nothing was created."""


class NotFoundError(IlluBatchError):
    pass


class ConcurrencyExceededError(IlluBatchError):
    """Raised when a dispatch would break a concurrency cap. Always a bug."""


class InvalidTransitionError(IlluBatchError):
    """Raised when a task is moved along an edge the state machine forbids."""


class DependencyFailedError(IlluBatchError):
    """A task this one waits on ended without completing."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(IlluBatchError):
    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RetryableProviderError(ProviderError):
    pass


class TerminalProviderError(ProviderError):
    pass


class NetworkError(RetryableProviderError):
    pass


class TransientProviderError(RetryableProviderError):
    pass


class ProviderTimeoutError(RetryableProviderError):
    pass


class AuthenticationError(TerminalProviderError):
    pass


class SafetyFilterError(TerminalProviderError):
    pass


class InvalidRequestError(TerminalProviderError):
    pass


class QuotaExceededError(TerminalProviderError):
    pass


__all__ = [
    "IlluBatchError",
    "ValidationError",
    "NotFoundError",
    "ConcurrencyExceededError",
    "InvalidTransitionError",
    "DependencyFailedError",
    "ProviderError",
    "RetryableProviderError",
    "TerminalProviderError",
    "NetworkError",
    "TransientProviderError",
    "ProviderTimeoutError",
    "AuthenticationError",
    "SafetyFilterError",
    "InvalidRequestError",
    "QuotaExceededError",
]
