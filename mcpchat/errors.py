"""Error taxonomy for the conversation core.

ProviderError and its subclasses come out of the completion provider.
Rate-limit and overload errors are transient and retried by the
completion client; everything else propagates immediately.
"""

from __future__ import annotations

# Substrings in a provider error message that point at a malformed conversation
_STRUCTURAL_MARKERS = ("tool_use_id", "tool_result", "at least one message")

RATE_LIMIT_STATUS = 429
OVERLOADED_STATUS = 529


class ProviderError(RuntimeError):
    """Completion or token-counting provider returned an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate-limit or overload signal; safe to retry."""


class RateLimitError(TransientProviderError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=RATE_LIMIT_STATUS)


class OverloadedError(TransientProviderError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=OVERLOADED_STATUS)


class RetriesExhaustedError(ProviderError):
    """Transient errors persisted after every retry attempt."""


class TokenCountingError(ProviderError):
    """Token counter failed; callers treat the count as unbounded."""


class ToolInvocationError(RuntimeError):
    """A tool call failed, timed out or returned a malformed result."""


class QueryInProgressError(RuntimeError):
    """A second query was submitted while one is still running."""


def classify_status(error: BaseException) -> int | None:
    """Return 429 / 529 if the error carries a rate-limit or overload signal.

    A status_code attribute is authoritative. The message text is only
    consulted for errors that carry no status code.
    """
    status = getattr(error, "status_code", None)
    if status is not None:
        return status if status in (RATE_LIMIT_STATUS, OVERLOADED_STATUS) else None
    message = str(error)
    if str(RATE_LIMIT_STATUS) in message:
        return RATE_LIMIT_STATUS
    if str(OVERLOADED_STATUS) in message:
        return OVERLOADED_STATUS
    return None


def is_structural_error(error: BaseException) -> bool:
    """True if the provider rejected the conversation's structure."""
    message = str(error)
    return any(marker in message for marker in _STRUCTURAL_MARKERS)
