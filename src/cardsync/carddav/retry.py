"""Retry with exponential backoff and error categorization for CardDAV calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal, TypeVar

from cardsync.errors import (
    CardDavNetworkError,
    CardDavProtocolError,
    CardDavRequestError,
    SecretDecryptionError,
    UnsafeServerUrlError,
    VCardParseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorCategory = Literal[
    "auth", "rate_limit", "server", "not_found", "network", "malformed", "unknown"
]

USER_MESSAGES: dict[ErrorCategory, str] = {
    "auth": (
        "Authentication failed. Please check your username and password. "
        "For Google and iCloud, make sure you are using an app-specific password."
    ),
    "rate_limit": "Too many requests. Please wait a moment and try again.",
    "server": "The CardDAV server is experiencing issues. Please try again later.",
    "not_found": "The requested resource was not found. Please check your server URL.",
    "network": "Network error. Please check your internet connection and server URL.",
    "malformed": "Invalid data received from server. The contact may be corrupted.",
    "unknown": "An unexpected error occurred. Please try again or contact support.",
}

_NETWORK_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connection refused",
    "name resolution",
    "dns",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule; delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


DEFAULT_RETRY_POLICY = RetryPolicy()


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: network errors, 5xx and 429."""
    if isinstance(exc, CardDavNetworkError):
        return True
    if isinstance(exc, CardDavRequestError):
        return exc.status_code >= 500 or exc.status_code == 429
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    description: str = "CardDAV request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts."""
    delay = policy.initial_delay
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_transient(exc):
                raise
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                description,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            delay = min(delay * policy.backoff_factor, policy.max_delay)
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class CategorizedError:
    category: ErrorCategory
    message: str
    user_message: str


def categorize_error(exc: BaseException) -> CategorizedError:
    """Map an exception to a category and a message fit for end users."""
    message = str(exc) or exc.__class__.__name__
    category: ErrorCategory = "unknown"

    if isinstance(exc, CardDavRequestError):
        if exc.status_code in (401, 403):
            category = "auth"
        elif exc.status_code == 429:
            category = "rate_limit"
        elif exc.status_code >= 500:
            category = "server"
        elif exc.status_code == 404:
            category = "not_found"
    elif isinstance(exc, CardDavNetworkError):
        category = "network"
    elif isinstance(exc, (CardDavProtocolError, VCardParseError)):
        category = "malformed"
    elif isinstance(exc, (UnsafeServerUrlError, SecretDecryptionError)):
        return CategorizedError(category="unknown", message=message, user_message=message)
    elif any(marker in message.lower() for marker in _NETWORK_MARKERS):
        category = "network"

    return CategorizedError(
        category=category, message=message, user_message=USER_MESSAGES[category]
    )
