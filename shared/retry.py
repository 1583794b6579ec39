"""
Refresh-and-retry-once combinator for credentialed calls.

The broker never retries transient failures itself. The only automatic retry is
the single attempt made after a credential is refreshed in response to an
authorization rejection, and that policy lives here so callers describe it with
two steps ("call" and "refresh") instead of duplicating request code.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Type, TypeVar

from shared.errors import BrokerException
from shared.logging import get_logger

T = TypeVar("T")
C = TypeVar("C")


@dataclass
class Outcome(Generic[T]):
    """Typed result of a call made through :func:`call_with_refresh`."""

    value: Optional[T] = None
    error: Optional[BrokerException] = None
    attempts: int = 0
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, attempts: int, refreshed: bool = False) -> "Outcome[T]":
        return cls(value=value, attempts=attempts, refreshed=refreshed)

    @classmethod
    def failure(cls, error: BrokerException, attempts: int, refreshed: bool = False) -> "Outcome[Any]":
        return cls(error=error, attempts=attempts, refreshed=refreshed)


async def call_with_refresh(
    call: Callable[[C], Awaitable[T]],
    refresh: Callable[[C], Awaitable[C]],
    credential: C,
    *,
    refresh_on: Type[BrokerException],
    on_exhausted: Callable[[BrokerException], BrokerException],
    name: str = "call",
) -> Outcome[T]:
    """Run ``call`` and, if it raises ``refresh_on``, refresh once and retry once.

    Broker errors are returned inside the outcome rather than raised. A second
    ``refresh_on`` failure is passed through ``on_exhausted`` so the caller can
    re-classify it. Anything that is not a :class:`BrokerException` (including
    cancellation) propagates.
    """
    logger = get_logger(f"retry.{name}")

    try:
        return Outcome.success(await call(credential), attempts=1)
    except refresh_on as exc:
        logger.info("Credential rejected, refreshing before single retry", error=exc.message)
    except BrokerException as exc:
        return Outcome.failure(exc, attempts=1)

    try:
        fresh = await refresh(credential)
    except BrokerException as exc:
        logger.warning("Credential refresh failed", error=exc.message)
        return Outcome.failure(exc, attempts=1)

    try:
        value = await call(fresh)
    except refresh_on as exc:
        logger.error("Credential rejected again after refresh", error=exc.message)
        return Outcome.failure(on_exhausted(exc), attempts=2, refreshed=True)
    except BrokerException as exc:
        return Outcome.failure(exc, attempts=2, refreshed=True)

    logger.info("Retry after refresh succeeded")
    return Outcome.success(value, attempts=2, refreshed=True)
