"""
Hourly quota enforcement for the Broker Service.

Each client has one usage window aligned to the wall-clock hour. Rollover is
detected lazily on the next check: a window whose start differs from the
current hour is treated as empty. There is no background reset timer.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import TierKind, TierRecord, UsageWindow
from ..persistence.store import KeyValueStore, atomic_update, usage_key
from ..tiers.registry import TierRegistry

WINDOW_SECONDS = 3600


def window_start_for(now: float) -> float:
    """Floor ``now`` to the start of its hour."""
    return float(int(now // WINDOW_SECONDS) * WINDOW_SECONDS)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check."""
    admitted: bool
    remaining: int
    limit: int
    count: int
    window_start: float
    reset_in_seconds: int
    reason: Optional[str] = None


def limit_reason(tier: TierRecord) -> str:
    """User-facing explanation for a rejected admission."""
    limit = tier.hourly_quota
    if tier.tier_kind == TierKind.FREE:
        return f"Hourly limit reached ({limit}/{limit}). Upgrade to premium for more generations."
    return f"Hourly limit reached ({limit}/{limit}). Try again when the next hourly window opens."


class QuotaEnforcer:
    """Admits or rejects one unit of work per call against the client's tier."""

    def __init__(
        self,
        store: KeyValueStore,
        tiers: TierRegistry,
        clock: Optional[Callable[[], float]] = None,
        max_attempts: int = 32,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.tiers = tiers
        self.clock = clock or time.time
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = get_logger("broker.quota")
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, client_id: str) -> asyncio.Lock:
        lock = self._locks.get(client_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[client_id] = lock
        return lock

    def _current_window(self, client_id: str, stored: Optional[dict], window_start: float) -> UsageWindow:
        if stored is not None:
            window = UsageWindow.from_dict(stored)
            if window.window_start == window_start:
                return window
        return UsageWindow(client_id=client_id, window_start=window_start, count=0)

    async def check_and_reserve(self, client_id: str) -> QuotaDecision:
        """Reserve one admission for ``client_id`` if its window has room."""
        lock = self._lock_for(client_id)
        async with lock:
            tier = await self.tiers.get_tier(client_id)
            now = self.clock()
            window_start = window_start_for(now)
            reset_in = int(window_start + WINDOW_SECONDS - now)

            def mutate(stored):
                window = self._current_window(client_id, stored, window_start)
                if window.count >= tier.hourly_quota:
                    return None, QuotaDecision(
                        admitted=False,
                        remaining=0,
                        limit=tier.hourly_quota,
                        count=window.count,
                        window_start=window_start,
                        reset_in_seconds=reset_in,
                        reason=limit_reason(tier),
                    )
                window.count += 1
                return window.to_dict(), QuotaDecision(
                    admitted=True,
                    remaining=tier.hourly_quota - window.count,
                    limit=tier.hourly_quota,
                    count=window.count,
                    window_start=window_start,
                    reset_in_seconds=reset_in,
                )

            decision = await atomic_update(self.store, usage_key(client_id), mutate, self.max_attempts)

        if self.metrics:
            self.metrics.increment_counter(
                "quota_decisions_total",
                tier=tier.tier_kind.value,
                decision="admitted" if decision.admitted else "rejected",
            )
        if not decision.admitted:
            self.logger.warning(
                "Quota exceeded",
                client_id=client_id,
                tier=tier.tier_kind.value,
                limit=decision.limit,
                reset_in_seconds=decision.reset_in_seconds,
            )
        return decision

    async def peek(self, client_id: str) -> QuotaDecision:
        """Report the client's standing without reserving anything."""
        tier = await self.tiers.get_tier(client_id)
        now = self.clock()
        window_start = window_start_for(now)
        window = self._current_window(client_id, await self.store.get(usage_key(client_id)), window_start)
        admitted = window.count < tier.hourly_quota
        return QuotaDecision(
            admitted=admitted,
            remaining=max(0, tier.hourly_quota - window.count),
            limit=tier.hourly_quota,
            count=window.count,
            window_start=window_start,
            reset_in_seconds=int(window_start + WINDOW_SECONDS - now),
            reason=None if admitted else limit_reason(tier),
        )
