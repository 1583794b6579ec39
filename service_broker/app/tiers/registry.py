"""
Tier registry for the Broker Service.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shared.config import BrokerConfig
from shared.logging import get_logger

from ..models import TierKind, TierRecord
from ..persistence.store import KeyValueStore, atomic_update, tier_key


@dataclass(frozen=True)
class TierLimits:
    """Quota and priority granted by a tier."""
    hourly_quota: int
    priority: int


class TierPolicy:
    """Static mapping from tier kind to its limits."""

    def __init__(self, limits: Dict[TierKind, TierLimits]):
        missing = set(TierKind) - set(limits)
        if missing:
            raise ValueError(f"Missing tier limits for: {sorted(k.value for k in missing)}")
        self.limits = dict(limits)

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "TierPolicy":
        return cls({
            TierKind.FREE: TierLimits(config.free_hourly_quota, config.free_priority),
            TierKind.PREMIUM: TierLimits(config.premium_hourly_quota, config.premium_priority),
        })

    def for_kind(self, kind: TierKind) -> TierLimits:
        return self.limits[kind]


class TierRegistry:
    """Maps client ids to tier records and performs upgrades."""

    def __init__(
        self,
        store: KeyValueStore,
        policy: TierPolicy,
        clock: Optional[Callable[[], float]] = None,
        max_attempts: int = 32,
    ):
        self.store = store
        self.policy = policy
        self.clock = clock or time.time
        self.max_attempts = max_attempts
        self.logger = get_logger("broker.tiers")

    def _default_record(self, client_id: str) -> TierRecord:
        limits = self.policy.for_kind(TierKind.FREE)
        return TierRecord(
            client_id=client_id,
            tier_kind=TierKind.FREE,
            hourly_quota=limits.hourly_quota,
            priority=limits.priority,
        )

    async def get_tier(self, client_id: str) -> TierRecord:
        """Return the client's tier, persisting the FREE default on first sight."""

        def mutate(current):
            if current is not None:
                return None, TierRecord.from_dict(current)
            record = self._default_record(client_id)
            return record.to_dict(), record

        return await atomic_update(self.store, tier_key(client_id), mutate, self.max_attempts)

    async def upgrade(self, client_id: str, owner_email: str) -> TierRecord:
        """One-way FREE -> PREMIUM transition; a no-op for PREMIUM clients."""
        limits = self.policy.for_kind(TierKind.PREMIUM)
        now = self.clock()

        def mutate(current):
            if current is not None:
                existing = TierRecord.from_dict(current)
                if existing.tier_kind == TierKind.PREMIUM:
                    return None, existing
            record = TierRecord(
                client_id=client_id,
                tier_kind=TierKind.PREMIUM,
                hourly_quota=limits.hourly_quota,
                priority=limits.priority,
                owner_email=owner_email,
                upgraded_at=now,
            )
            return record.to_dict(), record

        record = await atomic_update(self.store, tier_key(client_id), mutate, self.max_attempts)
        self.logger.info("Client tier upgraded", client_id=client_id, tier=record.tier_kind.value)
        return record
