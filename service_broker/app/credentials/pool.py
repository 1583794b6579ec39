"""
Shared credential pool for the Broker Service.

One credential is live per tier and every client of that tier uses it. Renewal
happens lazily when a caller finds the credential inside the renewal margin,
or reactively when the upstream rejects it. Two mechanisms keep renewals from
stampeding the credential endpoint:

- within a process, concurrent renewals for a tier share one in-flight task
  (single-flight);
- across processes, the stored record is replaced by compare-and-swap on its
  version, and a loser re-reads the winner's record instead of renewing again.

An in-flight renewal is cancelled only once every caller waiting on it has
gone away.
"""

import asyncio
import functools
import time
from typing import Callable, Dict, Optional

from shared.errors import CredentialUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..adapters.credential_client import CredentialServiceClient
from ..models import CredentialRecord, TierKind
from ..persistence.store import KeyValueStore, credential_key


class _Flight:
    """A renewal in progress and the callers waiting on it."""

    def __init__(self, task: "asyncio.Task[CredentialRecord]"):
        self.task = task
        self.subscribers = 0
        self.abandoned = False

    @property
    def joinable(self) -> bool:
        return not self.abandoned and not self.task.done()


class CredentialPool:
    """Per-tier shared credential lifecycle with single-flight renewal."""

    def __init__(
        self,
        store: KeyValueStore,
        credential_service: CredentialServiceClient,
        renewal_margin_seconds: float = 300.0,
        renewal_timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.credential_service = credential_service
        self.renewal_margin = renewal_margin_seconds
        self.renewal_timeout = renewal_timeout_seconds
        self.clock = clock or time.time
        self.metrics = metrics
        self.logger = get_logger("broker.credentials")
        self._flights: Dict[TierKind, _Flight] = {}

    async def peek(self, tier: TierKind) -> Optional[CredentialRecord]:
        """Return the stored record for ``tier`` without renewing it."""
        data = await self.store.get(credential_key(tier.value))
        return CredentialRecord.from_dict(data) if data is not None else None

    def renewal_in_flight(self, tier: TierKind) -> bool:
        flight = self._flights.get(tier)
        return flight is not None and flight.joinable

    async def get_valid(self, tier: TierKind) -> CredentialRecord:
        """Return a credential for ``tier`` that is not inside the renewal margin."""
        current = await self.peek(tier)
        now = self.clock()
        if current is not None and not current.needs_renewal(now, self.renewal_margin):
            return current

        if current is None:
            self.logger.info("No credential held, acquiring", tier=tier.value)
        else:
            self.logger.info(
                "Credential due for renewal",
                tier=tier.value,
                version=current.version,
                expired=current.is_expired(now),
            )
        return await self._join_renewal(tier, current.version if current else 0)

    async def force_renew(self, tier: TierKind, stale_version: int) -> CredentialRecord:
        """Renew after an upstream rejection of ``stale_version``.

        If the pool already moved past ``stale_version`` the newer record is
        returned without another renewal.
        """
        current = await self.peek(tier)
        if current is not None and current.version != stale_version and not current.is_expired(self.clock()):
            self._count(tier, "reused")
            self.logger.info(
                "Credential already renewed by another caller",
                tier=tier.value,
                stale_version=stale_version,
                version=current.version,
            )
            return current
        return await self._join_renewal(tier, stale_version)

    async def _join_renewal(self, tier: TierKind, stale_version: int) -> CredentialRecord:
        flight = self._flights.get(tier)
        if flight is None or not flight.joinable:
            flight = _Flight(asyncio.ensure_future(self._renew(tier, stale_version)))
            flight.task.add_done_callback(functools.partial(self._flight_done, tier, flight))
            self._flights[tier] = flight
        else:
            self.logger.debug("Joining in-flight renewal", tier=tier.value)

        flight.subscribers += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.subscribers -= 1
            if flight.subscribers == 0 and not flight.task.done():
                flight.abandoned = True
                flight.task.cancel()
                self.logger.info("Renewal abandoned by all waiters", tier=tier.value)

    def _flight_done(self, tier: TierKind, flight: _Flight, task: asyncio.Task) -> None:
        if self._flights.get(tier) is flight:
            del self._flights[tier]
        if not task.cancelled():
            # Waiters receive the exception; this only marks it retrieved.
            task.exception()

    async def _renew(self, tier: TierKind, stale_version: int) -> CredentialRecord:
        key = credential_key(tier.value)
        current = await self.peek(tier)
        if (
            current is not None
            and current.version != stale_version
            and not current.needs_renewal(self.clock(), self.renewal_margin)
        ):
            self._count(tier, "reused")
            return current

        try:
            if self.metrics:
                with self.metrics.time_operation("credential_renewal_duration_seconds", tier=tier.value):
                    issued = await self._call_renewal(tier, current)
            else:
                issued = await self._call_renewal(tier, current)
        except CredentialUnavailable:
            self._count(tier, "failed")
            raise

        issued_at = self.clock()
        record = CredentialRecord(
            tier_kind=tier,
            value=issued.value,
            issued_at=issued_at,
            expires_at=issued_at + issued.ttl_seconds,
            version=(current.version if current else 0) + 1,
        )
        expected = current.to_dict() if current is not None else None
        if await self.store.compare_and_swap(key, expected, record.to_dict()):
            self._count(tier, "renewed")
            self.logger.info(
                "Credential renewed",
                tier=tier.value,
                version=record.version,
                ttl_seconds=issued.ttl_seconds,
            )
            return record

        # Another process renewed first; use its record.
        winner = await self.peek(tier)
        if winner is not None and not winner.is_expired(self.clock()):
            self._count(tier, "reused")
            self.logger.info("Lost renewal race, using stored credential", tier=tier.value, version=winner.version)
            return winner
        self._count(tier, "failed")
        raise CredentialUnavailable(tier.value, "Concurrent renewal left no live credential")

    async def _call_renewal(self, tier: TierKind, current: Optional[CredentialRecord]):
        try:
            return await asyncio.wait_for(
                self.credential_service.renew(tier, current.value if current else None),
                timeout=self.renewal_timeout,
            )
        except asyncio.TimeoutError as exc:
            self.logger.error("Credential renewal timed out", tier=tier.value, timeout=self.renewal_timeout)
            raise CredentialUnavailable(
                tier.value,
                "Renewal timed out",
                details={"timeout_seconds": self.renewal_timeout},
            ) from exc

    def _count(self, tier: TierKind, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("credential_renewals_total", tier=tier.value, result=result)
