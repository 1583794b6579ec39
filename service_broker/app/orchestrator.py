"""
Request orchestration for the Broker Service.

``RequestOrchestrator.execute`` is the single entry point for generation
requests. It returns an :class:`ExecutionResult` for every broker failure
instead of raising, so callers branch on ``result.ok``.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.errors import (
    BrokerException,
    CredentialUnavailable,
    QuotaExceeded,
    UpstreamAuthRejected,
    UpstreamTransientError,
)
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector
from shared.retry import call_with_refresh

from .adapters.generation_client import GenerationClient
from .credentials.pool import CredentialPool
from .models import CredentialRecord, TierKind
from .quota.enforcer import QuotaDecision, QuotaEnforcer
from .tiers.registry import TierRegistry


@dataclass
class ExecutionResult:
    """Success payload or typed failure of one orchestrated call."""
    client_id: str
    tier: Optional[TierKind] = None
    value: Optional[Dict[str, Any]] = None
    error: Optional[BrokerException] = None
    quota: Optional[QuotaDecision] = None
    attempts: int = 0
    refreshed: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class RequestOrchestrator:
    """Ties tiers, quota, credentials and the upstream together around one call."""

    def __init__(
        self,
        tiers: TierRegistry,
        quota: QuotaEnforcer,
        pool: CredentialPool,
        upstream: GenerationClient,
        upstream_timeout_seconds: float = 120.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.tiers = tiers
        self.quota = quota
        self.pool = pool
        self.upstream = upstream
        self.upstream_timeout = upstream_timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("broker.orchestrator")

    async def execute(self, client_id: str, payload: Dict[str, Any]) -> ExecutionResult:
        """Run one generation request for ``client_id``."""
        start_time = time.time()
        result = ExecutionResult(client_id=client_id)
        try:
            await self._execute(result, payload)
        except BrokerException as exc:
            result.error = exc
        result.duration_ms = round((time.time() - start_time) * 1000, 2)

        outcome = "success" if result.ok else result.error.code.lower()
        if self.metrics and result.tier is not None:
            self.metrics.increment_counter("upstream_calls_total", tier=result.tier.value, outcome=outcome)
        if result.ok:
            self.logger.info(
                "Generation completed",
                client_id=client_id,
                attempts=result.attempts,
                refreshed=result.refreshed,
                duration_ms=result.duration_ms,
            )
        else:
            self.logger.warning(
                "Generation failed",
                client_id=client_id,
                code=result.error.code,
                error=result.error.message,
                attempts=result.attempts,
                duration_ms=result.duration_ms,
            )
        return result

    async def _execute(self, result: ExecutionResult, payload: Dict[str, Any]) -> None:
        client_id = result.client_id
        tier = await self.tiers.get_tier(client_id)
        result.tier = tier.tier_kind
        set_client_context(client_id, tier.tier_kind.value)

        decision = await self.quota.check_and_reserve(client_id)
        result.quota = decision
        if not decision.admitted:
            raise QuotaExceeded(
                decision.reason,
                details={
                    "limit": decision.limit,
                    "remaining": 0,
                    "reset_in_seconds": decision.reset_in_seconds,
                    "tier": tier.tier_kind.value,
                },
            )

        # From here on the reserved slot is spent whatever the upstream does.
        credential = await self.pool.get_valid(tier.tier_kind)

        async def call(cred: CredentialRecord) -> Dict[str, Any]:
            return await self._call_upstream(cred, client_id, payload)

        async def refresh(cred: CredentialRecord) -> CredentialRecord:
            if self.metrics:
                self.metrics.increment_counter("auth_retries_total", tier=cred.tier_kind.value)
            return await self.pool.force_renew(cred.tier_kind, cred.version)

        def exhausted(exc: BrokerException) -> BrokerException:
            return CredentialUnavailable(
                tier.tier_kind.value,
                "Upstream rejected the renewed credential",
                details={"upstream": exc.details},
            )

        outcome = await call_with_refresh(
            call,
            refresh,
            credential,
            refresh_on=UpstreamAuthRejected,
            on_exhausted=exhausted,
            name="upstream",
        )
        result.attempts = outcome.attempts
        result.refreshed = outcome.refreshed
        if not outcome.ok:
            raise outcome.error
        result.value = outcome.value

    async def _call_upstream(self, credential: CredentialRecord, client_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.upstream.generate(credential, client_id, payload),
                timeout=self.upstream_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTransientError(
                "Upstream call timed out",
                details={"timeout_seconds": self.upstream_timeout},
            ) from exc
