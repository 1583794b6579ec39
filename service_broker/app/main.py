"""
Broker service: tiered shared-credential and rate-limiting front for the
upstream generation API.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Body, Header
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerManager
from shared.config import BrokerConfig, get_broker_config
from shared.errors import BrokerException
from shared.logging import set_client_context

from .adapters.credential_client import CredentialServiceClient
from .adapters.generation_client import GenerationClient
from .credentials.pool import CredentialPool
from .identity.resolver import ClientIdentityResolver
from .models import (
    ClientStatusResponse,
    ResolveRequest,
    ResolveResponse,
    TierResponse,
    UpgradeRequest,
)
from .orchestrator import RequestOrchestrator
from .persistence.store import KeyValueStore, create_store
from .quota.enforcer import QuotaEnforcer
from .tiers.registry import TierPolicy, TierRegistry


class UnknownClient(BrokerException):
    """The client id was never issued by this broker."""

    status_code = 404

    def __init__(self, client_id: str):
        super().__init__("UNKNOWN_CLIENT", "Unknown client id", {"client_id": client_id})


class BrokerService(BaseService):
    """Broker service implementation."""

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        store: Optional[KeyValueStore] = None,
        credential_service: Optional[CredentialServiceClient] = None,
        generation_client: Optional[GenerationClient] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        config = config or get_broker_config()
        super().__init__("broker", config.port, config=config)

        self.store = store or create_store(config)
        self.breakers = CircuitBreakerManager(
            failure_threshold=config.renewal_failure_threshold,
            recovery_timeout=config.renewal_recovery_timeout,
        )
        self.credential_service = credential_service or CredentialServiceClient(
            config.credential_service_url,
            timeout=config.renewal_timeout_seconds,
            default_ttl_seconds=config.default_credential_ttl_seconds,
            breakers=self.breakers,
        )
        self.generation_client = generation_client or GenerationClient(
            config.upstream_url,
            timeout=config.upstream_timeout_seconds,
        )

        self.identity = ClientIdentityResolver(self.store, clock=clock)
        self.tiers = TierRegistry(
            self.store,
            TierPolicy.from_config(config),
            clock=clock,
            max_attempts=config.cas_max_attempts,
        )
        self.quota = QuotaEnforcer(
            self.store,
            self.tiers,
            clock=clock,
            max_attempts=config.cas_max_attempts,
            metrics=self.metrics,
        )
        self.pool = CredentialPool(
            self.store,
            self.credential_service,
            renewal_margin_seconds=config.renewal_margin_seconds,
            renewal_timeout_seconds=config.renewal_timeout_seconds,
            clock=clock,
            metrics=self.metrics,
        )
        self.orchestrator = RequestOrchestrator(
            self.tiers,
            self.quota,
            self.pool,
            self.generation_client,
            upstream_timeout_seconds=config.upstream_timeout_seconds,
            metrics=self.metrics,
        )

        self._setup_broker_routes()

    async def _require_client(self, client_id: str) -> None:
        if not await self.identity.exists(client_id):
            raise UnknownClient(client_id)
        set_client_context(client_id=client_id)

    def _setup_broker_routes(self):
        """Set up broker-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "broker",
                "message": "Tiered credential broker",
                "version": "1.0.0",
                "capabilities": ["identity", "tiers", "quota", "shared_credentials"]
            }

        @self.app.post("/clients/resolve", response_model=ResolveResponse)
        async def resolve_client(request: ResolveRequest):
            """Resolve (or issue) the client id for a caller context."""
            identity = await self.identity.resolve(request.context)
            return ResolveResponse(client_id=identity.id)

        @self.app.delete("/clients/resolve/{context}")
        async def forget_client(context: str):
            """Detach a caller context from its client id."""
            removed = await self.identity.forget(context)
            return {"forgotten": removed}

        @self.app.get("/clients/{client_id}/tier", response_model=TierResponse)
        async def get_tier(client_id: str):
            """Current tier of a client."""
            await self._require_client(client_id)
            return TierResponse.from_record(await self.tiers.get_tier(client_id))

        @self.app.post("/clients/{client_id}/upgrade", response_model=TierResponse)
        async def upgrade(client_id: str, request: UpgradeRequest):
            """Upgrade a client to the premium tier."""
            await self._require_client(client_id)
            return TierResponse.from_record(await self.tiers.upgrade(client_id, request.email))

        @self.app.get("/clients/{client_id}/status", response_model=ClientStatusResponse)
        async def client_status(client_id: str):
            """Usage and credential status for a client; reserves nothing."""
            await self._require_client(client_id)
            tier = await self.tiers.get_tier(client_id)
            standing = await self.quota.peek(client_id)
            credential = await self.pool.peek(tier.tier_kind)
            now = self.quota.clock()
            return ClientStatusResponse(
                client_id=client_id,
                tier=tier.tier_kind,
                hourly_usage=standing.count,
                hourly_limit=standing.limit,
                remaining=standing.remaining,
                reset_in_seconds=standing.reset_in_seconds,
                can_generate=standing.admitted,
                has_credential=credential is not None,
                credential_expired=credential is None or credential.is_expired(now),
                credential_expires_in=max(0.0, credential.expires_at - now) if credential else 0.0,
            )

        @self.app.post("/generate")
        async def generate(
            payload: Dict[str, Any] = Body(...),
            client_id: str = Header(..., alias="X-Client-ID"),
        ):
            """Broker one generation request to the upstream."""
            await self._require_client(client_id)
            result = await self.orchestrator.execute(client_id, payload)
            if not result.ok:
                raise result.error

            headers = {}
            if result.quota is not None:
                headers["X-Quota-Limit"] = str(result.quota.limit)
                headers["X-Quota-Remaining"] = str(result.quota.remaining)
            return JSONResponse(content=result.value, headers=headers)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check storage connectivity."""
        return {"storage": "ok" if await self.store.ping() else "error"}

    async def start(self):
        """Start broker components."""
        await self.store.start()
        self.logger.info("Broker service started", storage=self.config.storage_backend)

    async def stop(self):
        """Stop broker components."""
        await self.credential_service.close()
        await self.generation_client.close()
        await self.store.stop()
        self.logger.info("Broker service stopped")


def create_app(**kwargs):
    """Create broker service application."""
    service = BrokerService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = BrokerService()
    service.run()
