"""
Shared fixtures for Broker Service tests.
"""

import pytest

from shared.metrics import get_metrics_collector
from service_broker.app.credentials.pool import CredentialPool
from service_broker.app.identity.resolver import ClientIdentityResolver
from service_broker.app.models import TierKind
from service_broker.app.orchestrator import RequestOrchestrator
from service_broker.app.persistence.store import MemoryStore
from service_broker.app.quota.enforcer import QuotaEnforcer
from service_broker.app.tiers.registry import TierLimits, TierPolicy, TierRegistry
from service_broker.tests.helpers import (
    FREE_QUOTA,
    PREMIUM_QUOTA,
    FakeClock,
    StubCredentialService,
    StubGenerationClient,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def metrics():
    return get_metrics_collector("broker")


@pytest.fixture
def policy():
    return TierPolicy({
        TierKind.FREE: TierLimits(hourly_quota=FREE_QUOTA, priority=1),
        TierKind.PREMIUM: TierLimits(hourly_quota=PREMIUM_QUOTA, priority=2),
    })


@pytest.fixture
def resolver(store, clock):
    return ClientIdentityResolver(store, clock=clock)


@pytest.fixture
def tiers(store, policy, clock):
    return TierRegistry(store, policy, clock=clock)


@pytest.fixture
def quota(store, tiers, clock, metrics):
    return QuotaEnforcer(store, tiers, clock=clock, metrics=metrics)


@pytest.fixture
def credential_service():
    return StubCredentialService(ttl_seconds=3600)


@pytest.fixture
def pool(store, credential_service, clock, metrics):
    return CredentialPool(
        store,
        credential_service,
        renewal_margin_seconds=300,
        renewal_timeout_seconds=5,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def upstream():
    return StubGenerationClient()


@pytest.fixture
def orchestrator(tiers, quota, pool, upstream, metrics):
    return RequestOrchestrator(tiers, quota, pool, upstream, upstream_timeout_seconds=5, metrics=metrics)
