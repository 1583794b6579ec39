"""
Test helpers and stand-in collaborators for broker tests.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Union

from shared.errors import BrokerException, CredentialUnavailable

from service_broker.app.models import IssuedCredential

# Top of an hour, so window arithmetic in tests is easy to read.
EPOCH = 1_700_000_000 - (1_700_000_000 % 3600)

FREE_QUOTA = 10
PREMIUM_QUOTA = 100


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is accepted."""

    def __init__(self, start: float = EPOCH):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, when: float) -> None:
        self.now = float(when)


class StubCredentialService:
    """Counts renewals and hands out numbered credentials.

    ``delay`` makes each renewal await that many seconds, ``gate`` (an
    ``asyncio.Event``) holds renewals until set, and ``failures`` makes the
    next N renewals raise ``CredentialUnavailable``.
    """

    def __init__(self, ttl_seconds: float = 3600.0, delay: float = 0.0):
        self.ttl_seconds = ttl_seconds
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None
        self.failures = 0
        self.calls: List[Dict[str, Any]] = []
        self.cancelled = 0
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def renew(self, tier, current_value=None, client_id=None):
        self.calls.append({"tier": tier, "current_value": current_value})
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

        if self.failures > 0:
            self.failures -= 1
            raise CredentialUnavailable(tier.value, "Stub renewal failure")
        return IssuedCredential(value=f"{tier.value}-token-{self.call_count}", ttl_seconds=self.ttl_seconds)

    async def close(self):
        self.closed = True


class StubGenerationClient:
    """Replays a script of results or broker errors, recording each call."""

    def __init__(self, script: Optional[List[Union[Dict[str, Any], BrokerException]]] = None, delay: float = 0.0):
        self.script: Deque[Union[Dict[str, Any], BrokerException]] = deque(script or [])
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def generate(self, credential, client_id, payload):
        self.calls.append({
            "credential": credential.value,
            "version": credential.version,
            "client_id": client_id,
            "payload": payload,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        step = self.script.popleft() if self.script else {"success": True, "data": {"echo": payload}}
        if isinstance(step, BrokerException):
            raise step
        return step

    async def close(self):
        self.closed = True
