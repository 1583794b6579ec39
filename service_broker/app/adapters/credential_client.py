"""
Credential service client for the Broker.

Talks to the upstream's token endpoints to obtain the shared per-tier
credential. A renewal first tries to refresh the credential currently held and
falls back to acquiring a brand-new one; each endpoint is called at most once
per renewal.
"""

from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreakerManager, CircuitBreakerOpenException
from shared.errors import CredentialUnavailable
from shared.logging import get_logger

from ..models import IssuedCredential, TierKind


class CredentialServiceClient:
    """Client for the upstream credential (token) endpoints."""

    ACQUIRE_PATH = "/token/acquire"
    REFRESH_PATH = "/token/refresh"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        default_ttl_seconds: float = 3600.0,
        breakers: Optional[CircuitBreakerManager] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_ttl_seconds = default_ttl_seconds
        self.breakers = breakers or CircuitBreakerManager()
        self.logger = get_logger("broker.credential_client")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def renew(
        self,
        tier: TierKind,
        current_value: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> IssuedCredential:
        """Obtain a fresh credential for ``tier`` through the tier's circuit breaker."""
        breaker = self.breakers.get(f"renewal.{tier.value}")
        try:
            return await breaker.call(self._renew, tier, current_value, client_id)
        except CircuitBreakerOpenException as exc:
            self.logger.warning("Renewal short-circuited", tier=tier.value, retry_in=exc.retry_in)
            raise CredentialUnavailable(
                tier.value,
                "Renewal endpoint circuit open",
                details={"retry_in_seconds": round(exc.retry_in, 1)},
            ) from exc

    async def _renew(self, tier: TierKind, current_value: Optional[str], client_id: Optional[str]) -> IssuedCredential:
        if current_value:
            try:
                return await self.refresh(tier, current_value, client_id)
            except CredentialUnavailable as exc:
                self.logger.info("Refresh refused, acquiring new credential", tier=tier.value, error=exc.message)
        return await self.acquire(tier, client_id)

    async def acquire(self, tier: TierKind, client_id: Optional[str] = None) -> IssuedCredential:
        """Request a brand-new credential for ``tier``."""
        body = await self._post(
            self.ACQUIRE_PATH,
            {"tier": tier.value, "clientId": client_id},
            self._headers(tier, client_id),
            tier,
        )
        self.logger.info("Acquired credential", tier=tier.value)
        return self._parse(body, tier)

    async def refresh(self, tier: TierKind, current_value: str, client_id: Optional[str] = None) -> IssuedCredential:
        """Exchange the credential currently held for ``tier`` for a fresh one."""
        headers = self._headers(tier, client_id)
        headers["X-Shared-Token"] = current_value
        body = await self._post(
            self.REFRESH_PATH,
            {"tier": tier.value, "clientId": client_id, "currentToken": current_value},
            headers,
            tier,
        )
        self.logger.info("Refreshed credential", tier=tier.value)
        return self._parse(body, tier)

    def _headers(self, tier: TierKind, client_id: Optional[str]) -> Dict[str, str]:
        headers = {"X-Tier": tier.value}
        if client_id:
            headers["X-Client-ID"] = client_id
        return headers

    async def _post(self, path: str, payload: Dict[str, Any], headers: Dict[str, str], tier: TierKind) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            self.logger.error("Credential endpoint timed out", path=path, tier=tier.value)
            raise CredentialUnavailable(tier.value, "Credential endpoint timed out", details={"path": path}) from exc
        except httpx.HTTPError as exc:
            self.logger.error("Credential endpoint HTTP error", path=path, tier=tier.value, error=str(exc))
            raise CredentialUnavailable(
                tier.value, "Credential endpoint unreachable", details={"path": path, "http_error": str(exc)}
            ) from exc

        if response.status_code != 200:
            raise CredentialUnavailable(
                tier.value,
                f"Credential endpoint error: {response.status_code}",
                details={"path": path, "status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CredentialUnavailable(tier.value, "Malformed credential response", details={"path": path}) from exc

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise CredentialUnavailable(
                tier.value, error or "Credential endpoint refused request", details={"path": path}
            )
        return body

    def _parse(self, body: Dict[str, Any], tier: TierKind) -> IssuedCredential:
        token = body.get("token")
        if not isinstance(token, str) or not token:
            raise CredentialUnavailable(tier.value, "Credential response missing token")

        # expiresIn is reported in milliseconds
        expires_in = body.get("expiresIn")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            ttl_seconds = expires_in / 1000.0
        else:
            ttl_seconds = self.default_ttl_seconds
        return IssuedCredential(value=token, ttl_seconds=ttl_seconds)
