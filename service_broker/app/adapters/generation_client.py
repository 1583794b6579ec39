"""
Upstream generation API client for the Broker.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import UpstreamAuthRejected, UpstreamRejected, UpstreamTransientError
from shared.logging import get_logger

from ..models import CredentialRecord

TRANSIENT_STATUS_CODES = {408, 425, 429}
AUTH_STATUS_CODES = {401, 403}


class GenerationClient:
    """Forwards opaque payloads to the upstream generation API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        generate_path: str = "/generate",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.generate_path = generate_path
        self.logger = get_logger("broker.generation_client")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def generate(self, credential: CredentialRecord, client_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Call the upstream with the shared credential; raise a typed error on failure."""
        headers = {
            "X-Client-ID": client_id,
            "X-Tier": credential.tier_kind.value,
            "X-Shared-Token": credential.value,
        }
        try:
            response = await self._client.post(
                f"{self.base_url}{self.generate_path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError("Upstream timed out", details={"error": str(exc)}) from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError("Upstream unreachable", details={"http_error": str(exc)}) from exc

        status = response.status_code
        if status in AUTH_STATUS_CODES:
            raise UpstreamAuthRejected(
                f"Upstream rejected credential: {status}",
                details={"status_code": status, "credential_version": credential.version},
            )
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise UpstreamTransientError(
                f"Upstream error: {status}",
                details={"status_code": status, "retry_after": response.headers.get("Retry-After")},
            )
        if status >= 400:
            raise UpstreamRejected(
                f"Upstream rejected request: {status}",
                details={"status_code": status, "body": response.text[:500]},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamRejected("Malformed upstream response", details={"status_code": status}) from exc

        if not isinstance(body, dict):
            raise UpstreamRejected("Malformed upstream response", details={"status_code": status})
        if body.get("success") is False:
            raise UpstreamRejected(body.get("error") or "Upstream reported failure", details={"status_code": status})

        return body
