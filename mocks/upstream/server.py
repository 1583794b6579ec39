"""
Mock upstream generation API providing the shared-token and generate endpoints.
"""

import secrets
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

from shared.logging import get_logger


class TokenRequest(BaseModel):
    tier: str
    clientId: Optional[str] = None
    currentToken: Optional[str] = None


class MockUpstreamServer:
    """Mock upstream implementation."""

    def __init__(self, port: int = 8030, token_ttl_ms: int = 3600000):
        self.port = port
        self.token_ttl_ms = token_ttl_ms
        self.logger = get_logger("mock.upstream")
        self.app = FastAPI(title="Mock Upstream", version="1.0.0")

        # token -> tier
        self.live_tokens: Dict[str, str] = {}
        self.acquire_calls = 0
        self.refresh_calls = 0
        self.generate_calls = 0
        self.fail_renewals = False

        self._setup_routes()

    @property
    def renewal_calls(self) -> int:
        return self.acquire_calls + self.refresh_calls

    def revoke(self, tier: Optional[str] = None) -> int:
        """Invalidate live tokens server-side, for one tier or all of them."""
        revoked = [token for token, owner in self.live_tokens.items() if tier is None or owner == tier]
        for token in revoked:
            del self.live_tokens[token]
        return len(revoked)

    def _issue(self, tier: str) -> Dict[str, Any]:
        token = f"{tier}-{secrets.token_urlsafe(16)}"
        self.live_tokens[token] = tier
        return {"success": True, "token": token, "expiresIn": self.token_ttl_ms, "tier": tier}

    def _setup_routes(self):
        """Set up mock upstream routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-upstream",
                "message": "Mock upstream generation API",
                "version": "1.0.0",
                "live_tokens": len(self.live_tokens)
            }

        @self.app.post("/token/acquire")
        async def acquire(request: TokenRequest):
            """Issue a new shared token for a tier."""
            self.acquire_calls += 1
            if self.fail_renewals:
                raise HTTPException(status_code=503, detail="Token service unavailable")
            return self._issue(request.tier)

        @self.app.post("/token/refresh")
        async def refresh(request: TokenRequest):
            """Exchange a live token for a fresh one."""
            self.refresh_calls += 1
            if self.fail_renewals:
                raise HTTPException(status_code=503, detail="Token service unavailable")
            if not request.currentToken or request.currentToken not in self.live_tokens:
                return {"success": False, "error": "Unknown or revoked token"}
            del self.live_tokens[request.currentToken]
            return self._issue(request.tier)

        @self.app.post("/generate")
        async def generate(
            payload: Dict[str, Any],
            shared_token: Optional[str] = Header(None, alias="X-Shared-Token"),
            tier: Optional[str] = Header(None, alias="X-Tier"),
            client_id: Optional[str] = Header(None, alias="X-Client-ID"),
        ):
            """Pretend to generate; validates the shared token."""
            self.generate_calls += 1
            if not shared_token or self.live_tokens.get(shared_token) != tier:
                raise HTTPException(status_code=401, detail="Invalid shared token")
            if not isinstance(payload.get("prompt"), str) or not payload["prompt"].strip():
                raise HTTPException(status_code=400, detail="prompt is required")

            self.logger.info("Mock generation", tier=tier, client_id=client_id)
            return {
                "success": True,
                "data": {
                    "taskId": str(uuid.uuid4()),
                    "status": "completed",
                    "prompt": payload["prompt"],
                    "createdAt": int(time.time() * 1000),
                    "songs": []
                }
            }


def create_app():
    """Create mock upstream application."""
    server = MockUpstreamServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8030)
