"""
Client identity resolution for the Broker Service.
"""

import secrets
import time
from typing import Callable, Optional

from shared.errors import PersistenceError, ValidationError
from shared.logging import get_logger

from ..models import ClientIdentity
from ..persistence.store import KeyValueStore, client_key, identity_key


class ClientIdentityResolver:
    """Issues one durable opaque id per caller context."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Optional[Callable[[], float]] = None,
        max_attempts: int = 3,
    ):
        self.store = store
        self.clock = clock or time.time
        self.max_attempts = max_attempts
        self.logger = get_logger("broker.identity")

    @staticmethod
    def generate_id() -> str:
        """Random 128-bit identifier, hex encoded."""
        return secrets.token_hex(16)

    async def resolve(self, caller_context: str) -> ClientIdentity:
        """Return the identity recorded for ``caller_context``, creating it once."""
        if not caller_context:
            raise ValidationError("Caller context must not be empty")

        key = identity_key(caller_context)
        for _ in range(self.max_attempts):
            existing = await self.store.get(key)
            if existing is not None:
                return ClientIdentity(id=existing["client_id"])

            client_id = self.generate_id()
            record = {"client_id": client_id, "created_at": self.clock()}
            # Register the id before publishing it so exists() never lags resolve().
            await self.store.set(client_key(client_id), record)

            if await self.store.compare_and_swap(key, None, record):
                self.logger.info("Issued client identity", client_id=client_id)
                return ClientIdentity(id=client_id)

            # Another caller with the same context won the race; adopt its id.
            await self.store.delete(client_key(client_id))

        raise PersistenceError("Identity resolution did not settle", details={"attempts": self.max_attempts})

    async def exists(self, client_id: str) -> bool:
        """True if ``client_id`` was issued by this resolver."""
        if not client_id:
            return False
        return await self.store.get(client_key(client_id)) is not None

    async def forget(self, caller_context: str) -> bool:
        """Detach ``caller_context`` from its identity.

        The issued id stays valid and keeps its tier and usage; the context will
        be given a fresh id on its next resolve.
        """
        removed = await self.store.delete(identity_key(caller_context))
        if removed:
            self.logger.info("Forgot caller context")
        return removed
