"""
Adapters package for the Broker Service.

HTTP client wrappers for the upstream dependencies:

- CredentialServiceClient: acquire/refresh of the shared per-tier credential
- GenerationClient: the generation API itself

Adapters translate transport outcomes into the broker error taxonomy and keep
no state beyond their HTTP client.
"""

from .credential_client import CredentialServiceClient
from .generation_client import GenerationClient

__all__ = [
    "CredentialServiceClient",
    "GenerationClient",
]
