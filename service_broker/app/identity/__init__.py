"""Client identity resolution."""

from .resolver import ClientIdentityResolver

__all__ = ["ClientIdentityResolver"]
