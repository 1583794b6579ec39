"""Shared per-tier credential lifecycle."""

from .pool import CredentialPool

__all__ = ["CredentialPool"]
