"""
Quota package for the Broker.

Holds the per-client hourly window counter that admits or rejects work before
it may consume a shared credential.
"""

from .enforcer import QuotaDecision, QuotaEnforcer, window_start_for

__all__ = ["QuotaDecision", "QuotaEnforcer", "window_start_for"]
