"""Subscription tiers and upgrades."""

from .registry import TierLimits, TierPolicy, TierRegistry

__all__ = ["TierLimits", "TierPolicy", "TierRegistry"]
