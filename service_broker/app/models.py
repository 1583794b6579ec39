"""
Data models for the Broker Service.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class TierKind(str, Enum):
    """Subscription tiers."""
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class ClientIdentity:
    """Durable opaque identifier issued to a caller."""
    id: str


@dataclass
class TierRecord:
    """Subscription tier assigned to a client."""
    client_id: str
    tier_kind: TierKind
    hourly_quota: int
    # Stored for forward compatibility; no admission decision reads it.
    priority: int
    owner_email: Optional[str] = None
    upgraded_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier_kind"] = self.tier_kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierRecord":
        return cls(
            client_id=data["client_id"],
            tier_kind=TierKind(data["tier_kind"]),
            hourly_quota=int(data["hourly_quota"]),
            priority=int(data["priority"]),
            owner_email=data.get("owner_email"),
            upgraded_at=data.get("upgraded_at"),
        )


@dataclass(frozen=True)
class CredentialRecord:
    """The shared credential currently held for a tier."""
    tier_kind: TierKind
    value: str
    issued_at: float
    expires_at: float
    version: int

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def needs_renewal(self, now: float, margin_seconds: float) -> bool:
        return now >= self.expires_at - margin_seconds

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier_kind"] = self.tier_kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        return cls(
            tier_kind=TierKind(data["tier_kind"]),
            value=data["value"],
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
            version=int(data["version"]),
        )

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(tier_kind={self.tier_kind.value!r}, version={self.version}, "
            f"expires_at={self.expires_at})"
        )


@dataclass
class UsageWindow:
    """Admissions counted for a client in its current hourly window."""
    client_id: str
    window_start: float
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageWindow":
        return cls(
            client_id=data["client_id"],
            window_start=float(data["window_start"]),
            count=int(data["count"]),
        )


@dataclass(frozen=True)
class IssuedCredential:
    """A credential value handed out by the renewal endpoint."""
    value: str
    ttl_seconds: float


class ResolveRequest(BaseModel):
    """Request model for identity resolution."""
    context: str = Field(..., min_length=1, max_length=256, description="Caller context key")


class ResolveResponse(BaseModel):
    """Response model for identity resolution."""
    client_id: str


class UpgradeRequest(BaseModel):
    """Request model for a tier upgrade."""
    email: str = Field(..., description="Owner email for the premium tier")

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value


class TierResponse(BaseModel):
    """Response model for a tier record."""
    client_id: str
    tier: TierKind
    hourly_quota: int
    priority: int
    owner_email: Optional[str] = None

    @classmethod
    def from_record(cls, record: TierRecord) -> "TierResponse":
        return cls(
            client_id=record.client_id,
            tier=record.tier_kind,
            hourly_quota=record.hourly_quota,
            priority=record.priority,
            owner_email=record.owner_email,
        )


class ClientStatusResponse(BaseModel):
    """Response model for a client's broker status."""
    client_id: str
    tier: TierKind
    hourly_usage: int
    hourly_limit: int
    remaining: int
    reset_in_seconds: int
    can_generate: bool
    has_credential: bool
    credential_expired: bool
    credential_expires_in: float
