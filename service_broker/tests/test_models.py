"""
Unit tests for Broker data models.
"""

import pytest
from pydantic import ValidationError

from service_broker.app.models import (
    CredentialRecord,
    ResolveRequest,
    TierKind,
    TierRecord,
    TierResponse,
    UpgradeRequest,
)
from service_broker.tests.helpers import EPOCH


class TestCredentialRecord:
    """Test cases for CredentialRecord."""

    @pytest.fixture
    def record(self):
        return CredentialRecord(
            tier_kind=TierKind.FREE,
            value="secret",
            issued_at=EPOCH,
            expires_at=EPOCH + 3600,
            version=3,
        )

    def test_expiry_boundary(self, record):
        assert record.is_expired(EPOCH + 3599.9) is False
        assert record.is_expired(EPOCH + 3600) is True

    def test_renewal_margin(self, record):
        assert record.needs_renewal(EPOCH + 3299, 300) is False
        assert record.needs_renewal(EPOCH + 3300, 300) is True

    def test_dict_round_trip(self, record):
        data = record.to_dict()

        assert data["tier_kind"] == "free"
        assert CredentialRecord.from_dict(data) == record

    def test_repr_omits_value(self, record):
        assert "secret" not in repr(record)
        assert "version=3" in repr(record)


class TestTierRecord:
    """Test cases for TierRecord."""

    def test_from_dict_restores_enum(self):
        record = TierRecord.from_dict({
            "client_id": "client-1",
            "tier_kind": "premium",
            "hourly_quota": 100,
            "priority": 2,
        })

        assert record.tier_kind is TierKind.PREMIUM
        assert record.owner_email is None
        assert TierResponse.from_record(record).tier == TierKind.PREMIUM


class TestRequestModels:
    """Test cases for request validation."""

    @pytest.mark.parametrize("email", ["owner@example.com", "  first.last@mail.example.org "])
    def test_valid_email(self, email):
        assert UpgradeRequest(email=email).email == email.strip()

    @pytest.mark.parametrize("email", ["", "owner", "@example.com", "owner@localhost"])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError):
            UpgradeRequest(email=email)

    def test_context_length(self):
        with pytest.raises(ValidationError):
            ResolveRequest(context="x" * 257)
