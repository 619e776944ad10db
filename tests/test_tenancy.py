"""
Tests for tenant scoping and request context.
"""

import pytest

from rxcare.errors import ValidationError
from rxcare.tenancy import TenantContext, TenantScope, get_current_tenant, require_tenant, scope_for
from rxcare.validators import clamp_pagination, is_object_id, parse_datetime, validate_object_id

from conftest import PATIENT_ID


class TestTenantScope:

    def test_matches_own_live_documents_only(self):
        scope = TenantScope("workplace-a")
        assert scope.matches({"tenant_id": "workplace-a"})
        assert not scope.matches({"tenant_id": "workplace-b"})
        assert not scope.matches({"tenant_id": "workplace-a", "is_deleted": True})
        assert TenantScope("workplace-a", include_deleted=True).matches(
            {"tenant_id": "workplace-a", "is_deleted": True}
        )

    def test_as_filter(self):
        assert scope_for("workplace-a").as_filter() == {
            "tenant_id": "workplace-a",
            "is_deleted": {"$ne": True},
        }

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_empty_tenant_rejected(self, value):
        with pytest.raises(ValidationError):
            scope_for(value)


class TestTenantContext:

    def test_sync_context(self):
        assert get_current_tenant() is None
        with TenantContext("workplace-a") as scope:
            assert require_tenant() == scope
        assert get_current_tenant() is None

    @pytest.mark.asyncio
    async def test_async_context(self):
        async with TenantContext("workplace-b"):
            assert require_tenant().tenant_id == "workplace-b"
        with pytest.raises(ValidationError):
            require_tenant()


class TestValidators:

    def test_object_ids(self):
        assert is_object_id(PATIENT_ID)
        assert not is_object_id("507f1f77bcf86cd799439011")
        assert validate_object_id(PATIENT_ID.upper(), "patient_id") == PATIENT_ID
        with pytest.raises(ValidationError) as exc:
            validate_object_id(None, "patient_id")
        assert exc.value.field == "patient_id"

    def test_parse_datetime(self):
        parsed = parse_datetime("2024-03-15T09:00:00Z")
        assert parsed.isoformat() == "2024-03-15T09:00:00+00:00"
        assert parse_datetime("") is None
        with pytest.raises(ValidationError):
            parse_datetime("15/03/2024", "date_from")

    def test_clamp_pagination(self):
        assert clamp_pagination("3", "10") == (3, 10)
        assert clamp_pagination(0, 999) == (1, 50)
        assert clamp_pagination("x", None) == (1, 20)
