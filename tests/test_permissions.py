"""
Tests for the Permission Resolver.

Validates:
- No assignments, no permissions
- Context scoping with global fallback
- Validation gate: pending or rejected roles confer nothing
- Expiry
- Cache invalidation on assignment and catalog changes
- Monetary permissions are answered from fresh reads
- Store failures fail closed
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from caixinha_governance.domain.schema import Collections, ContextType, RoleContext, ValidationStatus
from caixinha_governance.errors import ForbiddenError, ServiceError
from caixinha_governance.rbac.resolver import PermissionCache, PermissionResolver
from caixinha_governance.store.base import InMemoryRecordStore

from support import FixedClock, make_services


class FailingStore(InMemoryRecordStore):
    def query(self, collection, predicate=None):
        raise ServiceError("Record store unavailable")


class TestPermissionResolver:
    """Contextual RBAC checks."""

    def setup_method(self):
        self.clock = FixedClock()
        self.services, _ = make_services(self.clock)
        self.resolver = self.services.resolver
        self.user_roles = self.services.user_roles

    def _member(self, user_id="u1", caixinha_id="C1", validated=True):
        assignment = self.user_roles.register_caixinha_member(user_id, caixinha_id)
        if validated:
            self.user_roles.validate_user_role(assignment.id)
        return assignment

    def test_user_without_roles_has_nothing(self):
        assert self.resolver.has_permission("U", "caixinha:manage_loans", "caixinha", "C1") is False
        assert self.resolver.has_permission("U", "caixinha:read") is False

    def test_validated_member_permissions_in_own_caixinha(self):
        self._member()
        assert self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")
        assert self.resolver.has_permission("u1", "loan:request", ContextType.CAIXINHA, "C1")
        assert not self.resolver.has_permission("u1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1")

    def test_scoped_role_does_not_leak_to_other_caixinha(self):
        self._member(caixinha_id="C1")
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C2")
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.GLOBAL)

    def test_global_role_is_fallback_for_scoped_requests(self):
        self.user_roles.assign_role("root", "admin", validation_status=ValidationStatus.VALIDATED)
        assert self.resolver.has_permission("root", "caixinha:manage_loans", ContextType.CAIXINHA, "C9")
        assert self.resolver.has_permission("root", "role:create")

    def test_pending_manager_cannot_move_money(self):
        self.user_roles.register_caixinha_manager("m1", "C1")
        assert not self.resolver.has_permission("m1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1")
        assert not self.resolver.has_permission("m1", "caixinha:read", ContextType.CAIXINHA, "C1")

    def test_rejected_role_confers_nothing(self):
        assignment = self._member()
        self.user_roles.reject_user_role(assignment.id, "Documents do not match")
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")

    def test_expired_role_confers_nothing(self):
        self.user_roles.assign_role(
            "u1", "caixinhaMember", RoleContext.caixinha("C1"),
            validation_status=ValidationStatus.VALIDATED,
            expires_at=self.clock.now + timedelta(hours=1),
        )
        assert self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")
        self.clock.advance(hours=2)
        self.resolver.invalidate_all()
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")

    def test_assignment_change_invalidates_cache(self):
        assignment = self._member(validated=False)
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")
        self.user_roles.validate_user_role(assignment.id)
        assert self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")
        self.user_roles.remove_user_role(assignment.id)
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")

    def test_catalog_change_clears_cache(self):
        self._member()
        assert self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")
        self.services.catalog.remove_permission_from_role("caixinhaMember", "dispute_vote")
        assert not self.resolver.has_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")

    def test_monetary_permission_bypasses_cache(self):
        manager = self.user_roles.register_caixinha_manager("m1", "C1")
        self.user_roles.validate_user_role(manager.id)
        assert self.resolver.has_permission("m1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1")

        # Reject behind the service's back: the cache is not told.
        record = self.services.store.get(Collections.USER_ROLES, manager.id)
        record.data["validationStatus"] = ValidationStatus.REJECTED.value
        self.services.store.put(Collections.USER_ROLES, manager.id, record.data)

        assert self.resolver.has_permission("m1", "caixinha:read", ContextType.CAIXINHA, "C1")
        assert not self.resolver.has_permission("m1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1")

    def test_has_role(self):
        self._member()
        assert self.resolver.has_role("u1", "CaixinhaMember", ContextType.CAIXINHA, "C1")
        assert not self.resolver.has_role("u1", "CaixinhaManager", ContextType.CAIXINHA, "C1")
        assert not self.resolver.has_role("u1", "NoSuchRole", ContextType.CAIXINHA, "C1")

    def test_require_permission_raises_forbidden(self):
        with pytest.raises(ForbiddenError):
            self.resolver.require_permission("u1", "dispute:vote", ContextType.CAIXINHA, "C1")

    def test_store_failure_fails_closed(self):
        resolver = PermissionResolver(FailingStore())
        assert resolver.has_permission("u1", "caixinha:read", ContextType.CAIXINHA, "C1") is False
        assert resolver.has_permission("u1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1") is False
        with pytest.raises(ForbiddenError):
            resolver.require_permission("u1", "caixinha:read", ContextType.CAIXINHA, "C1")


class TestPermissionCache:
    def setup_method(self):
        self.now = 0.0
        self.cache = PermissionCache(ttl_seconds=10, max_entries=2, monotonic=lambda: self.now)

    def _grants(self):
        from caixinha_governance.rbac.resolver import EffectiveGrants

        return EffectiveGrants(role_ids=frozenset({"r"}), permissions=frozenset({"p:x"}), valid_until=None)

    def test_entries_expire(self):
        self.cache.put(("u1", ContextType.GLOBAL, None), self._grants())
        assert self.cache.get(("u1", ContextType.GLOBAL, None)) is not None
        self.now = 11
        assert self.cache.get(("u1", ContextType.GLOBAL, None)) is None

    def test_bounded_size_evicts_least_recent(self):
        self.cache.put(("u1", ContextType.GLOBAL, None), self._grants())
        self.cache.put(("u2", ContextType.GLOBAL, None), self._grants())
        self.cache.get(("u1", ContextType.GLOBAL, None))
        self.cache.put(("u3", ContextType.GLOBAL, None), self._grants())
        assert len(self.cache) == 2
        assert self.cache.get(("u2", ContextType.GLOBAL, None)) is None

    def test_invalidate_user(self):
        self.cache.put(("u1", ContextType.GLOBAL, None), self._grants())
        self.cache.put(("u1", ContextType.CAIXINHA, "C1"), self._grants())
        self.cache.put(("u2", ContextType.GLOBAL, None), self._grants())
        self.cache.invalidate_user("u1")
        assert len(self.cache) == 1

    def test_short_ttl_for_expiring_assignment(self):
        self.cache.put(("u1", ContextType.GLOBAL, None), self._grants(), ttl_seconds=2)
        self.now = 3
        assert self.cache.get(("u1", ContextType.GLOBAL, None)) is None
