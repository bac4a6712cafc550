"""
Tests for role assignments and bank validation.

Validates:
- One assignment per (user, role, context)
- Validation status transitions and their conflicts
- Moderator promotion rules
- Bank validation codes: single use, expiry, ownership
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from caixinha_governance.domain.schema import (
    BankValidationStatus,
    Collections,
    ContextType,
    RoleContext,
    ValidationStatus,
)
from caixinha_governance.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
)
from caixinha_governance.rbac.bank_validation import (
    CODE_ALPHABET,
    CODE_LENGTH,
    BankValidationWorkflow,
    generate_validation_amount,
    generate_validation_code,
)

from support import FixedClock, make_services

BANK_DATA = {
    "bankName": "Banco do Brasil",
    "bankCode": "001",
    "accountType": "corrente",
    "accountNumber": "12345-6",
    "branchCode": "0001",
    "holderName": "Maria Souza",
    "holderDocument": "12345678900",
}


class TestUserRoleService:
    def setup_method(self):
        self.clock = FixedClock()
        self.services, self.dispatcher = make_services(self.clock)
        self.user_roles = self.services.user_roles

    def test_assignment_defaults_to_pending(self):
        assignment = self.user_roles.assign_role("u1", "caixinhaMember", {"type": "caixinha", "resourceId": "C1"})
        assert assignment.validation_status == ValidationStatus.PENDING
        assert assignment.validated_at is None

    def test_same_assignment_is_not_duplicated(self):
        first = self.user_roles.register_caixinha_member("u1", "C1")
        second = self.user_roles.register_caixinha_member("u1", "C1", invited_by="admin")
        assert first.id == second.id
        assert len(self.user_roles.list_user_roles("u1")) == 1

    def test_same_role_in_other_context_is_separate(self):
        self.user_roles.register_caixinha_member("u1", "C1")
        self.user_roles.register_caixinha_member("u1", "C2")
        assert len(self.user_roles.list_user_roles("u1", ContextType.CAIXINHA)) == 2
        assert len(self.user_roles.list_user_roles("u1", ContextType.CAIXINHA, "C2")) == 1

    def test_unknown_role(self):
        with pytest.raises(NotFoundError):
            self.user_roles.assign_role("u1", "ghost")

    def test_scoped_context_needs_resource(self):
        with pytest.raises(ValidationError):
            self.user_roles.assign_role("u1", "caixinhaMember", {"type": "caixinha"})

    def test_validate_then_validate_again_conflicts(self):
        assignment = self.user_roles.register_caixinha_member("u1", "C1")
        validated = self.user_roles.validate_user_role(assignment.id, {"validatedBy": "admin"})
        assert validated.validation_status == ValidationStatus.VALIDATED
        assert validated.validated_at == self.clock.now
        assert validated.validation_data["validatedBy"] == "admin"
        with pytest.raises(ConflictError):
            self.user_roles.validate_user_role(assignment.id)
        assert "user_role.validated" in self.dispatcher.types()

    def test_reject_requires_reason_and_conflicts_on_repeat(self):
        assignment = self.user_roles.register_caixinha_member("u1", "C1")
        with pytest.raises(ValidationError):
            self.user_roles.reject_user_role(assignment.id, "  ")
        rejected = self.user_roles.reject_user_role(assignment.id, "Account holder mismatch", rejected_by="admin")
        assert rejected.validation_status == ValidationStatus.REJECTED
        assert rejected.validation_data["rejectionReason"] == "Account holder mismatch"
        with pytest.raises(ConflictError):
            self.user_roles.reject_user_role(assignment.id, "again")

    def test_rejected_role_can_later_be_validated(self):
        assignment = self.user_roles.register_caixinha_member("u1", "C1")
        self.user_roles.reject_user_role(assignment.id, "Missing documents")
        validated = self.user_roles.validate_user_role(assignment.id)
        assert validated.validation_status == ValidationStatus.VALIDATED

    def test_missing_assignment(self):
        with pytest.raises(NotFoundError):
            self.user_roles.validate_user_role("ghost")
        with pytest.raises(NotFoundError):
            self.user_roles.remove_user_role("ghost")

    def test_remove_user_role(self):
        assignment = self.user_roles.register_caixinha_member("u1", "C1")
        self.user_roles.remove_user_role(assignment.id)
        assert self.user_roles.list_user_roles("u1") == []

    def test_promote_requires_validated_manager(self):
        manager = self.user_roles.register_caixinha_manager("m1", "C1")
        member = self.user_roles.register_caixinha_member("u1", "C1")
        self.user_roles.validate_user_role(member.id)
        with pytest.raises(ForbiddenError):
            self.user_roles.promote_to_caixinha_moderator("u1", "C1", promoted_by="m1")

        self.user_roles.validate_user_role(manager.id)
        moderator = self.user_roles.promote_to_caixinha_moderator("u1", "C1", promoted_by="m1")
        assert moderator.role_id == "caixinhaModerator"
        assert moderator.validation_status == ValidationStatus.VALIDATED
        assert self.services.resolver.has_permission("u1", "caixinha:manage_members", ContextType.CAIXINHA, "C1")

    def test_promote_requires_validated_member(self):
        manager = self.user_roles.register_caixinha_manager("m1", "C1")
        self.user_roles.validate_user_role(manager.id)
        self.user_roles.register_caixinha_member("u1", "C1")
        with pytest.raises(ConflictError):
            self.user_roles.promote_to_caixinha_moderator("u1", "C1", promoted_by="m1")

    def test_new_user_is_validated_client(self):
        client = self.user_roles.register_new_user("u1")
        assert client.validation_status == ValidationStatus.VALIDATED
        assert self.services.resolver.has_permission("u1", "caixinha:create")

    def test_revoke_caixinha_roles(self):
        self.user_roles.register_caixinha_member("u1", "C1")
        self.user_roles.assign_role("u1", "caixinhaModerator", RoleContext.caixinha("C1"))
        self.user_roles.register_caixinha_member("u1", "C2")
        removed = self.user_roles.revoke_caixinha_roles("u1", "C1")
        assert len(removed) == 2
        assert [ur.context.resource_id for ur in self.user_roles.list_user_roles("u1")] == ["C2"]


class TestCodeGeneration:
    def test_code_shape(self):
        code = generate_validation_code()
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)

    def test_amount_range(self):
        for _ in range(50):
            assert Decimal("0.01") <= generate_validation_amount() <= Decimal("0.05")


class TestBankValidationWorkflow:
    def setup_method(self):
        self.clock = FixedClock()
        self.services, _ = make_services(self.clock)
        self.user_roles = self.services.user_roles
        self.codes = iter(["ABC123", "XYZ789", "QWE456"])
        self.workflow = BankValidationWorkflow(
            self.services.store,
            self.user_roles,
            self.services.writer,
            clock=self.clock,
            code_factory=lambda: next(self.codes),
            amount_factory=lambda: Decimal("0.03"),
        )
        self.manager = self.user_roles.register_caixinha_manager("m1", "C1")

    def test_init_issues_code_and_amount(self):
        request = self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        assert request.code == "ABC123"
        assert request.amount == Decimal("0.03")
        assert request.status == BankValidationStatus.PENDING
        assert request.expires_at == self.clock.now + self.workflow.ttl

    def test_confirm_validates_role(self):
        self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        validated = self.workflow.confirm_bank_validation("m1", "abc123")
        assert validated.id == self.manager.id
        assert validated.validation_status == ValidationStatus.VALIDATED
        assert validated.validation_data["validationMethod"] == "bank_transfer"
        assert self.services.resolver.has_permission("m1", "caixinha:manage_loans", ContextType.CAIXINHA, "C1")

    def test_code_is_single_use(self):
        request = self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        self.workflow.confirm_bank_validation("m1", "ABC123")
        with pytest.raises(InvalidCodeError):
            self.workflow.confirm_bank_validation("m1", "ABC123")
        assert self.workflow.get_request(request.id).status == BankValidationStatus.CONSUMED

    def test_failed_role_validation_keeps_code_usable(self, monkeypatch):
        request = self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        validate = self.user_roles.validate_user_role
        failures = []

        def flaky(user_role_id, validation_data=None):
            if not failures:
                failures.append(user_role_id)
                raise NotFoundError(f"User role {user_role_id} not found")
            return validate(user_role_id, validation_data)

        monkeypatch.setattr(self.user_roles, "validate_user_role", flaky)
        with pytest.raises(NotFoundError):
            self.workflow.confirm_bank_validation("m1", "ABC123")

        stored = self.workflow.get_request(request.id)
        assert stored.status == BankValidationStatus.PENDING
        assert stored.consumed_at is None
        assert self.user_roles.get_user_role(self.manager.id).validation_status == ValidationStatus.PENDING

        validated = self.workflow.confirm_bank_validation("m1", "ABC123")
        assert validated.validation_status == ValidationStatus.VALIDATED
        assert self.workflow.get_request(request.id).status == BankValidationStatus.CONSUMED

    def test_expired_code_changes_nothing(self):
        request = self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        self.clock.advance(hours=25)
        with pytest.raises(InvalidCodeError):
            self.workflow.confirm_bank_validation("m1", "ABC123")
        assert self.workflow.get_request(request.id).status == BankValidationStatus.PENDING
        assert self.user_roles.get_user_role(self.manager.id).validation_status == ValidationStatus.PENDING

    def test_wrong_code(self):
        self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        with pytest.raises(InvalidCodeError):
            self.workflow.confirm_bank_validation("m1", "ZZZ999")
        with pytest.raises(InvalidCodeError):
            self.workflow.confirm_bank_validation("m1", "not-a-code")

    def test_code_belongs_to_its_user(self):
        self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        with pytest.raises(InvalidCodeError):
            self.workflow.confirm_bank_validation("intruder", "ABC123")

    def test_init_for_someone_elses_role(self):
        with pytest.raises(ForbiddenError):
            self.workflow.init_bank_validation("intruder", BANK_DATA, self.manager.id)

    def test_incomplete_bank_data(self):
        with pytest.raises(ValidationError):
            self.workflow.init_bank_validation("m1", {**BANK_DATA, "bankName": ""}, self.manager.id)
        assert self.services.store.query(Collections.BANK_VALIDATIONS) == []

    def test_confirm_without_named_role_uses_first_pending(self):
        self.workflow.init_bank_validation("m1", BANK_DATA)
        validated = self.workflow.confirm_bank_validation("m1", "ABC123")
        assert validated.id == self.manager.id

    def test_already_validated_role_conflicts(self):
        self.workflow.init_bank_validation("m1", BANK_DATA, self.manager.id)
        self.user_roles.validate_user_role(self.manager.id)
        with pytest.raises(ConflictError):
            self.workflow.confirm_bank_validation("m1", "ABC123")
