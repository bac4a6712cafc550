"""
Tests for the domain models.

Validates:
- Context scoping rules of role assignments
- One vote per user on a dispute
- Loan ledger consistency (paid installments == valorPago ≤ total due)
- Transition tables are exhaustive and monotonic
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from caixinha_governance.domain.schema import (
    DEFAULT_ROLE_PERMISSIONS,
    TERMINAL_DISPUTE_STATUSES,
    TERMINAL_LOAN_STATUSES,
    VALID_DISPUTE_TRANSITIONS,
    VALID_LOAN_TRANSITIONS,
    CaixinhaRules,
    ContextType,
    Dispute,
    DisputeStatus,
    DisputeType,
    Installment,
    Loan,
    LoanStatus,
    Permission,
    RoleContext,
    UserRole,
    ValidationStatus,
    Vote,
    add_months,
    build,
    check_exhaustive,
    ensure_transition,
    to_money,
)
from caixinha_governance.errors import ConflictError, ValidationError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestRoleContext:
    def test_global_context_drops_resource(self):
        context = RoleContext(type=ContextType.GLOBAL, resource_id="ignored")
        assert context.resource_id is None

    def test_scoped_context_requires_resource(self):
        with pytest.raises(ValidationError):
            build(RoleContext, type=ContextType.CAIXINHA)

    def test_same_as_compares_type_and_resource(self):
        assert RoleContext.caixinha("c1").same_as(RoleContext.caixinha("c1"))
        assert not RoleContext.caixinha("c1").same_as(RoleContext.caixinha("c2"))
        assert not RoleContext.caixinha("c1").same_as(RoleContext.global_())

    def test_camel_case_round_trip(self):
        record = RoleContext.caixinha("c1").to_record()
        assert record == {"type": "caixinha", "resourceId": "c1"}
        assert RoleContext.from_record(record).resource_id == "c1"


class TestUserRole:
    def test_pending_assignment_confers_nothing(self):
        assignment = UserRole(user_id="u1", role_id="caixinhaManager")
        assert assignment.validation_status == ValidationStatus.PENDING
        assert not assignment.confers_capabilities(NOW)

    def test_expired_assignment_confers_nothing(self):
        assignment = UserRole(
            user_id="u1",
            role_id="caixinhaMember",
            validation_status=ValidationStatus.VALIDATED,
            expires_at=NOW - timedelta(seconds=1),
        )
        assert assignment.is_expired(NOW)
        assert not assignment.confers_capabilities(NOW)


class TestPermission:
    def test_name_is_derived(self):
        assert Permission(resource="caixinha", action="manage_loans").name == "caixinha:manage_loans"

    def test_inconsistent_name_rejected(self):
        with pytest.raises(ValidationError):
            build(Permission, resource="caixinha", action="read", name="caixinha:write")

    def test_malformed_action_rejected(self):
        with pytest.raises(ValidationError):
            build(Permission, resource="caixinha", action="x")


class TestDispute:
    def _dispute(self, votes):
        return Dispute(
            caixinha_id="c1",
            title="Approve loan",
            description="Loan request for a new roof",
            type=DisputeType.LOAN_APPROVAL,
            votes=votes,
            expires_at=NOW + timedelta(days=7),
            created_by="u1",
        )

    def test_duplicate_voter_rejected(self):
        with pytest.raises(ValueError):
            self._dispute([Vote(user_id="u1", vote=True), Vote(user_id="u1", vote=False)])

    def test_counts(self):
        dispute = self._dispute([Vote(user_id="u1", vote=True), Vote(user_id="u2", vote=False)])
        assert dispute.count(True) == 1
        assert dispute.count(False) == 1
        assert dispute.has_voted("u2")
        assert not dispute.is_terminal

    def test_comment_length_limited(self):
        with pytest.raises(ValidationError):
            build(Vote, user_id="u1", vote=True, comment="x" * 256)


class TestLoan:
    def _installments(self, amounts, paid=0):
        return [
            Installment(number=n, due_date=add_months(date(2026, 1, 1), n), amount=Decimal(a), paid=n <= paid)
            for n, a in enumerate(amounts, start=1)
        ]

    def test_total_due_includes_interest(self):
        loan = Loan(
            caixinha_id="c1", user_id="u1", valor=Decimal("1000.00"), parcelas_count=2,
            taxa_juros=Decimal("0.05"), motivo="Reforma",
            installments=self._installments(["525.00", "525.00"]),
        )
        assert loan.total_due == Decimal("1050.00")
        assert loan.outstanding == Decimal("1050.00")

    def test_paid_installments_must_match_valor_pago(self):
        with pytest.raises(ValidationError):
            build(
                Loan, caixinha_id="c1", user_id="u1", valor=Decimal("200.00"), parcelas_count=2,
                motivo="Reforma", installments=self._installments(["100.00", "100.00"], paid=1),
                valor_pago=Decimal("50.00"),
            )

    def test_installment_count_must_match(self):
        with pytest.raises(ValidationError):
            build(
                Loan, caixinha_id="c1", user_id="u1", valor=Decimal("200.00"), parcelas_count=3,
                motivo="Reforma", installments=self._installments(["100.00", "100.00"]),
            )

    def test_more_than_sixty_installments_rejected(self):
        with pytest.raises(ValidationError):
            build(
                Loan, caixinha_id="c1", user_id="u1", valor=Decimal("61.00"), parcelas_count=61,
                motivo="Reforma", installments=self._installments(["1.00"] * 61),
            )


class TestTransitions:
    def test_tables_are_exhaustive(self):
        assert set(VALID_DISPUTE_TRANSITIONS) == set(DisputeStatus)
        assert set(VALID_LOAN_TRANSITIONS) == set(LoanStatus)

    def test_missing_state_detected(self):
        class Light(str, enum.Enum):
            RED = "red"
            GREEN = "green"

        with pytest.raises(RuntimeError):
            check_exhaustive({Light.RED: frozenset()}, Light)

    def test_terminal_states(self):
        assert TERMINAL_DISPUTE_STATUSES == {
            DisputeStatus.APPROVED, DisputeStatus.REJECTED, DisputeStatus.CANCELED, DisputeStatus.EXPIRED,
        }
        assert TERMINAL_LOAN_STATUSES == {LoanStatus.QUITADO, LoanStatus.REJEITADO, LoanStatus.CANCELADO}

    def test_no_backward_loan_transitions(self):
        with pytest.raises(ConflictError):
            ensure_transition(VALID_LOAN_TRANSITIONS, LoanStatus.PARCIAL, LoanStatus.APROVADO, "Loan")
        with pytest.raises(ConflictError):
            ensure_transition(VALID_LOAN_TRANSITIONS, LoanStatus.PARCIAL, LoanStatus.CANCELADO, "Loan")

    def test_terminal_dispute_accepts_nothing(self):
        for status in TERMINAL_DISPUTE_STATUSES:
            for target in DisputeStatus:
                with pytest.raises(ConflictError):
                    ensure_transition(VALID_DISPUTE_TRANSITIONS, status, target, "Dispute")


class TestHelpers:
    def test_to_money_rounds_half_up(self):
        assert to_money(Decimal("10.005")) == Decimal("10.01")

    def test_add_months_clamps_day(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)

    def test_rules_quorum_bounds(self):
        with pytest.raises(ValidationError):
            build(CaixinhaRules, quorum_threshold=Decimal("0"))
        assert build(CaixinhaRules, quorum_threshold=Decimal("1")).quorum_threshold == 1

    def test_manager_role_composes_member_permissions(self):
        member = set(DEFAULT_ROLE_PERMISSIONS["caixinhaMember"])
        assert member <= set(DEFAULT_ROLE_PERMISSIONS["caixinhaManager"])
        assert member <= set(DEFAULT_ROLE_PERMISSIONS["caixinhaModerator"])
