"""
Tests for the Dispute Engine.

Validates:
- Quorum approval and early rejection against the eligible voter set
- One vote per user, including two concurrent votes by the same user
- The outcome of a resolution is applied exactly once under races
- Expiry (after counting votes), cancellation and the dispute-requirement policy
- A retried vote settles a quorum its first attempt left open
- RULE_CHANGE and MEMBER_REMOVAL outcomes
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from caixinha_governance.domain.schema import DisputeStatus, DisputeType, LoanStatus
from caixinha_governance.errors import ConflictError, ForbiddenError, NotFoundError, ServiceError, ValidationError
from caixinha_governance.governance.disputes import QuorumTally

from support import FixedClock, RaceInjectingStore, make_caixinha, make_services

VOTERS = ["u1", "u2", "u3"]


class DisputeTestBase:
    quorum = "0.5"

    def setup_method(self):
        self.clock = FixedClock()
        self.store = RaceInjectingStore()
        self.services, self.dispatcher = make_services(self.clock, store=self.store)
        self.disputes = self.services.disputes
        self.loans = self.services.loans
        self.caixinha = make_caixinha(self.services, members=VOTERS, rules={"quorumThreshold": self.quorum})

    def _member_removal(self, target="u3", creator="admin"):
        return self.disputes.create_dispute(
            self.caixinha.id, creator, DisputeType.MEMBER_REMOVAL,
            title="Remove inactive member",
            description="Has not contributed for six months",
            proposed_changes={"userId": target},
        )


class TestLoanApprovalByVote(DisputeTestBase):
    """Four eligible voters (admin + three members), quorum 0.5."""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.request_loan(self.caixinha.id, "u1", Decimal("1200"), 12, "Reforma da casa")
        self.dispute_id = self.loan.dispute_id

    def test_request_opens_dispute(self):
        assert self.dispute_id is not None
        dispute = self.disputes.get_dispute(self.dispute_id)
        assert dispute.type == DisputeType.LOAN_APPROVAL
        assert dispute.created_by == "u1"
        assert dispute.proposed_changes == {"loanId": self.loan.id}
        assert dispute.expires_at == self.clock.now + timedelta(days=7)
        assert self.dispatcher.types()[-2:] == ["dispute.created", "loan.requested"]

    def test_two_yes_votes_approve(self):
        after_first = self.disputes.vote(self.dispute_id, "u2", True)
        assert after_first.status == DisputeStatus.ACTIVE
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.PENDENTE

        resolved = self.disputes.vote(self.dispute_id, "u3", True, comment="Good cause")
        assert resolved.status == DisputeStatus.APPROVED
        assert resolved.applied is True
        assert resolved.resolved_at == self.clock.now

        loan = self.loans.get_loan(self.loan.id)
        assert loan.status == LoanStatus.APROVADO
        assert loan.admin_aprovador == f"dispute:{self.dispute_id}"
        assert loan.data_aprovacao == self.clock.now

    def test_outcome_applied_once_when_resolutions_race(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        eligible = self.disputes.eligible_voters(self.caixinha.id)

        def competing_resolution():
            self.disputes._resolve(self.dispute_id, eligible)

        # First conditional write is the vote itself; the competing
        # resolution slips in right before the settle write that follows.
        self.store.before_next_write(
            "disputes", lambda: self.store.before_next_write("disputes", competing_resolution)
        )
        resolved = self.disputes.vote(self.dispute_id, "u3", True)

        assert self.store.conflicts == 1
        assert resolved.status == DisputeStatus.APPROVED
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.APROVADO
        assert self.dispatcher.types().count("loan.status_changed") == 1
        assert self.dispatcher.types().count("dispute.resolved") == 1

    def test_approval_handler_is_idempotent(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        dispute = self.disputes.vote(self.dispute_id, "u3", True)
        again = self.loans.approve_from_dispute(dispute)
        assert again.status == LoanStatus.APROVADO
        assert self.dispatcher.types().count("loan.status_changed") == 1

    def test_vote_after_resolution_conflicts(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        self.disputes.vote(self.dispute_id, "u3", True)
        with pytest.raises(ConflictError):
            self.disputes.vote(self.dispute_id, "admin", False)

    def test_concurrent_votes_by_same_user(self):
        self.store.before_next_write("disputes", lambda: self.disputes.vote(self.dispute_id, "u2", True))
        with pytest.raises(ConflictError):
            self.disputes.vote(self.dispute_id, "u2", False)

        dispute = self.disputes.get_dispute(self.dispute_id)
        assert [(v.user_id, v.vote) for v in dispute.votes] == [("u2", True)]
        assert self.store.conflicts == 1

    def test_second_vote_by_same_user(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        with pytest.raises(ConflictError):
            self.disputes.vote(self.dispute_id, "u2", True)

    def test_early_rejection(self):
        self.disputes.vote(self.dispute_id, "u2", False)
        assert self.disputes.vote(self.dispute_id, "u3", False).status == DisputeStatus.ACTIVE
        # yes (0) + undecided (1) can no longer reach 2 of 4.
        resolved = self.disputes.vote(self.dispute_id, "admin", False)
        assert resolved.status == DisputeStatus.REJECTED

        loan = self.loans.get_loan(self.loan.id)
        assert loan.status == LoanStatus.REJEITADO
        assert loan.admin_rejeitador == f"dispute:{self.dispute_id}"

    def test_direct_decision_blocked_while_voting(self):
        with pytest.raises(ConflictError):
            self.loans.approve_loan(self.loan.id, "admin")
        with pytest.raises(ConflictError):
            self.loans.reject_loan(self.loan.id, "admin", "No funds")

    def test_expired_dispute_leaves_loan_pending(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        self.clock.advance(days=8)

        dispute = self.disputes.get_dispute(self.dispute_id)
        assert dispute.status == DisputeStatus.EXPIRED
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.PENDENTE
        with pytest.raises(ConflictError):
            self.disputes.vote(self.dispute_id, "u3", True)

        approved = self.loans.approve_loan(self.loan.id, "admin")
        assert approved.status == LoanStatus.APROVADO
        assert approved.admin_aprovador == "admin"

    def _fail_next_resolution(self, monkeypatch):
        settle = self.disputes._resolve
        failures = []

        def flaky(dispute_id, eligible):
            if not failures:
                failures.append(dispute_id)
                raise ServiceError("Record store timed out")
            return settle(dispute_id, eligible)

        monkeypatch.setattr(self.disputes, "_resolve", flaky)

    def test_retried_vote_settles_quorum(self, monkeypatch):
        self.disputes.vote(self.dispute_id, "u2", True)
        self._fail_next_resolution(monkeypatch)
        with pytest.raises(ServiceError):
            self.disputes.vote(self.dispute_id, "u3", True)
        assert self.disputes.get_dispute(self.dispute_id).status == DisputeStatus.ACTIVE

        # The retry finds its vote already stored and settles the quorum.
        with pytest.raises(ConflictError):
            self.disputes.vote(self.dispute_id, "u3", True)

        dispute = self.disputes.get_dispute(self.dispute_id)
        assert dispute.status == DisputeStatus.APPROVED
        assert [v.user_id for v in dispute.votes] == ["u2", "u3"]
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.APROVADO
        assert self.dispatcher.types().count("loan.status_changed") == 1

    def test_expiry_counts_unsettled_votes(self, monkeypatch):
        self.disputes.vote(self.dispute_id, "u2", True)
        self._fail_next_resolution(monkeypatch)
        with pytest.raises(ServiceError):
            self.disputes.vote(self.dispute_id, "u3", True)

        self.clock.advance(days=8)
        dispute = self.disputes.get_dispute(self.dispute_id)
        assert dispute.status == DisputeStatus.APPROVED
        assert dispute.applied is True
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.APROVADO
        assert self.disputes.expire_overdue() == []

    def test_second_dispute_for_same_loan(self):
        with pytest.raises(ConflictError):
            self.disputes.create_dispute(
                self.caixinha.id, "u2", DisputeType.LOAN_APPROVAL,
                title="Approve loan again", description="Second vote on the same loan",
                proposed_changes={"loanId": self.loan.id},
            )

    def test_canceled_loan_records_application_error(self):
        self.loans.cancel_loan(self.loan.id, "u1", "No longer needed")
        self.disputes.vote(self.dispute_id, "u2", True)
        dispute = self.disputes.vote(self.dispute_id, "u3", True)
        assert dispute.status == DisputeStatus.APPROVED
        assert dispute.applied is False
        assert dispute.application_error.startswith("CONFLICT")
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.CANCELADO

    def test_tally(self):
        self.disputes.vote(self.dispute_id, "u2", True)
        tally = self.disputes.get_tally(self.dispute_id)
        assert (tally.eligible, tally.yes, tally.no, tally.undecided) == (4, 1, 0, 3)
        assert tally.to_dict()["approvalRatio"] == "0.25"


class TestVoting(DisputeTestBase):
    def test_outsider_cannot_vote(self):
        dispute = self._member_removal()
        with pytest.raises(ForbiddenError):
            self.disputes.vote(dispute.id, "stranger", True)

    def test_pending_member_cannot_vote(self):
        self.services.caixinhas.add_member(self.caixinha.id, "newcomer", invited_by="admin")
        dispute = self._member_removal()
        assert "newcomer" not in self.disputes.eligible_voters(self.caixinha.id)
        with pytest.raises(ForbiddenError):
            self.disputes.vote(dispute.id, "newcomer", True)

    def test_vote_input_checks(self):
        dispute = self._member_removal()
        with pytest.raises(ValidationError):
            self.disputes.vote(dispute.id, "u1", "yes")
        with pytest.raises(ValidationError):
            self.disputes.vote(dispute.id, "u1", True, comment="x" * 256)
        with pytest.raises(NotFoundError):
            self.disputes.vote("ghost", "u1", True)

    def test_cast_vote_survives_voter_removal(self):
        dispute = self._member_removal(target="u3")
        self.disputes.vote(dispute.id, "u2", True)
        self.services.user_roles.revoke_caixinha_roles("u2", self.caixinha.id)

        kept = self.disputes.get_dispute(dispute.id)
        assert kept.has_voted("u2")
        tally = self.disputes.get_tally(dispute.id)
        assert (tally.eligible, tally.yes) == (3, 1)


class TestDisputeLifecycle(DisputeTestBase):
    def test_member_removal_outcome(self):
        dispute = self._member_removal(target="u3")
        self.disputes.vote(dispute.id, "admin", True)
        resolved = self.disputes.vote(dispute.id, "u1", True)
        assert resolved.status == DisputeStatus.APPROVED
        assert resolved.applied is True
        assert "u3" not in self.services.caixinhas.list_members(self.caixinha.id)

    def test_member_removal_needs_manage_members(self):
        with pytest.raises(ForbiddenError):
            self._member_removal(target="u3", creator="u1")

    def test_admin_cannot_be_removed(self):
        with pytest.raises(ValidationError):
            self._member_removal(target="admin")

    def test_rule_change_outcome(self):
        dispute = self.disputes.create_rule_change_dispute(self.caixinha.id, "u1", {"taxaJuros": "0.02"})
        assert dispute.proposed_changes == {"taxaJuros": {"from": "0", "to": "0.02"}}
        self.disputes.vote(dispute.id, "u1", True)
        self.disputes.vote(dispute.id, "u2", True)
        assert self.services.caixinhas.get_rules(self.caixinha.id).taxa_juros == Decimal("0.02")

    def test_rule_change_must_change_something(self):
        with pytest.raises(ValidationError):
            self.disputes.create_rule_change_dispute(self.caixinha.id, "u1", {"quorumThreshold": "0.5"})
        with pytest.raises(ValidationError):
            self.disputes.create_rule_change_dispute(self.caixinha.id, "u1", {"colour": "blue"})

    def test_invalid_rule_value_rejected_at_creation(self):
        with pytest.raises(ValidationError):
            self.disputes.create_rule_change_dispute(self.caixinha.id, "u1", {"quorumThreshold": "2"})

    def test_creation_input_checks(self):
        with pytest.raises(ValidationError):
            self.disputes.create_dispute(self.caixinha.id, "u1", "COUP", "Take over", "Take over the caixinha")
        with pytest.raises(ValidationError):
            self.disputes.create_dispute(
                self.caixinha.id, "admin", DisputeType.MEMBER_REMOVAL, "Hi", "Too short a title",
                proposed_changes={"userId": "u3"},
            )
        with pytest.raises(ValidationError):
            self.disputes.create_dispute(
                self.caixinha.id, "admin", DisputeType.MEMBER_REMOVAL,
                "Remove member", "Deadline in the past",
                proposed_changes={"userId": "u3"},
                expires_at=self.clock.now - timedelta(minutes=1),
            )
        with pytest.raises(NotFoundError):
            self.disputes.create_dispute(
                "nowhere", "admin", DisputeType.MEMBER_REMOVAL, "Remove member", "Unknown caixinha",
                proposed_changes={"userId": "u3"},
            )

    def test_cancel_by_creator(self):
        dispute = self._member_removal()
        with pytest.raises(ForbiddenError):
            self.disputes.cancel_dispute(dispute.id, "u1", "Not mine to cancel")
        with pytest.raises(ValidationError):
            self.disputes.cancel_dispute(dispute.id, "admin", "")

        canceled = self.disputes.cancel_dispute(dispute.id, "admin", "Member came back")
        assert canceled.status == DisputeStatus.CANCELED
        assert canceled.canceled_by == "admin"
        with pytest.raises(ConflictError):
            self.disputes.cancel_dispute(dispute.id, "admin", "Again")
        with pytest.raises(ConflictError):
            self.disputes.vote(dispute.id, "u1", True)

    def test_expire_overdue(self):
        first = self._member_removal(target="u3")
        second = self._member_removal(target="u2")
        self.clock.advance(days=7)
        expired = self.disputes.expire_overdue()
        assert {d.id for d in expired} == {first.id, second.id}
        assert self.disputes.expire_overdue() == []
        assert self.dispatcher.types().count("dispute.resolved") == 2

    def test_list_filters(self):
        first = self._member_removal(target="u3")
        self.clock.advance(minutes=1)
        second = self._member_removal(target="u2")
        self.disputes.cancel_dispute(first.id, "admin", "Withdrawn")

        assert [d.id for d in self.disputes.list_disputes(self.caixinha.id)] == [second.id, first.id]
        assert [d.id for d in self.disputes.list_disputes(self.caixinha.id, "active")] == [second.id]
        assert [d.id for d in self.disputes.list_disputes(self.caixinha.id, "resolved")] == [first.id]
        with pytest.raises(ValidationError):
            self.disputes.list_disputes(self.caixinha.id, "sideways")


class TestDisputeRequirement:
    def setup_method(self):
        self.services, _ = make_services()
        self.disputes = self.services.disputes

    def test_admin_alone(self):
        make_caixinha(self.services)
        requirement = self.disputes.check_dispute_requirement("cx1", "LOAN_APPROVAL", "admin")
        assert requirement.to_dict() == {"requiresDispute": False, "reason": "ADMIN_ONLY_MEMBER"}

    def test_admin_control(self):
        make_caixinha(self.services, members=["u1"], rules={"governanceType": "ADMIN_CONTROL"})
        assert self.disputes.check_dispute_requirement("cx1", "RULE_CHANGE", "admin").reason == "ADMIN_CONTROL"
        member = self.disputes.check_dispute_requirement("cx1", "RULE_CHANGE", "u1")
        assert member.requires_dispute is True
        assert member.reason == "DEFAULT_POLICY"

    def test_initial_config(self):
        make_caixinha(self.services, members=["u1"])
        assert self.disputes.check_dispute_requirement("cx1", "INITIAL_CONFIG", "admin").reason == "INITIAL_CONFIG"
        assert self.disputes.check_dispute_requirement("cx1", "RULE_CHANGE", "admin").requires_dispute is True

    def test_unknown_action(self):
        make_caixinha(self.services)
        with pytest.raises(ValidationError):
            self.disputes.check_dispute_requirement("cx1", "DISSOLVE", "admin")


class TestQuorumTally:
    def test_no_eligible_voters_never_resolves(self):
        tally = QuorumTally(eligible=0, yes=0, no=0, undecided=0, threshold=Decimal("0.5"))
        assert tally.outcome() is None
        assert tally.approval_ratio == 0

    def test_threshold_is_inclusive(self):
        assert QuorumTally(eligible=4, yes=2, no=0, undecided=2, threshold=Decimal("0.5")).outcome() \
            == DisputeStatus.APPROVED
        assert QuorumTally(eligible=4, yes=1, no=2, undecided=1, threshold=Decimal("0.51")).outcome() \
            == DisputeStatus.REJECTED
        assert QuorumTally(eligible=4, yes=1, no=1, undecided=2, threshold=Decimal("0.51")).outcome() is None
