"""
Dispute Engine — collective decisions by quorum vote.

A dispute is a proposal put to a caixinha's eligible voters: change a rule,
approve a loan, or remove a member. Its lifecycle is

    active → approved | rejected | canceled | expired

and every terminal state is final.

Voting rules:
- eligible voters are the caixinha's current members who hold
  ``dispute:vote`` there; eligibility is evaluated at voting time, and a
  vote already cast is never invalidated by later membership changes
- each user votes at most once; the append is a conditional write, so two
  concurrent votes by the same user cannot both land
- after each vote the tally is recomputed against the current eligible
  set: ``yes / eligible ≥ threshold`` approves, and the dispute is rejected
  as soon as the yes votes plus the undecided voters can no longer reach
  the threshold
- the resolution is its own conditional write guarded by ``status ==
  active``; only the caller whose write performs the transition runs the
  outcome handler (loan approval, rule change, member removal), so the side
  effect happens exactly once however many votes race past the threshold
- an active dispute past ``expires_at`` is moved to ``expired`` on the next
  read

Outcome handlers are registered per DisputeType, which keeps this module
independent of the loan engine that registers the LOAN_APPROVAL handler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from caixinha_governance.domain.schema import (
    VALID_DISPUTE_TRANSITIONS,
    Collections,
    ContextType,
    Dispute,
    DisputeStatus,
    DisputeType,
    GovernanceType,
    GovernedAction,
    Vote,
    build,
    check_exhaustive,
    ensure_transition,
    utcnow,
)
from caixinha_governance.errors import (
    ConflictError,
    ForbiddenError,
    GovernanceError,
    NotFoundError,
    ValidationError,
)
from caixinha_governance.governance.caixinhas import CaixinhaDirectory, normalize_rule_changes
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)

VOTE_PERMISSION = "dispute:vote"

DISPUTE_CREATION_PERMISSIONS: dict[DisputeType, str] = {
    DisputeType.RULE_CHANGE: "dispute:create",
    DisputeType.LOAN_APPROVAL: "dispute:create",
    DisputeType.MEMBER_REMOVAL: "caixinha:manage_members",
}
check_exhaustive(DISPUTE_CREATION_PERMISSIONS, DisputeType)

MANAGER_ROLE_NAME = "CaixinhaManager"

RESOLVED_GROUP = "resolved"


# ════════════════════════════════════════════════════════════════
# Value Objects
# ════════════════════════════════════════════════════════════════


@dataclass
class DisputeRequirement:
    """Whether an action must go through a dispute, and why."""

    requires_dispute: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"requiresDispute": self.requires_dispute, "reason": self.reason}


@dataclass
class QuorumTally:
    """Vote count of a dispute against the current eligible voter set."""

    eligible: int
    yes: int
    no: int
    undecided: int
    threshold: Decimal

    @classmethod
    def of(cls, dispute: Dispute, eligible_voters: list[str], threshold: Decimal) -> QuorumTally:
        voted = {v.user_id for v in dispute.votes}
        return cls(
            eligible=len(eligible_voters),
            yes=dispute.count(True),
            no=dispute.count(False),
            undecided=sum(1 for user_id in eligible_voters if user_id not in voted),
            threshold=threshold,
        )

    @property
    def approval_ratio(self) -> Decimal:
        return Decimal(self.yes) / self.eligible if self.eligible else Decimal("0")

    @property
    def rejection_ratio(self) -> Decimal:
        return Decimal(self.no) / self.eligible if self.eligible else Decimal("0")

    def outcome(self) -> DisputeStatus | None:
        """APPROVED, REJECTED, or None while the vote is still open."""
        if self.eligible == 0:
            return None
        if Decimal(self.yes) >= self.threshold * self.eligible:
            return DisputeStatus.APPROVED
        if Decimal(self.yes + self.undecided) < self.threshold * self.eligible:
            return DisputeStatus.REJECTED
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligibleVoters": self.eligible,
            "yes": self.yes,
            "no": self.no,
            "undecided": self.undecided,
            "threshold": str(self.threshold),
            "approvalRatio": str(self.approval_ratio),
            "rejectionRatio": str(self.rejection_ratio),
        }


PayloadValidator = Callable[[str, dict[str, Any]], dict[str, Any]]
OutcomeHandler = Callable[[Dispute], Any]


@dataclass
class DisputeHandlers:
    """Type-specific behaviour plugged into the engine."""

    validate: PayloadValidator | None = None
    on_created: OutcomeHandler | None = None
    on_approved: OutcomeHandler | None = None
    on_rejected: OutcomeHandler | None = None


# ════════════════════════════════════════════════════════════════
# Engine
# ════════════════════════════════════════════════════════════════


class DisputeEngine:
    """
    Creates disputes, records votes, resolves quorum and applies outcomes.

    Usage:
        engine = DisputeEngine(store, resolver, caixinhas)
        dispute = engine.create_dispute(
            caixinha_id, creator_id, DisputeType.MEMBER_REMOVAL,
            title="Remove inactive member",
            description="Has not contributed for six months",
            proposed_changes={"userId": "u9"},
        )
        engine.vote(dispute.id, "u2", True)
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: Any,
        caixinhas: CaixinhaDirectory,
        writer: OptimisticWriter | None = None,
        notifier: Any = None,
        window: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.caixinhas = caixinhas
        self.writer = writer or OptimisticWriter(store)
        self.notifier = notifier
        self.window = window
        self.clock = clock
        self.handlers: dict[DisputeType, DisputeHandlers] = {
            DisputeType.RULE_CHANGE: DisputeHandlers(
                validate=self._validate_rule_change,
                on_approved=self._apply_rule_change,
            ),
            DisputeType.LOAN_APPROVAL: DisputeHandlers(validate=self._validate_loan_approval),
            DisputeType.MEMBER_REMOVAL: DisputeHandlers(
                validate=self._validate_member_removal,
                on_approved=self._apply_member_removal,
            ),
        }

    def register_handlers(self, dispute_type: DisputeType, handlers: DisputeHandlers) -> None:
        self.handlers[DisputeType(dispute_type)] = handlers
        logger.debug("Dispute handlers registered for %s", dispute_type)

    # ── Creation ───────────────────────────────────────────────

    def create_dispute(
        self,
        caixinha_id: str,
        creator_id: str,
        dispute_type: DisputeType | str,
        title: str,
        description: str,
        proposed_changes: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Dispute:
        """
        Open a dispute in a caixinha.

        Args:
            caixinha_id: The caixinha voting.
            creator_id: Member opening the dispute.
            dispute_type: RULE_CHANGE, LOAN_APPROVAL or MEMBER_REMOVAL.
            title: 5–100 characters.
            description: 10–500 characters.
            proposed_changes: Type-specific payload (``{rule: {from, to}}``,
                ``{"loanId": ...}`` or ``{"userId": ...}``).
            expires_at: Voting deadline; defaults to now + the configured window.

        Returns:
            The stored, active Dispute.

        Raises:
            ValidationError: On malformed input or payload.
            NotFoundError: If the caixinha (or referenced loan) does not exist.
            ForbiddenError: If the creator lacks the type's permission.
        """
        try:
            dispute_type = DisputeType(dispute_type)
        except ValueError:
            raise ValidationError(f"Unknown dispute type: {dispute_type}")

        now = self.clock()
        if expires_at is None:
            expires_at = now + self.window
        elif expires_at.tzinfo is None:
            raise ValidationError("expiresAt must carry a time zone")
        elif expires_at <= now:
            raise ValidationError("expiresAt must be in the future")

        dispute = build(
            Dispute,
            caixinha_id=caixinha_id,
            title=title,
            description=description,
            type=dispute_type,
            proposed_changes=proposed_changes or {},
            expires_at=expires_at,
            created_by=creator_id,
            created_at=now,
        )

        self.caixinhas.get_caixinha(caixinha_id)
        self.resolver.require_permission(
            creator_id, DISPUTE_CREATION_PERMISSIONS[dispute_type], ContextType.CAIXINHA, caixinha_id
        )

        handlers = self.handlers[dispute_type]
        if handlers.validate is not None:
            dispute.proposed_changes = handlers.validate(caixinha_id, dispute.proposed_changes)

        self.store.put(Collections.DISPUTES, dispute.id, dispute.to_record(), expected_revision=0)
        logger.info(
            "Dispute created: %s type=%s caixinha=%s by=%s expires=%s",
            dispute.id, dispute_type.value, caixinha_id, creator_id, expires_at.isoformat(),
        )

        if handlers.on_created is not None:
            try:
                handlers.on_created(dispute)
            except Exception:
                self.store.delete(Collections.DISPUTES, dispute.id)
                raise
        self._publish("dispute.created", dispute)
        return dispute

    def create_rule_change_dispute(
        self,
        caixinha_id: str,
        creator_id: str,
        proposed_rules: dict[str, Any],
        title: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> Dispute:
        """
        Open a RULE_CHANGE dispute from a desired rule set.

        Raises:
            ValidationError: If the proposal does not change anything.
        """
        rules = self.caixinhas.get_rules(caixinha_id)
        changes = normalize_rule_changes(rules, proposed_rules)
        if not changes:
            raise ValidationError("The proposal does not change any rule")
        return self.create_dispute(
            caixinha_id,
            creator_id,
            DisputeType.RULE_CHANGE,
            title=title or "Rule change proposal",
            description=description or f"Proposed rule changes: {', '.join(sorted(changes))}",
            proposed_changes=changes,
            expires_at=expires_at,
        )

    # ── Reads ──────────────────────────────────────────────────

    def get_dispute(self, dispute_id: str) -> Dispute:
        record = self.store.get(Collections.DISPUTES, dispute_id)
        if record is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return self._expire_if_due(Dispute.from_record(record.data))

    def list_disputes(self, caixinha_id: str, status: DisputeStatus | str | None = None) -> list[Dispute]:
        """
        List a caixinha's disputes, newest first.

        Args:
            caixinha_id: The caixinha.
            status: A DisputeStatus, or the groups "active" / "resolved".
        """
        records = self.store.query(Collections.DISPUTES, lambda d: d.get("caixinhaId") == caixinha_id)
        disputes = [self._expire_if_due(Dispute.from_record(r.data)) for r in records]

        if status == RESOLVED_GROUP:
            disputes = [d for d in disputes if d.is_terminal]
        elif status is not None:
            try:
                wanted = DisputeStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown dispute status filter: {status}")
            disputes = [d for d in disputes if d.status == wanted]
        return sorted(disputes, key=lambda d: d.created_at, reverse=True)

    def eligible_voters(self, caixinha_id: str) -> list[str]:
        members = self.caixinhas.list_members(caixinha_id)
        return [
            user_id for user_id in members
            if self.resolver.has_permission(user_id, VOTE_PERMISSION, ContextType.CAIXINHA, caixinha_id)
        ]

    def get_tally(self, dispute_id: str) -> QuorumTally:
        dispute = self.get_dispute(dispute_id)
        threshold = self.caixinhas.get_rules(dispute.caixinha_id).quorum_threshold
        return QuorumTally.of(dispute, self.eligible_voters(dispute.caixinha_id), threshold)

    # ── Voting ─────────────────────────────────────────────────

    def vote(self, dispute_id: str, user_id: str, vote: bool, comment: str | None = None) -> Dispute:
        """
        Cast a vote and resolve the dispute if quorum is decided.

        Args:
            dispute_id: The dispute.
            user_id: The voter.
            vote: True to approve, False to reject.
            comment: Optional, up to 255 characters.

        Returns:
            The dispute after the vote (and any resolution).

        Raises:
            ValidationError: If the comment is too long.
            NotFoundError: If the dispute does not exist.
            ForbiddenError: If the user is not an eligible voter.
            ConflictError: If the user already voted or the dispute is not active.
            ConcurrencyConflictError: If the write kept losing races.
        """
        if not isinstance(vote, bool):
            raise ValidationError("vote must be true or false")
        if comment is not None and len(comment) > 255:
            raise ValidationError("Vote comment must be at most 255 characters")

        dispute = self.get_dispute(dispute_id)
        if dispute.status != DisputeStatus.ACTIVE:
            raise ConflictError(
                f"Dispute {dispute_id} is {dispute.status.value}; voting is closed",
                dispute_id=dispute_id,
                status=dispute.status.value,
            )

        eligible = self.eligible_voters(dispute.caixinha_id)
        if user_id not in eligible:
            raise ForbiddenError(
                f"User {user_id} is not an eligible voter in caixinha {dispute.caixinha_id}",
                dispute_id=dispute_id,
            )

        def cast(data: dict[str, Any]) -> bool:
            current = Dispute.from_record(data)
            now = self.clock()
            if current.status != DisputeStatus.ACTIVE or now >= current.expires_at:
                raise ConflictError(f"Dispute {dispute_id} is no longer open for voting", dispute_id=dispute_id)
            if current.has_voted(user_id):
                return False
            current.votes.append(Vote(user_id=user_id, vote=vote, comment=comment, cast_at=now))
            data.clear()
            data.update(current.to_record())
            return True

        if not self.writer.apply(Collections.DISPUTES, dispute_id, cast).outcome:
            # The stored vote may come from an attempt whose resolution failed;
            # settle it before reporting the duplicate.
            self._resolve(dispute_id, eligible)
            raise ConflictError(f"User {user_id} has already voted on dispute {dispute_id}", dispute_id=dispute_id)

        logger.info("Vote cast: dispute=%s user=%s vote=%s", dispute_id, user_id, vote)

        return self._resolve(dispute_id, eligible)

    def _resolve(self, dispute_id: str, eligible: list[str]) -> Dispute:
        """Apply the quorum outcome, if any, with a write guarded by status == active."""
        record = self.store.get(Collections.DISPUTES, dispute_id, consistent=True)
        if record is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        caixinha_id = record.data["caixinhaId"]
        threshold = self.caixinhas.get_rules(caixinha_id).quorum_threshold

        def settle(data: dict[str, Any]) -> tuple[DisputeStatus | None, QuorumTally | None]:
            current = Dispute.from_record(data)
            if current.status != DisputeStatus.ACTIVE:
                return None, None
            tally = QuorumTally.of(current, eligible, threshold)
            outcome = tally.outcome()
            if outcome is None:
                return None, tally
            ensure_transition(VALID_DISPUTE_TRANSITIONS, current.status, outcome, f"Dispute {dispute_id}")
            current.status = outcome
            current.resolved_at = self.clock()
            data.clear()
            data.update(current.to_record())
            return outcome, tally

        result = self.writer.apply(Collections.DISPUTES, dispute_id, settle)
        outcome, tally = result.outcome
        dispute = Dispute.from_record(result.record.data)
        if outcome is None or not result.written:
            return dispute

        logger.info(
            "Dispute %s resolved: %s (yes=%d no=%d eligible=%d threshold=%s)",
            dispute_id, outcome.value, tally.yes, tally.no, tally.eligible, threshold,
        )
        dispute = self._run_outcome(dispute)
        self._publish("dispute.resolved", dispute, tally=tally.to_dict())
        return dispute

    def _run_outcome(self, dispute: Dispute) -> Dispute:
        handlers = self.handlers[dispute.type]
        handler = handlers.on_approved if dispute.status == DisputeStatus.APPROVED else handlers.on_rejected
        if handler is None:
            return dispute

        error: str | None = None
        try:
            handler(dispute)
        except GovernanceError as exc:
            error = f"{exc.code}: {exc.message}"
            logger.warning("Outcome of dispute %s could not be applied: %s", dispute.id, error)
        except Exception:
            error = "internal error applying the outcome"
            logger.exception("Outcome handler failed for dispute %s (%s)", dispute.id, dispute.type.value)

        def record_application(data: dict[str, Any]) -> None:
            data["applied"] = error is None
            data["applicationError"] = error

        result = self.writer.apply(Collections.DISPUTES, dispute.id, record_application)
        return Dispute.from_record(result.record.data)

    # ── Expiry & cancellation ──────────────────────────────────

    def _expire_if_due(self, dispute: Dispute) -> Dispute:
        now = self.clock()
        if dispute.status != DisputeStatus.ACTIVE or now < dispute.expires_at:
            return dispute

        # Votes already cast may have met quorum without being settled.
        settled = self._resolve(dispute.id, self.eligible_voters(dispute.caixinha_id))
        if settled.status != DisputeStatus.ACTIVE:
            return settled

        def expire(data: dict[str, Any]) -> bool:
            current = Dispute.from_record(data)
            if current.status != DisputeStatus.ACTIVE or now < current.expires_at:
                return False
            current.status = DisputeStatus.EXPIRED
            current.resolved_at = now
            data.clear()
            data.update(current.to_record())
            return True

        result = self.writer.apply(Collections.DISPUTES, dispute.id, expire)
        expired = Dispute.from_record(result.record.data)
        if result.written and result.outcome:
            logger.info("Dispute %s expired without quorum", dispute.id)
            self._publish("dispute.resolved", expired)
        return expired

    def expire_overdue(self) -> list[Dispute]:
        """Expire every active dispute past its deadline. Returns those expired."""
        now = self.clock()
        overdue = [
            Dispute.from_record(r.data)
            for r in self.store.query(
                Collections.DISPUTES, lambda d: d.get("status") == DisputeStatus.ACTIVE.value
            )
        ]
        expired = []
        for dispute in overdue:
            if now >= dispute.expires_at:
                result = self._expire_if_due(dispute)
                if result.status == DisputeStatus.EXPIRED:
                    expired.append(result)
        return expired

    def cancel_dispute(self, dispute_id: str, user_id: str, reason: str) -> Dispute:
        """
        Cancel an active dispute.

        Raises:
            ValidationError: If the reason is missing or longer than 255 characters.
            NotFoundError: If the dispute does not exist.
            ForbiddenError: If the user is neither the creator nor a caixinha administrator.
            ConflictError: If the dispute is no longer active.
        """
        if not (reason or "").strip():
            raise ValidationError("A cancellation reason is required")
        if len(reason) > 255:
            raise ValidationError("Cancellation reason must be at most 255 characters")

        dispute = self.get_dispute(dispute_id)
        if not self._may_cancel(dispute, user_id):
            raise ForbiddenError(
                f"Only the creator or a caixinha administrator may cancel dispute {dispute_id}",
                dispute_id=dispute_id,
            )

        def cancel(data: dict[str, Any]) -> None:
            current = Dispute.from_record(data)
            ensure_transition(VALID_DISPUTE_TRANSITIONS, current.status, DisputeStatus.CANCELED,
                              f"Dispute {dispute_id}")
            current.status = DisputeStatus.CANCELED
            current.canceled_by = user_id
            current.cancellation_reason = reason
            current.resolved_at = self.clock()
            data.clear()
            data.update(current.to_record())

        result = self.writer.apply(Collections.DISPUTES, dispute_id, cancel)
        canceled = Dispute.from_record(result.record.data)
        logger.info("Dispute %s canceled by %s: %s", dispute_id, user_id, reason)
        self._publish("dispute.canceled", canceled, reason=reason)
        return canceled

    def _may_cancel(self, dispute: Dispute, user_id: str) -> bool:
        if user_id == dispute.created_by:
            return True
        if self.caixinhas.is_admin(dispute.caixinha_id, user_id):
            return True
        return self.resolver.has_role(user_id, MANAGER_ROLE_NAME, ContextType.CAIXINHA, dispute.caixinha_id)

    # ── Governance policy ──────────────────────────────────────

    def check_dispute_requirement(
        self,
        caixinha_id: str,
        action: GovernedAction | str,
        user_id: str,
    ) -> DisputeRequirement:
        """
        Decide whether ``action`` by ``user_id`` must go through a dispute.

        Not required when the administrator is the only member, when the
        caixinha is administrator-controlled and the user is its
        administrator, or for the administrator's initial configuration.
        """
        try:
            action = GovernedAction(action)
        except ValueError:
            raise ValidationError(f"Unknown governed action: {action}")

        caixinha = self.caixinhas.get_caixinha(caixinha_id)
        is_admin = caixinha.admin_id == user_id
        if is_admin:
            members = self.caixinhas.list_members(caixinha_id)
            if set(members) <= {user_id}:
                return DisputeRequirement(False, "ADMIN_ONLY_MEMBER")
            if caixinha.rules.governance_type == GovernanceType.ADMIN_CONTROL:
                return DisputeRequirement(False, "ADMIN_CONTROL")
            if action == GovernedAction.INITIAL_CONFIG:
                return DisputeRequirement(False, "INITIAL_CONFIG")
        return DisputeRequirement(True, "DEFAULT_POLICY")

    # ── Built-in handlers ──────────────────────────────────────

    def _validate_rule_change(self, caixinha_id: str, proposed: dict[str, Any]) -> dict[str, Any]:
        changes = normalize_rule_changes(self.caixinhas.get_rules(caixinha_id), proposed)
        if not changes:
            raise ValidationError("RULE_CHANGE disputes must change at least one rule")
        return changes

    def _apply_rule_change(self, dispute: Dispute) -> None:
        self.caixinhas.apply_rule_changes(dispute.caixinha_id, dispute.proposed_changes)

    @staticmethod
    def _validate_loan_approval(caixinha_id: str, proposed: dict[str, Any]) -> dict[str, Any]:
        loan_id = proposed.get("loanId")
        if not isinstance(loan_id, str) or not loan_id:
            raise ValidationError("LOAN_APPROVAL disputes require proposedChanges.loanId")
        return {"loanId": loan_id}

    def _validate_member_removal(self, caixinha_id: str, proposed: dict[str, Any]) -> dict[str, Any]:
        target = proposed.get("userId")
        if not isinstance(target, str) or not target:
            raise ValidationError("MEMBER_REMOVAL disputes require proposedChanges.userId")
        if target not in self.caixinhas.list_members(caixinha_id):
            raise ValidationError(f"User {target} is not a member of caixinha {caixinha_id}")
        if self.caixinhas.is_admin(caixinha_id, target):
            raise ValidationError("The caixinha administrator cannot be removed by dispute")
        return {"userId": target}

    def _apply_member_removal(self, dispute: Dispute) -> None:
        self.caixinhas.user_roles.revoke_caixinha_roles(dispute.proposed_changes["userId"], dispute.caixinha_id)

    # ── Notifications ──────────────────────────────────────────

    def _publish(self, event_type: str, dispute: Dispute, **extra: Any) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            event_type,
            subject_id=dispute.id,
            caixinha_id=dispute.caixinha_id,
            payload={"type": dispute.type.value, "status": dispute.status.value, **extra},
        )
