"""
Loan Engine — member loans from request to settlement.

Lifecycle:

    pendente ──► aprovado ──► parcial ──► quitado
        │            │  └──────────────────►┘
        │            └──► cancelado (no payments yet)
        ├──► rejeitado
        └──► cancelado

``quitado``, ``rejeitado`` and ``cancelado`` are final. Every transition is
checked against VALID_LOAN_TRANSITIONS and written through the shared
OptimisticWriter, so approval, rejection and payment allocation are each a
single conditional write on the loan's revision.

Approval takes one of two paths:
- directly, by a holder of ``caixinha:manage_loans`` whose role has passed
  bank validation
- through a LOAN_APPROVAL dispute; the engine registers its handlers with
  the DisputeEngine, and the approver of record is ``dispute:<id>``

Payments settle whole installments, oldest first. The installments marked
paid always add up to ``valor_pago``, which never exceeds the total due.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable

from caixinha_governance.domain.schema import (
    CENT,
    VALID_LOAN_TRANSITIONS,
    Collections,
    ContextType,
    Dispute,
    DisputeStatus,
    DisputeType,
    GovernedAction,
    Installment,
    Loan,
    LoanPayment,
    LoanStatus,
    PaymentMethod,
    add_months,
    build,
    ensure_transition,
    to_money,
    utcnow,
)
from caixinha_governance.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from caixinha_governance.governance.caixinhas import CaixinhaDirectory
from caixinha_governance.governance.disputes import DisputeEngine, DisputeHandlers
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)

REQUEST_PERMISSION = "loan:request"
APPROVAL_PERMISSION = "caixinha:manage_loans"
DISPUTE_PERMISSION = "dispute:create"

MAX_INSTALLMENTS = 60


def dispute_approver(dispute_id: str) -> str:
    return f"dispute:{dispute_id}"


def parse_money(value: Any, field_name: str) -> Decimal:
    """
    Read a positive amount with at most two decimal places.

    Raises:
        ValidationError: If the value is not a number, not positive, or
            has sub-cent precision.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero", field=field_name)
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field_name} must have at most two decimal places", field=field_name)
    return amount.quantize(CENT)


def parse_rate(value: Any) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("taxaJuros must be a number", field="taxaJuros")
    if not rate.is_finite() or not 0 <= rate <= 1:
        raise ValidationError("taxaJuros must be between 0 and 1", field="taxaJuros")
    return rate


def build_installments(valor: Decimal, taxa_juros: Decimal, count: int, start: date) -> list[Installment]:
    """
    Split the total due into ``count`` monthly installments.

    Every installment gets the same cent amount except the last, which
    absorbs the rounding remainder, so the amounts add up to exactly
    ``valor × (1 + taxa_juros)`` rounded to cents. The first one is due a
    month after ``start``.

    Raises:
        ValidationError: If the total is too small to give every installment at least one cent.
    """
    total = to_money(valor * (1 + taxa_juros))
    if total < CENT * count:
        raise ValidationError(
            f"A total of {total} cannot be split into {count} installments",
            total=str(total),
            parcelas_count=count,
        )
    base = (total / count).quantize(CENT, rounding=ROUND_DOWN)
    amounts = [base] * (count - 1) + [total - base * (count - 1)]
    return [
        Installment(number=n, due_date=add_months(start, n), amount=amount)
        for n, amount in enumerate(amounts, start=1)
    ]


class LoanEngine:
    """
    Loan requests, approvals, payments and cancellations.

    Usage:
        loans = LoanEngine(store, resolver, caixinhas, disputes)
        loan = loans.request_loan(caixinha_id, "u2", Decimal("1200"), 12, "Reforma da casa")
        loans.approve_loan(loan.id, approver_id="u1")
        loans.make_payment(loan.id, Decimal("100"), "pix")
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: Any,
        caixinhas: CaixinhaDirectory,
        disputes: DisputeEngine | None = None,
        writer: OptimisticWriter | None = None,
        notifier: Any = None,
        max_installments: int = MAX_INSTALLMENTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.caixinhas = caixinhas
        self.disputes = disputes
        self.writer = writer or OptimisticWriter(store)
        self.notifier = notifier
        self.max_installments = min(max_installments, MAX_INSTALLMENTS)
        self.clock = clock

        if disputes is not None:
            disputes.register_handlers(
                DisputeType.LOAN_APPROVAL,
                DisputeHandlers(
                    validate=self._validate_loan_dispute,
                    on_created=self._link_dispute,
                    on_approved=self.approve_from_dispute,
                    on_rejected=self.reject_from_dispute,
                ),
            )

    # ── Request ────────────────────────────────────────────────

    def request_loan(
        self,
        caixinha_id: str,
        user_id: str,
        valor: Decimal | int | str,
        parcelas_count: int,
        motivo: str,
        taxa_juros: Decimal | int | str | None = None,
    ) -> Loan:
        """
        Request a loan from a caixinha.

        Args:
            caixinha_id: The lending caixinha.
            user_id: The borrower; must hold ``loan:request`` there.
            valor: Principal, greater than zero.
            parcelas_count: Number of monthly installments, 1 to 60.
            motivo: Purpose of the loan, 3–500 characters.
            taxa_juros: Flat rate on the principal (0–1); defaults to the
                caixinha's rule.

        Returns:
            The pending loan. When the caixinha decides loans collectively,
            ``dispute_id`` names the LOAN_APPROVAL dispute opened for it.

        Raises:
            ValidationError: On invalid input or when the caixinha's loan
                rules are not met. Nothing is written.
            NotFoundError: If the caixinha does not exist.
            ForbiddenError: If the borrower may not request loans there.
        """
        amount = parse_money(valor, "valor")
        if isinstance(parcelas_count, bool) or not isinstance(parcelas_count, int):
            raise ValidationError("parcelasCount must be an integer", field="parcelasCount")
        if not 1 <= parcelas_count <= self.max_installments:
            raise ValidationError(
                f"parcelasCount must be between 1 and {self.max_installments}",
                field="parcelasCount",
                value=parcelas_count,
            )

        caixinha = self.caixinhas.get_caixinha(caixinha_id)
        rules = caixinha.rules
        if not rules.permite_emprestimos:
            raise ValidationError(f"Caixinha {caixinha_id} does not allow loans", caixinha_id=caixinha_id)
        if rules.limite_emprestimo > 0 and amount > rules.limite_emprestimo:
            raise ValidationError(
                f"valor exceeds the caixinha loan limit of {rules.limite_emprestimo}",
                field="valor",
                limit=str(rules.limite_emprestimo),
            )
        if parcelas_count > rules.prazo_maximo_emprestimo:
            raise ValidationError(
                f"parcelasCount exceeds the caixinha maximum of {rules.prazo_maximo_emprestimo}",
                field="parcelasCount",
                limit=rules.prazo_maximo_emprestimo,
            )

        rate = rules.taxa_juros if taxa_juros is None else parse_rate(taxa_juros)
        now = self.clock()
        loan = build(
            Loan,
            caixinha_id=caixinha_id,
            user_id=user_id,
            valor=amount,
            parcelas_count=parcelas_count,
            taxa_juros=rate,
            motivo=motivo,
            installments=build_installments(amount, rate, parcelas_count, now.date()),
            data_solicitacao=now,
        )

        self.resolver.require_permission(user_id, REQUEST_PERMISSION, ContextType.CAIXINHA, caixinha_id)
        needs_dispute = (
            self.disputes is not None
            and self.disputes.check_dispute_requirement(
                caixinha_id, GovernedAction.LOAN_APPROVAL, caixinha.admin_id
            ).requires_dispute
        )
        if needs_dispute:
            self.resolver.require_permission(user_id, DISPUTE_PERMISSION, ContextType.CAIXINHA, caixinha_id)

        self.store.put(Collections.LOANS, loan.id, loan.to_record(), expected_revision=0)
        logger.info(
            "Loan requested: %s caixinha=%s user=%s valor=%s parcelas=%d",
            loan.id, caixinha_id, user_id, amount, parcelas_count,
        )

        if needs_dispute:
            try:
                dispute = self.disputes.create_dispute(
                    caixinha_id,
                    user_id,
                    DisputeType.LOAN_APPROVAL,
                    title=f"Loan request of {amount}",
                    description=f"Approve a loan of {amount} in {parcelas_count} installments: {motivo}"[:500],
                    proposed_changes={"loanId": loan.id},
                )
            except Exception:
                self.store.delete(Collections.LOANS, loan.id)
                raise
            loan = self.get_loan(loan.id)
            logger.info("Loan %s put to vote in dispute %s", loan.id, dispute.id)

        self._publish("loan.requested", loan)
        return loan

    # ── Reads ──────────────────────────────────────────────────

    def get_loan(self, loan_id: str) -> Loan:
        record = self.store.get(Collections.LOANS, loan_id)
        if record is None:
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
        return Loan.from_record(record.data)

    def list_loans(
        self,
        caixinha_id: str,
        status: LoanStatus | str | None = None,
        user_id: str | None = None,
    ) -> list[Loan]:
        if status is not None:
            try:
                status = LoanStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown loan status filter: {status}")

        def matches(data: dict[str, Any]) -> bool:
            return (
                data.get("caixinhaId") == caixinha_id
                and (status is None or data.get("status") == status.value)
                and (user_id is None or data.get("userId") == user_id)
            )

        loans = [Loan.from_record(r.data) for r in self.store.query(Collections.LOANS, matches)]
        return sorted(loans, key=lambda loan: loan.data_solicitacao, reverse=True)

    def get_loan_stats(self, caixinha_id: str) -> dict[str, Any]:
        """Counts and amounts per status, plus portfolio totals."""
        loans = self.list_loans(caixinha_id)
        by_status: dict[str, dict[str, Any]] = defaultdict(lambda: {"count": 0, "valor": Decimal("0.00")})
        for loan in loans:
            bucket = by_status[loan.status.value]
            bucket["count"] += 1
            bucket["valor"] += loan.valor

        active = [loan for loan in loans if loan.status in (LoanStatus.APROVADO, LoanStatus.PARCIAL)]
        lent = [loan for loan in loans if loan.data_aprovacao is not None and loan.status != LoanStatus.CANCELADO]
        return {
            "caixinhaId": caixinha_id,
            "total": len(loans),
            "byStatus": {
                status.value: {
                    "count": by_status[status.value]["count"],
                    "valor": str(by_status[status.value]["valor"]),
                }
                for status in LoanStatus
            },
            "totalLent": str(sum((loan.valor for loan in lent), Decimal("0.00"))),
            "totalRepaid": str(sum((loan.valor_pago for loan in loans), Decimal("0.00"))),
            "outstanding": str(sum((loan.outstanding for loan in active), Decimal("0.00"))),
        }

    # ── Approval & rejection ───────────────────────────────────

    def approve_loan(self, loan_id: str, approver_id: str) -> Loan:
        """
        Approve a pending loan directly.

        Raises:
            NotFoundError: If the loan does not exist.
            ForbiddenError: If the approver lacks a validated ``caixinha:manage_loans``.
            ConflictError: If the loan is not pending or is being decided by an active dispute.
        """
        loan = self.get_loan(loan_id)
        self.resolver.require_permission(approver_id, APPROVAL_PERMISSION, ContextType.CAIXINHA, loan.caixinha_id)
        self._ensure_not_under_vote(loan)
        return self._decide(loan_id, LoanStatus.APROVADO, approver_id)

    def approve_from_dispute(self, dispute: Dispute) -> Loan:
        """Approve the loan named by an approved LOAN_APPROVAL dispute. Idempotent."""
        return self._decide(
            self._loan_id_of(dispute), LoanStatus.APROVADO, dispute_approver(dispute.id), dispute_id=dispute.id
        )

    def reject_loan(self, loan_id: str, rejecter_id: str, reason: str | None = None) -> Loan:
        """
        Reject a pending loan directly.

        Raises:
            ValidationError: If the reason exceeds 500 characters.
            NotFoundError: If the loan does not exist.
            ForbiddenError: If the rejecter lacks a validated ``caixinha:manage_loans``.
            ConflictError: If the loan is not pending or is being decided by an active dispute.
        """
        self._check_reason(reason)
        loan = self.get_loan(loan_id)
        self.resolver.require_permission(rejecter_id, APPROVAL_PERMISSION, ContextType.CAIXINHA, loan.caixinha_id)
        self._ensure_not_under_vote(loan)
        return self._decide(loan_id, LoanStatus.REJEITADO, rejecter_id, reason=reason)

    def reject_from_dispute(self, dispute: Dispute) -> Loan:
        """Reject the loan named by a rejected LOAN_APPROVAL dispute. Idempotent."""
        return self._decide(
            self._loan_id_of(dispute),
            LoanStatus.REJEITADO,
            dispute_approver(dispute.id),
            reason=f"Rejected by vote in dispute {dispute.id}",
            dispute_id=dispute.id,
        )

    def _decide(
        self,
        loan_id: str,
        target: LoanStatus,
        actor: str,
        reason: str | None = None,
        dispute_id: str | None = None,
    ) -> Loan:
        def transition(data: dict[str, Any]) -> LoanStatus:
            loan = Loan.from_record(data)
            previous = loan.status
            if dispute_id is not None:
                if loan.dispute_id not in (None, dispute_id):
                    raise ConflictError(
                        f"Loan {loan_id} is governed by dispute {loan.dispute_id}, not {dispute_id}",
                        loan_id=loan_id,
                    )
                decided_by = loan.admin_aprovador if target == LoanStatus.APROVADO else loan.admin_rejeitador
                if loan.status == target and decided_by == actor:
                    return previous

            ensure_transition(VALID_LOAN_TRANSITIONS, loan.status, target, f"Loan {loan_id}")
            now = self.clock()
            loan.status = target
            if target == LoanStatus.APROVADO:
                loan.data_aprovacao = now
                loan.admin_aprovador = actor
            else:
                loan.data_rejeitacao = now
                loan.admin_rejeitador = actor
                loan.motivo_rejeitacao = reason
            if dispute_id is not None:
                loan.dispute_id = dispute_id
            self._replace(data, loan)
            return previous

        result = self.writer.apply(Collections.LOANS, loan_id, transition)
        loan = Loan.from_record(result.record.data)
        if result.written:
            logger.info("Loan %s %s by %s", loan_id, target.value, actor)
            self._publish("loan.status_changed", loan, previousStatus=result.outcome.value, actor=actor)
        return loan

    def _ensure_not_under_vote(self, loan: Loan) -> None:
        if loan.dispute_id is None or self.disputes is None:
            return
        dispute = self.disputes.get_dispute(loan.dispute_id)
        if dispute.status == DisputeStatus.ACTIVE:
            raise ConflictError(
                f"Loan {loan.id} is being decided by dispute {dispute.id}",
                loan_id=loan.id,
                dispute_id=dispute.id,
            )

    # ── Payments ───────────────────────────────────────────────

    def make_payment(
        self,
        loan_id: str,
        valor: Decimal | int | str,
        metodo: PaymentMethod | str,
        observacao: str | None = None,
    ) -> Loan:
        """
        Record a repayment.

        The amount must settle one or more whole installments, taken
        oldest first. Reaching the total due settles the loan.

        Args:
            loan_id: The loan being repaid.
            valor: Amount paid, greater than zero.
            metodo: pix, transferencia, deposito or dinheiro.
            observacao: Optional note, up to 255 characters.

        Returns:
            The loan after the payment.

        Raises:
            ValidationError: On invalid input, on an amount above the
                outstanding balance, or on an amount that does not match
                whole installments.
            NotFoundError: If the loan does not exist.
            ConflictError: If the loan is not approved or partially paid.
            ConcurrencyConflictError: If the write kept losing races.
        """
        amount = parse_money(valor, "valor")
        try:
            method = PaymentMethod(metodo)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {metodo}", field="metodo")
        if observacao is not None and len(observacao) > 255:
            raise ValidationError("observacao must be at most 255 characters", field="observacao")

        def allocate(data: dict[str, Any]) -> LoanStatus:
            loan = Loan.from_record(data)
            previous = loan.status
            if loan.status not in (LoanStatus.APROVADO, LoanStatus.PARCIAL):
                raise ConflictError(
                    f"Loan {loan_id} is {loan.status.value}; payments need an approved loan",
                    loan_id=loan_id,
                    status=loan.status.value,
                )
            if amount > loan.outstanding:
                raise ValidationError(
                    f"Payment of {amount} exceeds the outstanding balance of {loan.outstanding}",
                    outstanding=str(loan.outstanding),
                )

            settled = self._settle_installments(loan, amount)
            now = self.clock()
            for installment in settled:
                installment.paid = True
                installment.paid_at = now
            loan.valor_pago += amount
            loan.payments.append(
                LoanPayment(
                    valor=amount,
                    metodo=method,
                    observacao=observacao,
                    paid_at=now,
                    installments=[i.number for i in settled],
                )
            )

            target = LoanStatus.QUITADO if loan.outstanding == 0 else LoanStatus.PARCIAL
            if target != loan.status:
                ensure_transition(VALID_LOAN_TRANSITIONS, loan.status, target, f"Loan {loan_id}")
                loan.status = target
            if target == LoanStatus.QUITADO:
                loan.data_quitacao = now
            self._replace(data, loan)
            return previous

        result = self.writer.apply(Collections.LOANS, loan_id, allocate)
        loan = Loan.from_record(result.record.data)
        logger.info(
            "Payment recorded: loan=%s valor=%s metodo=%s valorPago=%s status=%s",
            loan_id, amount, method.value, loan.valor_pago, loan.status.value,
        )
        if loan.status != result.outcome:
            self._publish("loan.status_changed", loan, previousStatus=result.outcome.value)
        return loan

    @staticmethod
    def _settle_installments(loan: Loan, amount: Decimal) -> list[Installment]:
        unpaid = sorted((i for i in loan.installments if not i.paid), key=lambda i: (i.due_date, i.number))
        running = Decimal("0.00")
        for index, installment in enumerate(unpaid):
            running += installment.amount
            if running == amount:
                return unpaid[: index + 1]
            if running > amount:
                break
        next_amount = unpaid[0].amount if unpaid else Decimal("0.00")
        raise ValidationError(
            f"Payment of {amount} does not settle whole installments; the next installment is {next_amount}. "
            "valorPago must equal the sum of the paid installments, so only whole installments can be paid",
            next_installment=str(next_amount),
            rule="valorPago == sum(paid installment amounts)",
        )

    # ── Cancellation ───────────────────────────────────────────

    def cancel_loan(self, loan_id: str, user_id: str, reason: str | None = None) -> Loan:
        """
        Cancel a loan that has not started being repaid.

        Raises:
            NotFoundError: If the loan does not exist.
            ForbiddenError: If the user is neither the borrower nor a loan manager.
            ConflictError: Unless the loan is pending, or approved with no payments.
        """
        self._check_reason(reason)
        loan = self.get_loan(loan_id)
        if user_id != loan.user_id and not self.resolver.has_permission(
            user_id, APPROVAL_PERMISSION, ContextType.CAIXINHA, loan.caixinha_id
        ):
            raise ForbiddenError(
                f"Only the borrower or a loan manager may cancel loan {loan_id}",
                loan_id=loan_id,
            )

        def cancel(data: dict[str, Any]) -> LoanStatus:
            current = Loan.from_record(data)
            previous = current.status
            if current.payments:
                raise ConflictError(f"Loan {loan_id} already has payments recorded", loan_id=loan_id)
            ensure_transition(VALID_LOAN_TRANSITIONS, current.status, LoanStatus.CANCELADO, f"Loan {loan_id}")
            current.status = LoanStatus.CANCELADO
            current.data_cancelamento = self.clock()
            if reason:
                current.motivo_rejeitacao = reason
            self._replace(data, current)
            return previous

        result = self.writer.apply(Collections.LOANS, loan_id, cancel)
        canceled = Loan.from_record(result.record.data)
        logger.info("Loan %s canceled by %s", loan_id, user_id)
        self._publish("loan.status_changed", canceled, previousStatus=result.outcome.value, actor=user_id)
        return canceled

    # ── Dispute handlers ───────────────────────────────────────

    def _validate_loan_dispute(self, caixinha_id: str, proposed: dict[str, Any]) -> dict[str, Any]:
        loan_id = proposed.get("loanId")
        if not isinstance(loan_id, str) or not loan_id:
            raise ValidationError("LOAN_APPROVAL disputes require proposedChanges.loanId")
        loan = self.get_loan(loan_id)
        if loan.caixinha_id != caixinha_id:
            raise ValidationError(f"Loan {loan_id} does not belong to caixinha {caixinha_id}")
        if loan.status != LoanStatus.PENDENTE:
            raise ConflictError(f"Loan {loan_id} is {loan.status.value}, not pendente", loan_id=loan_id)
        self._ensure_not_under_vote(loan)
        return {"loanId": loan_id}

    def _link_dispute(self, dispute: Dispute) -> None:
        def link(data: dict[str, Any]) -> None:
            data["disputeId"] = dispute.id

        self.writer.apply(Collections.LOANS, self._loan_id_of(dispute), link)

    @staticmethod
    def _loan_id_of(dispute: Dispute) -> str:
        loan_id = dispute.proposed_changes.get("loanId")
        if not loan_id:
            raise ValidationError(f"Dispute {dispute.id} does not reference a loan")
        return loan_id

    # ── Helpers ────────────────────────────────────────────────

    @staticmethod
    def _check_reason(reason: str | None) -> None:
        if reason is not None and len(reason) > 500:
            raise ValidationError("Reason must be at most 500 characters", field="motivoRejeitacao")

    @staticmethod
    def _replace(data: dict[str, Any], loan: Loan) -> None:
        record = build(Loan, **loan.model_dump()).to_record()
        data.clear()
        data.update(record)

    def _publish(self, event_type: str, loan: Loan, **extra: Any) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            event_type,
            subject_id=loan.id,
            caixinha_id=loan.caixinha_id,
            payload={"status": loan.status.value, "userId": loan.user_id, "valor": str(loan.valor), **extra},
        )
