"""
Bank Validation — proving control of a bank account before moving money.

The user declares an account; the platform issues a short code and a
symbolic PIX amount (R$ 0.01 to 0.05) to be transferred from that account
with the code in the description. Confirming the code moves the user's
pending UserRole to ``validated``, which is what unlocks monetarily
sensitive permissions.

Codes are six uppercase alphanumerics drawn with ``secrets``, compared in
constant time, single-use, and expire server-side. A failed confirmation
(unknown, consumed or expired code) raises InvalidCodeError and changes
nothing. A code consumed by a confirmation whose role could not be
validated goes back to pending.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from caixinha_governance.domain.schema import (
    VALIDATION_CODE_PATTERN,
    BankData,
    BankValidationRequest,
    BankValidationStatus,
    Collections,
    UserRole,
    ValidationStatus,
    build,
    to_money,
    utcnow,
)
from caixinha_governance.errors import ConflictError, ForbiddenError, GovernanceError, InvalidCodeError, NotFoundError
from caixinha_governance.rbac.user_roles import UserRoleService
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def generate_validation_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_validation_amount() -> Decimal:
    """Random symbolic amount between 0.01 and 0.05."""
    return to_money(Decimal(secrets.randbelow(5) + 1) / 100)


class BankValidationWorkflow:
    """
    Issues and confirms bank validation codes.

    Usage:
        workflow = BankValidationWorkflow(store, user_roles)
        request = workflow.init_bank_validation(user_id, bank_data, user_role_id)
        # ... user transfers request.amount with request.code ...
        validated_role = workflow.confirm_bank_validation(user_id, request.code)
    """

    def __init__(
        self,
        store: RecordStore,
        user_roles: UserRoleService,
        writer: OptimisticWriter | None = None,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_validation_code,
        amount_factory: Callable[[], Decimal] = generate_validation_amount,
    ) -> None:
        self.store = store
        self.user_roles = user_roles
        self.writer = writer or OptimisticWriter(store)
        self.ttl = ttl
        self.clock = clock
        self.code_factory = code_factory
        self.amount_factory = amount_factory

    def init_bank_validation(
        self,
        user_id: str,
        bank_data: BankData | dict[str, Any],
        user_role_id: str | None = None,
    ) -> BankValidationRequest:
        """
        Start a validation for a declared bank account.

        Args:
            user_id: The user validating.
            bank_data: Declared account (bank, branch, account, holder).
            user_role_id: The pending assignment this validation is for;
                when omitted, confirmation validates the user's first
                pending assignment.

        Returns:
            The stored request carrying the code, amount and expiry.

        Raises:
            ValidationError: If the bank data is incomplete.
            NotFoundError: If ``user_role_id`` does not exist.
            ForbiddenError: If it belongs to another user.
        """
        if isinstance(bank_data, dict):
            bank_data = build(BankData, **bank_data)

        if user_role_id is not None:
            assignment = self.user_roles.get_user_role(user_role_id)
            if assignment.user_id != user_id:
                raise ForbiddenError(
                    f"User role {user_role_id} does not belong to user {user_id}",
                    user_role_id=user_role_id,
                )

        now = self.clock()
        request = build(
            BankValidationRequest,
            user_id=user_id,
            user_role_id=user_role_id,
            code=self.code_factory(),
            amount=self.amount_factory(),
            bank_data=bank_data,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(Collections.BANK_VALIDATIONS, request.id, request.to_record(), expected_revision=0)
        logger.info(
            "Bank validation started: request=%s user=%s role=%s expires=%s",
            request.id, user_id, user_role_id, request.expires_at.isoformat(),
        )
        return request

    def get_request(self, request_id: str) -> BankValidationRequest:
        record = self.store.get(Collections.BANK_VALIDATIONS, request_id)
        if record is None:
            raise NotFoundError(f"Bank validation {request_id} not found", request_id=request_id)
        return BankValidationRequest.from_record(record.data)

    def confirm_bank_validation(
        self,
        user_id: str,
        validation_code: str,
        user_role_id: str | None = None,
    ) -> UserRole:
        """
        Confirm a code and validate the corresponding UserRole.

        Args:
            user_id: The user confirming.
            validation_code: Code received at init.
            user_role_id: Assignment to validate when the request did not name one.

        Returns:
            The validated UserRole.

        Raises:
            InvalidCodeError: If the code is unknown, consumed, expired, or
                was issued for a different assignment. Nothing is changed.
            NotFoundError: If there is no pending assignment to validate.
            ConflictError: If the target assignment is not pending.
        """
        code = (validation_code or "").strip().upper()
        if not re.match(VALIDATION_CODE_PATTERN, code):
            raise InvalidCodeError("Invalid validation code")

        request = self._find_pending_request(user_id, code)
        now = self.clock()
        if request.is_expired(now):
            logger.info("Expired bank validation code used: request=%s user=%s", request.id, user_id)
            raise InvalidCodeError("Validation code has expired", request_id=request.id)

        if request.user_role_id and user_role_id and request.user_role_id != user_role_id:
            raise InvalidCodeError("Validation code was issued for a different role", request_id=request.id)

        target = self._target_assignment(user_id, request.user_role_id or user_role_id)

        def consume(data: dict[str, Any]) -> None:
            current = BankValidationRequest.from_record(data)
            if current.status != BankValidationStatus.PENDING:
                raise InvalidCodeError("Invalid or already used validation code", request_id=request.id)
            current.status = BankValidationStatus.CONSUMED
            current.consumed_at = now
            data.clear()
            data.update(current.to_record())

        self.writer.apply(Collections.BANK_VALIDATIONS, request.id, consume)

        try:
            validated = self.user_roles.validate_user_role(
                target.id,
                {
                    "validatedBy": "system",
                    "validationMethod": "bank_transfer",
                    "validationRequestId": request.id,
                    "bankName": request.bank_data.bank_name,
                    "bankCode": request.bank_data.bank_code,
                },
            )
        except GovernanceError:
            self._release(request.id, now)
            raise

        logger.info("Bank validation confirmed: request=%s user_role=%s", request.id, validated.id)
        return validated

    def _release(self, request_id: str, consumed_at: datetime) -> None:
        """Return a code consumed by a confirmation that failed to validate its role."""

        def release(data: dict[str, Any]) -> None:
            current = BankValidationRequest.from_record(data)
            if current.status != BankValidationStatus.CONSUMED or current.consumed_at != consumed_at:
                return
            current.status = BankValidationStatus.PENDING
            current.consumed_at = None
            data.clear()
            data.update(current.to_record())

        self.writer.apply(Collections.BANK_VALIDATIONS, request_id, release)
        logger.warning("Bank validation %s released after the role could not be validated", request_id)

    def _find_pending_request(self, user_id: str, code: str) -> BankValidationRequest:
        candidates = [
            BankValidationRequest.from_record(r.data)
            for r in self.store.query(
                Collections.BANK_VALIDATIONS,
                lambda d: d.get("userId") == user_id and d.get("status") == BankValidationStatus.PENDING.value,
            )
        ]
        matches = [c for c in candidates if hmac.compare_digest(c.code, code)]
        if not matches:
            raise InvalidCodeError("Invalid or already used validation code")
        return max(matches, key=lambda c: c.created_at)

    def _target_assignment(self, user_id: str, user_role_id: str | None) -> UserRole:
        if user_role_id is not None:
            assignment = self.user_roles.get_user_role(user_role_id)
            if assignment.user_id != user_id:
                raise InvalidCodeError("Validation code was issued for a different user")
        else:
            pending = [
                ur for ur in self.user_roles.list_user_roles(user_id)
                if ur.validation_status == ValidationStatus.PENDING
            ]
            if not pending:
                raise NotFoundError(f"User {user_id} has no pending role to validate", user_id=user_id)
            assignment = pending[0]

        if assignment.validation_status != ValidationStatus.PENDING:
            raise ConflictError(
                f"User role {assignment.id} is {assignment.validation_status.value}, not pending",
                user_role_id=assignment.id,
            )
        return assignment
