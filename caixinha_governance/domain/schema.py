"""
Governance Schema — Pydantic models for every persisted governance entity.

These models are the canonical data structures of the governance core:
roles, permissions and their links, contextual user-role assignments,
bank-validation requests, caixinhas and their rules, disputes with their
vote log, and loans with their installment schedule. Documents are stored
with camelCase keys (``isSystemRole``, ``validationStatus``, ``valorPago``)
while Python code uses snake_case attributes.

Each state machine is a closed enum paired with an explicit transition
table; the tables are checked for exhaustiveness at import time so a new
status cannot be added without deciding where it may go.

Money is ``Decimal`` quantized to cents; timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import calendar
import enum
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from caixinha_governance.errors import ConflictError, ValidationError

CENT = Decimal("0.01")

ROLE_NAME_PATTERN = r"^[A-Za-z0-9_]{3,50}$"
PERMISSION_PART_PATTERN = r"^[A-Za-z0-9_]{2,50}$"
VALIDATION_CODE_PATTERN = r"^[A-Z0-9]{6}$"

ModelT = TypeVar("ModelT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def to_money(value: Decimal | int | str) -> Decimal:
    """Quantize an amount to cents (half-up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(start: date, months: int) -> date:
    """Same day ``months`` later, clamped to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class ContextType(str, enum.Enum):
    """Scope a role assignment applies to."""

    GLOBAL = "global"
    CAIXINHA = "caixinha"
    MARKETPLACE = "marketplace"


class ValidationStatus(str, enum.Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"


class DisputeType(str, enum.Enum):
    """Kinds of collective proposal a caixinha votes on."""

    RULE_CHANGE = "RULE_CHANGE"
    LOAN_APPROVAL = "LOAN_APPROVAL"
    MEMBER_REMOVAL = "MEMBER_REMOVAL"


class DisputeStatus(str, enum.Enum):
    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"
    EXPIRED = "expired"


class LoanStatus(str, enum.Enum):
    """Loan lifecycle (status names follow the caixinha vocabulary)."""

    PENDENTE = "pendente"
    APROVADO = "aprovado"
    PARCIAL = "parcial"
    REJEITADO = "rejeitado"
    QUITADO = "quitado"
    CANCELADO = "cancelado"


class PaymentMethod(str, enum.Enum):
    PIX = "pix"
    TRANSFERENCIA = "transferencia"
    DEPOSITO = "deposito"
    DINHEIRO = "dinheiro"


class GovernanceType(str, enum.Enum):
    """How a caixinha decides: collectively, or by its administrator."""

    GROUP_DISPUTE = "GROUP_DISPUTE"
    ADMIN_CONTROL = "ADMIN_CONTROL"


class GovernedAction(str, enum.Enum):
    """Actions whose authorization may have to go through a dispute."""

    RULE_CHANGE = "RULE_CHANGE"
    LOAN_APPROVAL = "LOAN_APPROVAL"
    MEMBER_REMOVAL = "MEMBER_REMOVAL"
    INITIAL_CONFIG = "INITIAL_CONFIG"


class BankValidationStatus(str, enum.Enum):
    PENDING = "pending"
    CONSUMED = "consumed"


# ════════════════════════════════════════════════════════════════
# State Transition Tables
# ════════════════════════════════════════════════════════════════

VALID_DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.ACTIVE: frozenset({
        DisputeStatus.APPROVED,
        DisputeStatus.REJECTED,
        DisputeStatus.CANCELED,
        DisputeStatus.EXPIRED,
    }),
    DisputeStatus.APPROVED: frozenset(),
    DisputeStatus.REJECTED: frozenset(),
    DisputeStatus.CANCELED: frozenset(),
    DisputeStatus.EXPIRED: frozenset(),
}

VALID_LOAN_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.PENDENTE: frozenset({
        LoanStatus.APROVADO,
        LoanStatus.REJEITADO,
        LoanStatus.CANCELADO,
    }),
    # A single payment covering the whole debt goes straight to QUITADO.
    LoanStatus.APROVADO: frozenset({
        LoanStatus.PARCIAL,
        LoanStatus.QUITADO,
        LoanStatus.CANCELADO,
    }),
    LoanStatus.PARCIAL: frozenset({LoanStatus.QUITADO}),
    LoanStatus.REJEITADO: frozenset(),
    LoanStatus.QUITADO: frozenset(),
    LoanStatus.CANCELADO: frozenset(),
}

TERMINAL_DISPUTE_STATUSES = frozenset(s for s, nxt in VALID_DISPUTE_TRANSITIONS.items() if not nxt)
TERMINAL_LOAN_STATUSES = frozenset(s for s, nxt in VALID_LOAN_TRANSITIONS.items() if not nxt)


def check_exhaustive(table: Mapping[Any, Any], states: type[enum.Enum]) -> None:
    missing = set(states) - set(table)
    if missing:
        raise RuntimeError(
            f"Transition table for {states.__name__} misses: "
            f"{sorted(s.value for s in missing)}"
        )


check_exhaustive(VALID_DISPUTE_TRANSITIONS, DisputeStatus)
check_exhaustive(VALID_LOAN_TRANSITIONS, LoanStatus)


def ensure_transition(
    table: Mapping[Any, frozenset[Any]],
    current: enum.Enum,
    target: enum.Enum,
    entity: str,
) -> None:
    """
    Raise ConflictError unless ``current → target`` is in the table.

    Args:
        table: One of the VALID_*_TRANSITIONS tables.
        current: Current status.
        target: Requested status.
        entity: Human-readable label for the error message.

    Raises:
        ConflictError: If the transition is not allowed.
    """
    if target not in table[current]:
        raise ConflictError(
            f"{entity} cannot move from '{current.value}' to '{target.value}'",
            current_status=current.value,
            requested_status=target.value,
        )


# ════════════════════════════════════════════════════════════════
# Base Document
# ════════════════════════════════════════════════════════════════


class Document(BaseModel):
    """Base for persisted entities: snake_case in Python, camelCase on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, data: Mapping[str, Any]):
        return cls.model_validate(data)


# ════════════════════════════════════════════════════════════════
# RBAC
# ════════════════════════════════════════════════════════════════


class Role(Document):
    """A named bundle of permissions. The name never changes after creation."""

    id: str = Field(default_factory=new_id)
    name: str = Field(pattern=ROLE_NAME_PATTERN, description="Unique role name, e.g. 'CaixinhaManager'")
    description: str = Field(default="", max_length=200)
    is_system_role: bool = Field(default=False, description="System roles cannot be deleted")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Permission(Document):
    """A capability named ``<resource>:<action>``."""

    id: str = Field(default_factory=new_id)
    name: str
    resource: str = Field(pattern=PERMISSION_PART_PATTERN)
    action: str = Field(pattern=PERMISSION_PART_PATTERN)
    description: str = Field(default="", max_length=200)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _derive_name(cls, data: Any) -> Any:
        if isinstance(data, dict):
            resource = data.get("resource")
            action = data.get("action")
            if resource and action:
                expected = f"{resource}:{action}"
                name = data.get("name")
                if name and name != expected:
                    raise ValueError(f"Permission name '{name}' must equal '{expected}'")
                data = {**data, "name": expected}
        return data


class RolePermission(Document):
    role_id: str
    permission_id: str
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return role_permission_id(self.role_id, self.permission_id)


def role_permission_id(role_id: str, permission_id: str) -> str:
    return f"{role_id}:{permission_id}"


class RoleContext(Document):
    """
    Scope of a role assignment.

    A non-global context must name the resource it applies to; a global
    context never carries one.
    """

    type: ContextType = ContextType.GLOBAL
    resource_id: str | None = None

    @model_validator(mode="after")
    def _resource_required_when_scoped(self) -> RoleContext:
        if self.type == ContextType.GLOBAL:
            self.resource_id = None
        elif not (self.resource_id or "").strip():
            raise ValueError(f"context.resourceId is required for '{self.type.value}' contexts")
        return self

    @classmethod
    def global_(cls) -> RoleContext:
        return cls(type=ContextType.GLOBAL)

    @classmethod
    def caixinha(cls, caixinha_id: str) -> RoleContext:
        return cls(type=ContextType.CAIXINHA, resource_id=caixinha_id)

    def same_as(self, other: RoleContext) -> bool:
        return self.type == other.type and self.resource_id == other.resource_id


class UserRole(Document):
    """Assignment of a role to a user within a context."""

    id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    role_id: str = Field(min_length=1)
    context: RoleContext = Field(default_factory=RoleContext.global_)
    validation_status: ValidationStatus = ValidationStatus.PENDING
    validation_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None
    validated_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def confers_capabilities(self, now: datetime) -> bool:
        """True while the assignment is validated and not expired."""
        return self.validation_status == ValidationStatus.VALIDATED and not self.is_expired(now)


class BankData(Document):
    """Bank account a user declares for validation by symbolic transfer."""

    bank_name: str = Field(min_length=1, max_length=100)
    bank_code: str = Field(min_length=1, max_length=10)
    account_type: str = Field(min_length=1, max_length=30)
    account_number: str = Field(min_length=1, max_length=30)
    branch_code: str = Field(min_length=1, max_length=10)
    holder_name: str = Field(min_length=1, max_length=120)
    holder_document: str = Field(min_length=1, max_length=20)


class BankValidationRequest(Document):
    id: str = Field(default_factory=new_id)
    user_id: str
    user_role_id: str | None = None
    code: str = Field(pattern=VALIDATION_CODE_PATTERN)
    amount: Decimal = Field(ge=Decimal("0.01"), le=Decimal("0.05"), decimal_places=2)
    status: BankValidationStatus = BankValidationStatus.PENDING
    bank_data: BankData
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    consumed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ════════════════════════════════════════════════════════════════
# Caixinha
# ════════════════════════════════════════════════════════════════


class CaixinhaRules(Document):
    """Rule set a caixinha governs itself by; changed through RULE_CHANGE disputes."""

    permite_emprestimos: bool = True
    limite_emprestimo: Decimal = Field(
        default=Decimal("0"), ge=0, decimal_places=2,
        description="Maximum principal per loan; 0 means no limit",
    )
    prazo_maximo_emprestimo: int = Field(default=60, ge=1, le=60)
    taxa_juros: Decimal = Field(default=Decimal("0"), ge=0, le=1, decimal_places=4)
    contribuicao_mensal: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    governance_type: GovernanceType = GovernanceType.GROUP_DISPUTE
    quorum_threshold: Decimal = Field(default=Decimal("0.51"), gt=0, le=1)


RULE_KEYS = frozenset(CaixinhaRules.model_fields)


class Caixinha(Document):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=3, max_length=100)
    admin_id: str = Field(min_length=1)
    rules: CaixinhaRules = Field(default_factory=CaixinhaRules)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ════════════════════════════════════════════════════════════════
# Disputes
# ════════════════════════════════════════════════════════════════


class Vote(Document):
    user_id: str = Field(min_length=1)
    vote: bool
    comment: str | None = Field(default=None, max_length=255)
    cast_at: datetime = Field(default_factory=utcnow)


class Dispute(Document):
    """A proposal put to the caixinha's eligible voters."""

    id: str = Field(default_factory=new_id)
    caixinha_id: str = Field(min_length=1)
    title: str = Field(min_length=5, max_length=100)
    description: str = Field(min_length=10, max_length=500)
    type: DisputeType
    proposed_changes: dict[str, Any] = Field(default_factory=dict)
    votes: list[Vote] = Field(default_factory=list)
    status: DisputeStatus = DisputeStatus.ACTIVE
    expires_at: datetime
    created_by: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    canceled_by: str | None = None
    cancellation_reason: str | None = Field(default=None, max_length=255)
    applied: bool = False
    application_error: str | None = None

    @model_validator(mode="after")
    def _one_vote_per_user(self) -> Dispute:
        voters = [v.user_id for v in self.votes]
        if len(voters) != len(set(voters)):
            raise ValueError("A user may vote at most once per dispute")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DISPUTE_STATUSES

    def has_voted(self, user_id: str) -> bool:
        return any(v.user_id == user_id for v in self.votes)

    def count(self, value: bool) -> int:
        return sum(1 for v in self.votes if v.vote is value)


# ════════════════════════════════════════════════════════════════
# Loans
# ════════════════════════════════════════════════════════════════


class Installment(Document):
    number: int = Field(ge=1)
    due_date: date
    amount: Decimal = Field(gt=0, decimal_places=2)
    paid: bool = False
    paid_at: datetime | None = None


class LoanPayment(Document):
    """One recorded payment and the installments it settled."""

    valor: Decimal = Field(gt=0, decimal_places=2)
    metodo: PaymentMethod
    observacao: str | None = Field(default=None, max_length=255)
    paid_at: datetime = Field(default_factory=utcnow)
    installments: list[int] = Field(default_factory=list)


class Loan(Document):
    """
    A member loan and its repayment schedule.

    ``taxa_juros`` is a flat rate on the principal, so the total due is
    ``valor × (1 + taxa_juros)`` rounded to cents, and the installment
    amounts always add up to exactly that total.
    """

    id: str = Field(default_factory=new_id)
    caixinha_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    valor: Decimal = Field(gt=0, decimal_places=2)
    parcelas_count: int = Field(ge=1, le=60)
    taxa_juros: Decimal = Field(default=Decimal("0"), ge=0, le=1, decimal_places=4)
    motivo: str = Field(min_length=3, max_length=500)
    status: LoanStatus = LoanStatus.PENDENTE
    installments: list[Installment] = Field(default_factory=list)
    payments: list[LoanPayment] = Field(default_factory=list)
    valor_pago: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    dispute_id: str | None = None
    data_solicitacao: datetime = Field(default_factory=utcnow)
    data_aprovacao: datetime | None = None
    data_rejeitacao: datetime | None = None
    data_quitacao: datetime | None = None
    data_cancelamento: datetime | None = None
    admin_aprovador: str | None = None
    admin_rejeitador: str | None = None
    motivo_rejeitacao: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _ledger_consistent(self) -> Loan:
        if len(self.installments) != self.parcelas_count:
            raise ValueError("installments must match parcelasCount")
        paid = sum((i.amount for i in self.installments if i.paid), Decimal("0"))
        if paid != self.valor_pago:
            raise ValueError(f"valorPago {self.valor_pago} differs from paid installments {paid}")
        if self.valor_pago > self.total_due:
            raise ValueError(f"valorPago {self.valor_pago} exceeds total due {self.total_due}")
        return self

    @property
    def total_due(self) -> Decimal:
        return to_money(self.valor * (1 + self.taxa_juros))

    @property
    def outstanding(self) -> Decimal:
        return self.total_due - self.valor_pago

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOAN_STATUSES


# ════════════════════════════════════════════════════════════════
# Default RBAC Catalog
# ════════════════════════════════════════════════════════════════

DEFAULT_ROLES: dict[str, dict[str, Any]] = {
    "client": {"name": "Client", "description": "Regular platform user", "is_system_role": True},
    "admin": {"name": "Admin", "description": "Platform administrator", "is_system_role": True},
    "support": {"name": "Support", "description": "Customer support agent", "is_system_role": True},
    "seller": {"name": "Seller", "description": "Marketplace seller", "is_system_role": True},
    "caixinhaManager": {
        "name": "CaixinhaManager",
        "description": "Caixinha administrator; manages members and loans",
        "is_system_role": False,
    },
    "caixinhaMember": {
        "name": "CaixinhaMember",
        "description": "Regular caixinha member; votes and requests loans",
        "is_system_role": False,
    },
    "caixinhaModerator": {
        "name": "CaixinhaModerator",
        "description": "Member promoted to help manage the caixinha",
        "is_system_role": False,
    },
}

DEFAULT_PERMISSIONS: list[tuple[str, str, str]] = [
    ("admin", "access", "Access the administration area"),
    ("role", "create", "Create roles"),
    ("role", "read", "Read roles"),
    ("role", "update", "Update roles and their permissions"),
    ("role", "delete", "Delete roles"),
    ("permission", "create", "Create permissions"),
    ("permission", "read", "Read permissions"),
    ("permission", "update", "Update permissions"),
    ("permission", "delete", "Delete permissions"),
    ("user", "read", "Read user profiles and role assignments"),
    ("user", "update", "Assign, validate and reject user roles"),
    ("caixinha", "create", "Create caixinhas"),
    ("caixinha", "read", "Read caixinha data"),
    ("caixinha", "update", "Update caixinha settings"),
    ("caixinha", "delete", "Delete caixinhas"),
    ("caixinha", "manage_members", "Add, promote and remove members"),
    ("caixinha", "manage_loans", "Approve and reject loans"),
    ("caixinha", "view_reports", "View caixinha reports"),
    ("caixinha", "disburse", "Move caixinha funds"),
    ("dispute", "create", "Open a dispute in a caixinha"),
    ("dispute", "vote", "Vote on caixinha disputes"),
    ("loan", "request", "Request a loan from a caixinha"),
    ("product", "create", "Create products"),
    ("product", "read", "Read products"),
    ("product", "update", "Update products"),
    ("product", "delete", "Delete products"),
    ("order", "create", "Place orders"),
    ("order", "read", "Read orders"),
    ("order", "update", "Update orders"),
    ("support", "access", "Access the support area"),
    ("support", "manage_tickets", "Handle support tickets"),
    ("support", "view_logs", "Read system logs"),
]


def permission_id_for(name: str) -> str:
    """Stable id for a seeded permission ('caixinha:read' → 'caixinha_read')."""
    return name.replace(":", "_")


_MEMBER_PERMISSIONS = ["caixinha:read", "dispute:create", "dispute:vote", "loan:request"]

# Hierarchy is spelled out: a manager's set lists the member permissions too.
DEFAULT_ROLE_PERMISSIONS: dict[str, list[str]] = {
    "admin": [f"{resource}:{action}" for resource, action, _ in DEFAULT_PERMISSIONS],
    "client": ["product:read", "order:create", "order:read", "caixinha:create", "user:read"],
    "support": ["support:access", "support:manage_tickets", "support:view_logs", "user:read", "order:read"],
    "seller": ["product:create", "product:read", "product:update", "product:delete", "order:read", "order:update"],
    "caixinhaMember": list(_MEMBER_PERMISSIONS),
    "caixinhaModerator": _MEMBER_PERMISSIONS + ["caixinha:manage_members", "caixinha:view_reports"],
    "caixinhaManager": _MEMBER_PERMISSIONS + [
        "caixinha:update",
        "caixinha:delete",
        "caixinha:manage_members",
        "caixinha:manage_loans",
        "caixinha:view_reports",
        "caixinha:disburse",
    ],
}

# Fund-moving capabilities: answered from a strong read, never from cache.
MONETARY_PERMISSIONS = frozenset({"caixinha:manage_loans", "caixinha:disburse"})


# ════════════════════════════════════════════════════════════════
# Collections & Construction
# ════════════════════════════════════════════════════════════════


class Collections:
    """Record store collection names."""

    ROLES = "roles"
    ROLE_NAMES = "role_names"
    PERMISSIONS = "permissions"
    PERMISSION_NAMES = "permission_names"
    ROLE_PERMISSIONS = "role_permissions"
    USER_ROLES = "user_roles"
    BANK_VALIDATIONS = "bank_validations"
    CAIXINHAS = "caixinhas"
    DISPUTES = "disputes"
    LOANS = "loans"


def build(model_cls: type[ModelT], /, **values: Any) -> ModelT:
    """
    Construct a model, turning pydantic errors into ValidationError.

    Used at every service boundary so malformed input is rejected before any
    write is attempted.
    """
    try:
        return model_cls(**values)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{e['field'] or model_cls.__name__}: {e['message']}" for e in errors)
        raise ValidationError(f"Invalid {model_cls.__name__}: {summary}", errors=errors) from exc
