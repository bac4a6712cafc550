"""
Caixinha Governance — HTTP API.

FastAPI application exposing the governance core:
- Roles & Permissions (platform administration)
- User Roles (assignment, validation, rejection, removal)
- Bank Validation (code issue and confirmation)
- Caixinhas, Disputes & Voting
- Loans (request, approval, payments, cancellation)

The calling user is taken from the ``X-User-Id`` header, which the gateway
in front of this service sets after authenticating the request. Every
typed GovernanceError becomes ``{success: false, code, message}`` with its
HTTP status; anything else is logged and answered with a generic 500.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from caixinha_governance.config import settings
from caixinha_governance.domain.schema import ContextType, Document, GovernedAction, PaymentMethod, ValidationStatus
from caixinha_governance.errors import (
    AuthenticationError,
    ForbiddenError,
    GovernanceError,
    NotFoundError,
    ServiceError,
)
from caixinha_governance.logging_config import configure_logging
from caixinha_governance.services import GovernanceServices, build_services

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RoleCreateRequest(ApiModel):
    name: str
    description: str = ""
    is_system_role: bool = False


class RoleUpdateRequest(ApiModel):
    name: str | None = None
    description: str | None = None
    is_system_role: bool | None = None


class PermissionCreateRequest(ApiModel):
    resource: str
    action: str
    description: str = ""


class PermissionUpdateRequest(ApiModel):
    description: str


class ContextModel(ApiModel):
    type: ContextType = ContextType.GLOBAL
    resource_id: str | None = None


class UserRoleAssignRequest(ApiModel):
    role_id: str
    context: ContextModel = Field(default_factory=ContextModel)
    validation_status: ValidationStatus = ValidationStatus.PENDING
    validation_data: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    expires_at: datetime | None = None


class UserRoleValidateRequest(ApiModel):
    validation_data: dict[str, Any] | None = None


class UserRoleRejectRequest(ApiModel):
    reason: str
    details: dict[str, Any] | None = None


class BankValidationInitRequest(ApiModel):
    bank_data: dict[str, Any]
    user_role_id: str | None = None


class BankValidationConfirmRequest(ApiModel):
    validation_code: str
    user_role_id: str | None = None


class CaixinhaCreateRequest(ApiModel):
    name: str
    rules: dict[str, Any] | None = None


class MemberAddRequest(ApiModel):
    user_id: str


class DisputeCreateRequest(ApiModel):
    type: str
    title: str
    description: str
    proposed_changes: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None


class VoteRequest(ApiModel):
    vote: bool
    comment: str | None = None


class CancelRequest(ApiModel):
    reason: str


class LoanRequest(ApiModel):
    valor: Decimal
    parcelas_count: int
    motivo: str
    taxa_juros: Decimal | None = None


class LoanRejectRequest(ApiModel):
    reason: str | None = None


class PaymentRequest(ApiModel):
    valor: Decimal
    metodo: PaymentMethod
    observacao: str | None = None


class LoanCancelRequest(ApiModel):
    reason: str | None = None


class ApiState:
    """Services and start time, attached to the application."""

    def __init__(self, services: GovernanceServices | None = None) -> None:
        self.services = services
        self.owns_services = services is None
        self.startup_time: datetime = datetime.now(timezone.utc)


# ── Helpers ────────────────────────────────────────────────────


def ok(data: Any = None, status_code: int = 200, **extra: Any) -> JSONResponse:
    if isinstance(data, Document):
        data = data.to_record()
    elif isinstance(data, list):
        data = [item.to_record() if isinstance(item, Document) else item for item in data]
    body: dict[str, Any] = {"success": True, **extra}
    if data is not None:
        body["data"] = data
    return JSONResponse(body, status_code=status_code)


def get_services(request: Request) -> GovernanceServices:
    services = request.app.state.api.services
    if services is None:
        raise ServiceError("Governance services are not initialized")
    return services


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing X-User-Id header")
    structlog.contextvars.bind_contextvars(user_id=x_user_id)
    return x_user_id.strip()


def require_global(services: GovernanceServices, user_id: str, permission: str) -> None:
    services.resolver.require_permission(user_id, permission, ContextType.GLOBAL)


def require_in_caixinha(services: GovernanceServices, user_id: str, permission: str, caixinha_id: str) -> None:
    services.resolver.require_permission(user_id, permission, ContextType.CAIXINHA, caixinha_id)


# ── Application factory ────────────────────────────────────────


def create_app(services: GovernanceServices | None = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built services (tests); when omitted they are built
            from settings during startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        api: ApiState = app.state.api
        if api.services is None:
            api.services = build_services()
        logger.info("Caixinha Governance API starting on %s:%s", settings.api_host, settings.api_port)

        yield

        if api.owns_services and api.services is not None:
            api.services.close()
        logger.info("Caixinha Governance API shut down")

    app = FastAPI(
        title="Caixinha Governance",
        description="Roles, disputes and loans for collective savings groups",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.api = ApiState(services)

    # ── Error handling ─────────────────────────────────────────

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.http_status)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            {"success": False, "code": "VALIDATION_ERROR", "message": "Invalid request", "details": {"errors": errors}},
            status_code=422,
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            {"success": False, "code": "INTERNAL_ERROR", "message": "Internal server error"},
            status_code=500,
        )

    # ── Health Check ───────────────────────────────────────────

    @app.get("/health")
    def health(request: Request):
        api: ApiState = request.app.state.api
        store_available = api.services is not None and api.services.store.ping()
        return JSONResponse(
            {
                "status": "healthy" if store_available else "degraded",
                "store_available": store_available,
                "uptime_seconds": (datetime.now(timezone.utc) - api.startup_time).total_seconds(),
            },
            status_code=200 if store_available else 503,
        )

    # ── Routes: Roles ──────────────────────────────────────────

    @app.get("/api/roles")
    def list_roles(
        is_system_role: bool | None = None,
        user_id: str = Depends(current_user),
        services: GovernanceServices = Depends(get_services),
    ):
        require_global(services, user_id, "role:read")
        return ok(services.catalog.list_roles(is_system_role))

    @app.get("/api/roles/{role_id}")
    def get_role(role_id: str, user_id: str = Depends(current_user),
                 services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:read")
        role = services.catalog.get_role(role_id)
        permissions = services.catalog.get_role_permissions(role_id)
        return ok({**role.to_record(), "permissions": [p.to_record() for p in permissions]})

    @app.post("/api/roles")
    def create_role(req: RoleCreateRequest, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:create")
        role = services.catalog.create_role(req.name, req.description, is_system_role=req.is_system_role)
        return ok(role, status_code=201)

    @app.put("/api/roles/{role_id}")
    def update_role(role_id: str, req: RoleUpdateRequest, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:update")
        role = services.catalog.update_role(
            role_id, description=req.description, is_system_role=req.is_system_role, name=req.name
        )
        return ok(role)

    @app.delete("/api/roles/{role_id}")
    def delete_role(role_id: str, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:delete")
        services.catalog.delete_role(role_id)
        return ok(message=f"Role {role_id} deleted")

    @app.post("/api/roles/{role_id}/permissions/{permission_id}")
    def assign_permission(role_id: str, permission_id: str, user_id: str = Depends(current_user),
                          services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:update")
        link = services.catalog.assign_permission_to_role(role_id, permission_id)
        return ok(link, status_code=201)

    @app.delete("/api/roles/{role_id}/permissions/{permission_id}")
    def remove_permission(role_id: str, permission_id: str, user_id: str = Depends(current_user),
                          services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "role:update")
        services.catalog.remove_permission_from_role(role_id, permission_id)
        return ok(message=f"Permission {permission_id} removed from role {role_id}")

    # ── Routes: Permissions ────────────────────────────────────

    @app.get("/api/permissions")
    def list_permissions(resource: str | None = None, user_id: str = Depends(current_user),
                         services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "permission:read")
        return ok(services.catalog.list_permissions(resource))

    @app.get("/api/permissions/{permission_id}")
    def get_permission(permission_id: str, user_id: str = Depends(current_user),
                       services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "permission:read")
        return ok(services.catalog.get_permission(permission_id))

    @app.post("/api/permissions")
    def create_permission(req: PermissionCreateRequest, user_id: str = Depends(current_user),
                          services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "permission:create")
        permission = services.catalog.create_permission(req.resource, req.action, req.description)
        return ok(permission, status_code=201)

    @app.put("/api/permissions/{permission_id}")
    def update_permission(permission_id: str, req: PermissionUpdateRequest, user_id: str = Depends(current_user),
                          services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "permission:update")
        return ok(services.catalog.update_permission(permission_id, req.description))

    @app.delete("/api/permissions/{permission_id}")
    def delete_permission(permission_id: str, user_id: str = Depends(current_user),
                          services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "permission:delete")
        services.catalog.delete_permission(permission_id)
        return ok(message=f"Permission {permission_id} deleted")

    # ── Routes: User Roles ─────────────────────────────────────

    @app.get("/api/users/{target_id}/roles")
    def list_user_roles(
        target_id: str,
        context_type: ContextType | None = None,
        resource_id: str | None = None,
        user_id: str = Depends(current_user),
        services: GovernanceServices = Depends(get_services),
    ):
        if target_id != user_id:
            require_global(services, user_id, "user:read")
        return ok(services.user_roles.list_user_roles(target_id, context_type, resource_id))

    @app.post("/api/users/{target_id}/roles")
    def assign_user_role(target_id: str, req: UserRoleAssignRequest, user_id: str = Depends(current_user),
                         services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "user:update")
        assignment = services.user_roles.assign_role(
            target_id,
            req.role_id,
            context=req.context.model_dump(),
            validation_status=req.validation_status,
            validation_data=req.validation_data,
            metadata=req.metadata,
            expires_at=req.expires_at,
            created_by=user_id,
        )
        return ok(assignment, status_code=201)

    @app.delete("/api/user-roles/{user_role_id}")
    def remove_user_role(user_role_id: str, user_id: str = Depends(current_user),
                         services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "user:update")
        services.user_roles.remove_user_role(user_role_id)
        return ok(message=f"User role {user_role_id} removed")

    @app.post("/api/user-roles/{user_role_id}/validate")
    def validate_user_role(user_role_id: str, req: UserRoleValidateRequest, user_id: str = Depends(current_user),
                           services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "user:update")
        data = {"validatedBy": user_id, "validationMethod": "admin", **(req.validation_data or {})}
        return ok(services.user_roles.validate_user_role(user_role_id, data))

    @app.post("/api/user-roles/{user_role_id}/reject")
    def reject_user_role(user_role_id: str, req: UserRoleRejectRequest, user_id: str = Depends(current_user),
                         services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "user:update")
        return ok(services.user_roles.reject_user_role(user_role_id, req.reason, user_id, req.details))

    # ── Routes: Bank Validation ────────────────────────────────

    @app.post("/api/bank-validation/init")
    def init_bank_validation(req: BankValidationInitRequest, user_id: str = Depends(current_user),
                             services: GovernanceServices = Depends(get_services)):
        request = services.bank_validation.init_bank_validation(user_id, req.bank_data, req.user_role_id)
        return ok(
            {
                "requestId": request.id,
                "validationCode": request.code,
                "amount": str(request.amount),
                "expiresAt": request.expires_at.isoformat(),
            },
            status_code=201,
        )

    @app.post("/api/bank-validation/confirm")
    def confirm_bank_validation(req: BankValidationConfirmRequest, user_id: str = Depends(current_user),
                                services: GovernanceServices = Depends(get_services)):
        return ok(services.bank_validation.confirm_bank_validation(user_id, req.validation_code, req.user_role_id))

    # ── Routes: Caixinhas ──────────────────────────────────────

    @app.post("/api/caixinhas")
    def create_caixinha(req: CaixinhaCreateRequest, user_id: str = Depends(current_user),
                        services: GovernanceServices = Depends(get_services)):
        require_global(services, user_id, "caixinha:create")
        return ok(services.caixinhas.create_caixinha(req.name, user_id, req.rules), status_code=201)

    @app.get("/api/caixinhas/{caixinha_id}")
    def get_caixinha(caixinha_id: str, user_id: str = Depends(current_user),
                     services: GovernanceServices = Depends(get_services)):
        caixinha = services.caixinhas.get_caixinha(caixinha_id)
        require_in_caixinha(services, user_id, "caixinha:read", caixinha_id)
        return ok({**caixinha.to_record(), "members": services.caixinhas.list_members(caixinha_id)})

    @app.post("/api/caixinhas/{caixinha_id}/members")
    def add_member(caixinha_id: str, req: MemberAddRequest, user_id: str = Depends(current_user),
                   services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:manage_members", caixinha_id)
        return ok(services.caixinhas.add_member(caixinha_id, req.user_id, invited_by=user_id), status_code=201)

    # ── Routes: Disputes ───────────────────────────────────────

    @app.get("/api/caixinhas/{caixinha_id}/disputes")
    def list_disputes(caixinha_id: str, status: str | None = None, user_id: str = Depends(current_user),
                      services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:read", caixinha_id)
        return ok(services.disputes.list_disputes(caixinha_id, status))

    @app.get("/api/caixinhas/{caixinha_id}/disputes/check-requirement")
    def check_dispute_requirement(caixinha_id: str, action: GovernedAction, user_id: str = Depends(current_user),
                                  services: GovernanceServices = Depends(get_services)):
        return ok(services.disputes.check_dispute_requirement(caixinha_id, action, user_id).to_dict())

    @app.get("/api/caixinhas/{caixinha_id}/disputes/{dispute_id}")
    def get_dispute(caixinha_id: str, dispute_id: str, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:read", caixinha_id)
        dispute = _dispute_in(services, caixinha_id, dispute_id)
        tally = services.disputes.get_tally(dispute_id)
        return ok({**dispute.to_record(), "tally": tally.to_dict()})

    @app.post("/api/caixinhas/{caixinha_id}/disputes")
    def create_dispute(caixinha_id: str, req: DisputeCreateRequest, user_id: str = Depends(current_user),
                       services: GovernanceServices = Depends(get_services)):
        dispute = services.disputes.create_dispute(
            caixinha_id,
            user_id,
            req.type,
            title=req.title,
            description=req.description,
            proposed_changes=req.proposed_changes,
            expires_at=req.expires_at,
        )
        return ok(dispute, status_code=201)

    @app.post("/api/caixinhas/{caixinha_id}/disputes/{dispute_id}/vote")
    def vote(caixinha_id: str, dispute_id: str, req: VoteRequest, user_id: str = Depends(current_user),
             services: GovernanceServices = Depends(get_services)):
        _dispute_in(services, caixinha_id, dispute_id)
        return ok(services.disputes.vote(dispute_id, user_id, req.vote, req.comment))

    @app.post("/api/caixinhas/{caixinha_id}/disputes/{dispute_id}/cancel")
    def cancel_dispute(caixinha_id: str, dispute_id: str, req: CancelRequest, user_id: str = Depends(current_user),
                       services: GovernanceServices = Depends(get_services)):
        _dispute_in(services, caixinha_id, dispute_id)
        return ok(services.disputes.cancel_dispute(dispute_id, user_id, req.reason))

    # ── Routes: Loans ──────────────────────────────────────────

    @app.get("/api/caixinhas/{caixinha_id}/loans")
    def list_loans(caixinha_id: str, status: str | None = None, borrower_id: str | None = None,
                   user_id: str = Depends(current_user), services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:read", caixinha_id)
        return ok(services.loans.list_loans(caixinha_id, status, borrower_id))

    @app.get("/api/caixinhas/{caixinha_id}/loans/stats")
    def loan_stats(caixinha_id: str, user_id: str = Depends(current_user),
                   services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:view_reports", caixinha_id)
        return ok(services.loans.get_loan_stats(caixinha_id))

    @app.get("/api/caixinhas/{caixinha_id}/loans/{loan_id}")
    def get_loan(caixinha_id: str, loan_id: str, user_id: str = Depends(current_user),
                 services: GovernanceServices = Depends(get_services)):
        require_in_caixinha(services, user_id, "caixinha:read", caixinha_id)
        return ok(_loan_in(services, caixinha_id, loan_id))

    @app.post("/api/caixinhas/{caixinha_id}/loans")
    def request_loan(caixinha_id: str, req: LoanRequest, user_id: str = Depends(current_user),
                     services: GovernanceServices = Depends(get_services)):
        loan = services.loans.request_loan(
            caixinha_id, user_id, req.valor, req.parcelas_count, req.motivo, req.taxa_juros
        )
        return ok(loan, status_code=201)

    @app.post("/api/caixinhas/{caixinha_id}/loans/{loan_id}/approve")
    def approve_loan(caixinha_id: str, loan_id: str, user_id: str = Depends(current_user),
                     services: GovernanceServices = Depends(get_services)):
        _loan_in(services, caixinha_id, loan_id)
        return ok(services.loans.approve_loan(loan_id, user_id))

    @app.post("/api/caixinhas/{caixinha_id}/loans/{loan_id}/reject")
    def reject_loan(caixinha_id: str, loan_id: str, req: LoanRejectRequest, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        _loan_in(services, caixinha_id, loan_id)
        return ok(services.loans.reject_loan(loan_id, user_id, req.reason))

    @app.post("/api/caixinhas/{caixinha_id}/loans/{loan_id}/payments")
    def make_payment(caixinha_id: str, loan_id: str, req: PaymentRequest, user_id: str = Depends(current_user),
                     services: GovernanceServices = Depends(get_services)):
        loan = _loan_in(services, caixinha_id, loan_id)
        if loan.user_id != user_id and not services.resolver.has_permission(
            user_id, "caixinha:manage_loans", ContextType.CAIXINHA, caixinha_id
        ):
            raise ForbiddenError(f"Only the borrower or a loan manager may record payments on loan {loan_id}")
        return ok(services.loans.make_payment(loan_id, req.valor, req.metodo, req.observacao))

    @app.post("/api/caixinhas/{caixinha_id}/loans/{loan_id}/cancel")
    def cancel_loan(caixinha_id: str, loan_id: str, req: LoanCancelRequest, user_id: str = Depends(current_user),
                    services: GovernanceServices = Depends(get_services)):
        _loan_in(services, caixinha_id, loan_id)
        return ok(services.loans.cancel_loan(loan_id, user_id, req.reason))

    return app


def _dispute_in(services: GovernanceServices, caixinha_id: str, dispute_id: str):
    dispute = services.disputes.get_dispute(dispute_id)
    if dispute.caixinha_id != caixinha_id:
        raise NotFoundError(f"Dispute {dispute_id} not found in caixinha {caixinha_id}", dispute_id=dispute_id)
    return dispute


def _loan_in(services: GovernanceServices, caixinha_id: str, loan_id: str):
    loan = services.loans.get_loan(loan_id)
    if loan.caixinha_id != caixinha_id:
        raise NotFoundError(f"Loan {loan_id} not found in caixinha {caixinha_id}", loan_id=loan_id)
    return loan


app = create_app()
