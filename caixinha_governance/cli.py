"""
Caixinha Governance admin CLI.

Operational commands against the record store configured in .env (or
given with --database-url):

    caixinha-governance seed
    caixinha-governance roles
    caixinha-governance grant-admin <user-id>
    caixinha-governance sweep-disputes

``seed`` is idempotent. ``sweep-disputes`` expires every active dispute
past its deadline, which reads would otherwise do lazily.
"""

from __future__ import annotations

import argparse
import sys

import structlog
from rich.console import Console
from rich.table import Table

from caixinha_governance.config import GovernanceSettings, settings
from caixinha_governance.domain.schema import ContextType, ValidationStatus
from caixinha_governance.errors import GovernanceError
from caixinha_governance.logging_config import configure_logging
from caixinha_governance.services import GovernanceServices, build_services

console = Console()
log = structlog.get_logger("caixinha_governance.cli")

ADMIN_ROLE_ID = "admin"


def run_seed(services: GovernanceServices) -> int:
    created = services.catalog.initialize_defaults()
    console.print("\n[bold blue]═══ RBAC Defaults ═══[/bold blue]")
    console.print(f"  Roles created:       [bold]{created['roles']}[/bold]")
    console.print(f"  Permissions created: [bold]{created['permissions']}[/bold]")
    console.print(f"  Links created:       [bold]{created['links']}[/bold]\n")
    log.info("rbac_seeded", **created)
    return 0


def run_roles(services: GovernanceServices) -> int:
    roles = services.catalog.list_roles()
    if not roles:
        console.print("[yellow]⚠ No roles defined. Run 'seed' first.[/yellow]")
        return 0

    table = Table(show_lines=True)
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("System", width=8)
    table.add_column("Permissions", style="dim")
    for role in roles:
        permissions = services.catalog.get_role_permissions(role.id)
        table.add_row(
            role.id,
            role.name,
            "yes" if role.is_system_role else "—",
            ", ".join(sorted(p.name for p in permissions)) or "—",
        )
    console.print(table)
    return 0


def run_grant_admin(services: GovernanceServices, user_id: str) -> int:
    assignment = services.user_roles.assign_role(
        user_id,
        ADMIN_ROLE_ID,
        context={"type": ContextType.GLOBAL.value},
        validation_status=ValidationStatus.VALIDATED,
        validation_data={"validatedBy": "cli", "validationMethod": "admin"},
        created_by="cli",
    )
    if assignment.validation_status != ValidationStatus.VALIDATED:
        services.user_roles.validate_user_role(
            assignment.id, {"validatedBy": "cli", "validationMethod": "admin"}
        )
    console.print(f"[bold green]✓[/bold green] {user_id} holds the platform admin role ({assignment.id})")
    log.info("admin_granted", user_id=user_id, user_role_id=assignment.id)
    return 0


def run_sweep(services: GovernanceServices) -> int:
    expired = services.disputes.expire_overdue()
    if not expired:
        console.print("  No overdue disputes.")
    for dispute in expired:
        console.print(f"  [yellow]expired[/yellow] {dispute.id}  caixinha={dispute.caixinha_id}  {dispute.title}")
    log.info("disputes_swept", expired=len(expired))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Caixinha governance administration")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("seed", help="Create the default roles, permissions and links")
    subparsers.add_parser("roles", help="List roles and their permissions")
    grant = subparsers.add_parser("grant-admin", help="Give a user the validated global admin role")
    grant.add_argument("user_id")
    subparsers.add_parser("sweep-disputes", help="Expire active disputes past their deadline")
    args = parser.parse_args(argv)

    config: GovernanceSettings = settings
    if args.database_url:
        config = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(config)

    try:
        services = build_services(config)
        if args.command == "seed":
            code = run_seed(services)
        elif args.command == "roles":
            code = run_roles(services)
        elif args.command == "grant-admin":
            code = run_grant_admin(services, args.user_id)
        else:
            code = run_sweep(services)
        services.close()
    except GovernanceError as exc:
        console.print(f"[bold red]✗ {exc.code}[/bold red] {exc.message}")
        log.error("command_failed", command=args.command, code=exc.code)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
