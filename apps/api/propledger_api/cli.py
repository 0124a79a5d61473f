"""CLI commands for PropLedger API."""

import json

import click
import uvicorn

from propledger_api.db.seed import seed_all
from propledger_api.db.session import SessionLocal
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.settings import get_settings
from propledger_api.tenants.provider import get_tenant_data_provider
from propledger_api.webhooks.handlers import build_handler_registry
from propledger_api.webhooks.service import WebhookIngestor


def _ingestor() -> WebhookIngestor:
    settings = get_settings()
    handlers = build_handler_registry(get_tenant_data_provider(settings))
    return WebhookIngestor(SessionLocal, handlers, settings=settings)


@click.group()
def cli():
    """PropLedger API CLI."""
    pass


@cli.command()
@click.option("--reload", is_flag=True, help="Reload on code changes (development only).")
def serve(reload: bool):
    """Run the API server on API_HOST:API_PORT."""
    settings = get_settings()
    if reload and not settings.is_development:
        click.echo(f"✗ --reload is not allowed in {settings.environment}", err=True)
        raise SystemExit(1)

    click.echo(f"Serving PropLedger API on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        "propledger_api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        reload=reload,
    )


@cli.command()
def seed():
    """Seed demo organization, tenants and charges."""
    click.echo("Seeding initial data...")
    db = SessionLocal()
    try:
        seed_all(db)
        click.echo("✓ Seed data created.")
    except Exception as e:
        db.rollback()
        click.echo(f"✗ Error seeding data: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command("verify-audit")
@click.option("--org-id", required=True, help="Organization to verify.")
def verify_audit(org_id: str):
    """Verify every audit chain of an organization."""
    db = SessionLocal()
    try:
        result = AuditLedgerService(db).verify_chain(org_id)
    finally:
        db.close()

    if result.valid:
        click.echo(f"✓ {result.total_events} audit events verified.")
        return

    bad = result.first_bad_event
    click.echo(
        f"✗ Chain broken at event {bad.id} ({bad.entity}:{bad.entity_id}): "
        f"expected {bad.expected_hash}, found {bad.actual_hash}",
        err=True,
    )
    raise SystemExit(1)


@cli.command("audit-trail")
@click.option("--org-id", required=True, help="Organization of the entity.")
@click.argument("entity")
@click.argument("entity_id")
def audit_trail(org_id: str, entity: str, entity_id: str):
    """Print the audit trail of one entity."""
    db = SessionLocal()
    try:
        entries = AuditLedgerService(db).get_trail(org_id, entity, entity_id)
    finally:
        db.close()

    for entry in entries:
        click.echo(
            f"{entry.id}\t{entry.created_at.isoformat()}\t{entry.action}\t"
            f"{json.dumps(entry.metadata, sort_keys=True)}\t{entry.hash_hex}"
        )


@cli.command("list-failures")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved failures.")
def list_failures(include_resolved: bool):
    """List dead-lettered webhooks."""
    failures = _ingestor().list_failures(include_resolved=include_resolved)
    if not failures:
        click.echo("No webhook failures.")
        return
    for failure in failures:
        state = "resolved" if failure.resolved_at else "open"
        click.echo(
            f"{failure.id}\t{failure.event_id}\t{state}\tretries={failure.retry_count}\t{failure.error_message}"
        )


@cli.command("retry-webhook")
@click.argument("failure_id", type=int)
def retry_webhook(failure_id: int):
    """Retry a dead-lettered webhook."""
    result = _ingestor().retry(failure_id)
    if result.success:
        click.echo(f"✓ {result.message}")
    else:
        click.echo(f"✗ {result.message}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
