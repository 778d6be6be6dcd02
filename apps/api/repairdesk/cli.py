"""CLI tools for repair desk administration."""

import asyncio

import click

from repairdesk.core.config import settings
from repairdesk.db.session import SessionLocal
from repairdesk.services import data_purge_service
from repairdesk.services.line_api import LineApiError, build_line_client
from repairdesk.services.storage_service import BlobStorage


@click.group()
def cli():
    """Repair desk CLI tools."""
    pass


@cli.command()
@click.option("--older-than-days", default=365, show_default=True, type=int, help="Age cutoff")
@click.option("--keep-notifications", is_flag=True, help="Do not purge LINE delivery logs")
@click.option("--dry-run", is_flag=True, help="Only report what would be deleted")
def purge_tickets(older_than_days: int, keep_notifications: bool, dry_run: bool):
    """
    Delete COMPLETED/CANCELLED tickets not updated for N days.

    Example:
        python -m repairdesk.cli purge-tickets --older-than-days 730 --dry-run
    """
    db = SessionLocal()
    try:
        result = data_purge_service.purge_closed_tickets(
            db,
            older_than_days=older_than_days,
            include_notifications=not keep_notifications,
            dry_run=dry_run,
            storage=BlobStorage() if settings.S3_BUCKET else None,
        )
        prefix = "Would delete" if result.dry_run else "Deleted"
        click.echo(f"{prefix} {result.tickets_deleted} ticket(s)")
        click.echo(f"{prefix} {result.notifications_deleted} notification log row(s)")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def check_line():
    """Verify the LINE access token by fetching bot info."""
    if not settings.line_configured:
        click.echo("❌ LINE_CHANNEL_SECRET / LINE_ACCESS_TOKEN not set")
        raise SystemExit(1)
    try:
        info = asyncio.run(build_line_client().get_bot_info())
    except LineApiError as e:
        click.echo(f"❌ LINE API error: {e}")
        raise SystemExit(1)
    click.echo(f"✓ Connected as {info.get('displayName')} ({info.get('basicId')})")


if __name__ == "__main__":
    cli()
