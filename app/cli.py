"""CLI tools for help-desk channel administration."""

from uuid import UUID

import click

from app.core.async_utils import run_async
from app.db.enums import Role
from app.db.models import Membership, Organization, User
from app.db.session import SessionLocal


@click.group()
def cli():
    """Channel CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--admin-email", required=True, help="Admin email address")
@click.option("--admin-name", default="Administrator", help="Admin display name")
def create_org(name: str, slug: str, admin_email: str, admin_name: str):
    """
    Create organization and its first admin user.

    This is the bootstrap command for setting up a new tenant.

    Example:
        python -m app.cli create-org --name "Acme Corp" --slug "acme" --admin-email "admin@acme.com"
    """
    db = SessionLocal()
    try:
        # Validate slug format
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            return

        existing = db.query(Organization).filter(Organization.slug == slug).first()
        if existing:
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            return

        email = admin_email.lower()
        if db.query(User).filter(User.email == email).first():
            click.echo(f"❌ User already exists: {email}")
            return

        org = Organization(name=name, slug=slug)
        user = User(email=email, display_name=admin_name)
        db.add_all([org, user])
        db.flush()
        db.add(Membership(user_id=user.id, organization_id=org.id, role=Role.ADMIN.value))
        db.commit()

        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
        click.echo(f"  Slug: {slug}")
        click.echo(f"✓ Created admin {email}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--email", required=True, help="User email to revoke sessions for")
def revoke_sessions(email: str):
    """
    Revoke all sessions for a user by bumping their token_version.

    Example:
        python -m app.cli revoke-sessions --email "user@example.com"
    """
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email.lower()).first()
        if not user:
            click.echo(f"❌ User not found: {email}")
            return

        old_version = user.token_version
        user.token_version += 1
        db.commit()

        click.echo(f"✓ Revoked all sessions for {email}")
        click.echo(f"  Token version: {old_version} → {user.token_version}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--channel", "channel_id", default=None, help="Only this channel ID")
@click.option("--force", is_flag=True, help="Ignore sync intervals")
def sync_channels(channel_id: str | None, force: bool):
    """
    Enqueue sync jobs for due polling channels.

    Example:
        python -m app.cli sync-channels --channel 3f0c... --force
    """
    from app.services import channel_sync_service

    db = SessionLocal()
    try:
        counts = channel_sync_service.schedule_due_channel_syncs(
            db,
            channel_id=UUID(channel_id) if channel_id else None,
            force=force,
        )
        click.echo(
            f"✓ Due: {counts['due']}  Enqueued: {counts['enqueued']}  Skipped: {counts['skipped']}"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.argument("channel_id")
def sync_channel_now(channel_id: str):
    """
    Run one sync for a channel inline, bypassing the job queue.

    Example:
        python -m app.cli sync-channel-now 3f0c...
    """
    from app.core.config import settings
    from app.services import channel_sync_service

    db = SessionLocal()
    try:
        result = run_async(
            channel_sync_service.sync_channel(db, UUID(channel_id)),
            timeout=settings.CHANNEL_SYNC_TIMEOUT_SECONDS + 30,
        )
        click.echo(f"✓ {result.status}: {result.items_processed} item(s) processed")
        if result.error:
            click.echo(f"  Last error: {result.error}")
    finally:
        db.close()


@cli.command()
@click.option("--limit", default=10, help="Maximum jobs to process")
def run_jobs(limit: int):
    """
    Process one batch of pending jobs and exit.

    Example:
        python -m app.cli run-jobs --limit 50
    """
    from app.worker import run_pending_jobs

    db = SessionLocal()
    try:
        processed = run_async(run_pending_jobs(db, limit=limit))
        click.echo(f"✓ Processed {processed} job(s)")
    finally:
        db.close()


@cli.command()
def purge_oauth_states():
    """Delete expired or consumed OAuth state tokens."""
    from app.services import channel_oauth_service

    db = SessionLocal()
    try:
        removed = channel_oauth_service.purge_state_tokens(db)
        click.echo(f"✓ Removed {removed} state token(s)")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
