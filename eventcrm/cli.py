"""CLI tools for event CRM administration."""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

import click

from eventcrm.core.exceptions import CRMError
from eventcrm.db.models import Campaign
from eventcrm.db.session import SessionLocal
from eventcrm.schemas.registration import EventCreate
from eventcrm.services import (
    campaign_service,
    email_event_service,
    engagement_service,
    registration_service,
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Event CRM CLI tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, hyphens)")
@click.option("--name", required=True, help="Event name")
@click.option(
    "--date",
    "event_date",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]),
    help="Event date (UTC)",
)
@click.option("--location", default=None, help="Venue")
@click.option("--capacity", default=None, type=int, help="Max active registrations")
def seed_event(
    slug: str,
    name: str,
    event_date: datetime,
    location: str | None,
    capacity: int | None,
):
    """
    Create an event that the registration page can point at.

    Example:
        eventcrm seed-event --slug "launch-2026" --name "Launch Night" --date 2026-11-20
    """
    db = SessionLocal()
    try:
        data = EventCreate(
            slug=slug.lower().strip(),
            name=name,
            event_date=event_date.replace(tzinfo=timezone.utc),
            location=location,
            capacity=capacity,
        )
        event = registration_service.create_event(db, data)
        click.echo(f"✓ Created event: {event.name}")
        click.echo(f"  ID: {event.id}")
        click.echo(f"  Slug: {event.slug}")
    except (CRMError, ValueError) as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def score_all():
    """Recompute the engagement score of every contact."""
    db = SessionLocal()
    try:
        result = engagement_service.score_all(db)
        click.echo(f"✓ Scored {result['processed']} contacts ({result['failed']} failed)")
    finally:
        db.close()


@cli.command()
@click.argument("campaign_id", type=click.UUID)
def recompute_counters(campaign_id: UUID):
    """Rebuild a campaign's aggregate counters from the email event log."""
    db = SessionLocal()
    try:
        drift = email_event_service.verify_campaign_counters(db, campaign_id)
        counters = email_event_service.recompute_campaign_counters(db, campaign_id)
        for field, values in drift.items():
            click.echo(f"  {field}: {values['stored']} → {values['expected']}")
        click.echo(f"✓ Recomputed counters for campaign {campaign_id}")
        for field, value in counters.items():
            click.echo(f"  {field}: {value}")
    except CRMError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.argument("campaign_id", type=click.UUID)
def send_campaign(campaign_id: UUID):
    """
    Send a campaign now, in this process, regardless of audience size.

    Resumable: contacts that already have a send record are skipped.
    """
    db = SessionLocal()
    try:
        summary = asyncio.run(campaign_service.execute_campaign_send(db, campaign_id))
        click.echo(
            f"✓ Campaign {campaign_id}: {summary['sent']} sent, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        for error in summary["errors"]:
            click.echo(f"  {error['recipient']}: {error['reason']}")
    except CRMError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def check_campaigns():
    """Report campaigns whose stored counters drift from the event log."""
    db = SessionLocal()
    try:
        campaign_ids = [row[0] for row in db.query(Campaign.id).all()]
        drifted = 0
        for campaign_id in campaign_ids:
            drift = email_event_service.verify_campaign_counters(db, campaign_id)
            if drift:
                drifted += 1
                click.echo(f"⚠ Campaign {campaign_id}:")
                for field, values in drift.items():
                    click.echo(f"  {field}: stored={values['stored']} expected={values['expected']}")
        if drifted:
            click.echo(f"{drifted} of {len(campaign_ids)} campaigns drifted; run recompute-counters")
        else:
            click.echo(f"✓ All {len(campaign_ids)} campaigns consistent")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
