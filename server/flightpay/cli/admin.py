"""
Operator commands for the payment core.
"""

import asyncio

import click
import httpx

from flightpay.core.config import get_settings
from flightpay.core.logging import configure_logging
from flightpay.db.session import create_engine_from_settings, create_session_factory, init_models
from flightpay.payments.factory import build_payment_service
from flightpay.payments.status_mapping import list_mappings, seed_default_mappings


@click.group()
def cli():
    """FlightPay administration"""
    configure_logging()


@cli.command("seed-status-mappings")
@click.option("--dry-run", is_flag=True, help="Show the mappings that would be inserted without writing them")
def seed_status_mappings(dry_run: bool):
    """Insert the built-in acquirer status mappings that are missing from the database"""
    missing = asyncio.run(_seed(dry_run))
    if not missing:
        click.echo("All default status mappings are present.")
        return
    verb = "Would insert" if dry_run else "Inserted"
    click.echo(f"{verb} {len(missing)} status mappings:")
    for code, status, canonical in missing:
        click.echo(f"  {code} {status} -> {canonical.value}")


@cli.command("list-status-mappings")
@click.argument("acquirer")
def list_status_mappings(acquirer: str):
    """List stored status mappings for ACQUIRER"""
    rows = asyncio.run(_list(acquirer))
    if not rows:
        click.echo(f"No status mappings stored for {acquirer.upper()}.")
        return
    for row in rows:
        state = "active" if row.is_active else "inactive"
        click.echo(f"{row.acquirer_code} {row.acquirer_status} -> {row.canonical_status} ({state})")


@cli.command("expire-payments")
def expire_payments():
    """Fail open payments whose checkout window has passed"""
    references = asyncio.run(_expire())
    click.echo(f"Expired {len(references)} payments.")
    for reference in references:
        click.echo(f"  {reference}")


async def _seed(dry_run: bool):
    engine = create_engine_from_settings(get_settings())
    try:
        await init_models(engine)
        async with create_session_factory(engine)() as session:
            async with session.begin():
                return await seed_default_mappings(session, dry_run=dry_run)
    finally:
        await engine.dispose()


async def _list(acquirer: str):
    engine = create_engine_from_settings(get_settings())
    try:
        await init_models(engine)
        async with create_session_factory(engine)() as session:
            return await list_mappings(session, acquirer)
    finally:
        await engine.dispose()


async def _expire():
    settings = get_settings()
    engine = create_engine_from_settings(settings)
    try:
        await init_models(engine)
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as http_client:
            service = build_payment_service(
                settings,
                session_factory=create_session_factory(engine),
                http_client=http_client,
            )
            try:
                return await service.expire_stale_payments()
            finally:
                await service.aclose()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    cli()
