"""
Operator commands for inspecting and managing the stored session.

Usage:
    securesession --storage ~/.securesession.json status
    securesession --storage ~/.securesession.json login --email admin@example.com
"""

import logging
from pathlib import Path
from typing import Any

import anyio
import click
import httpx

from securesession.client.session import Session
from securesession.settings import SessionSettings


def _session(ctx: click.Context) -> Session:
    settings: SessionSettings = ctx.obj["settings"]
    transport: httpx.AsyncBaseTransport | None = ctx.obj.get("transport")
    return Session(settings, transport=transport)


@click.group()
@click.option(
    "--storage",
    "storage_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Credential storage file (defaults to SECURESESSION_STORAGE_PATH)",
)
@click.option("--base-url", default=None, help="API base URL (defaults to SECURESESSION_API_BASE_URL)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, storage_path: Path | None, base_url: str | None, verbose: bool) -> None:
    """Manage the admin client's stored session."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    overrides: dict[str, Any] = {}
    if storage_path is not None:
        overrides["storage_path"] = storage_path
    if base_url is not None:
        overrides["api_base_url"] = base_url

    ctx.ensure_object(dict)
    ctx.obj["settings"] = SessionSettings(**overrides)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the stored credential without contacting the server."""

    async def run() -> None:
        session = _session(ctx)
        try:
            await session.store.load()
            info = session.status()
        finally:
            await session.aclose()

        click.echo(f"state:         {info.state.value}")
        click.echo(f"mode:          {info.mode.value}")
        click.echo(f"authenticated: {'yes' if info.authenticated else 'no'}")
        click.echo(f"expires at:    {info.expires_at.isoformat() if info.expires_at else '-'}")

    anyio.run(run)


@main.command()
@click.option("--email", "email_or_phone", prompt="Email or phone", help="Account email or phone number")
@click.option("--password", prompt=True, hide_input=True, help="Account password")
@click.pass_context
def login(ctx: click.Context, email_or_phone: str, password: str) -> None:
    """Log in and store the resulting credential."""

    async def run() -> bool:
        async with _session(ctx) as session:
            return await session.login(email_or_phone, password)

    if not anyio.run(run):
        click.echo("Login failed", err=True)
        ctx.exit(1)
    click.echo("Logged in")


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Log out and erase the stored credential."""

    async def run() -> None:
        async with _session(ctx) as session:
            await session.logout()

    anyio.run(run)
    click.echo("Logged out")


@main.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Move credentials from the deprecated storage keys."""

    async def run() -> bool:
        session = _session(ctx)
        try:
            await session.store.load()
            return await session.migration.run()
        finally:
            await session.aclose()

    if anyio.run(run):
        click.echo("Legacy credentials migrated")
    else:
        click.echo("Nothing to migrate")


if __name__ == "__main__":
    main()
