"""CLI for the commerce platform.

Runs the API and workers and covers one-off admin tasks.
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from commerce.config import get_settings
from commerce.container import build_container
from commerce.core.errors import CommerceError, ConflictError
from commerce.database.connection import close_db, init_db
from commerce.monitoring.logging import setup_logging

app = typer.Typer(
    name="commerce",
    help="Commerce platform - online store backend",
    add_completion=False,
)

console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    console.print(f"[blue]Starting API on[/blue] {host or settings.api_host}:{port or settings.api_port}")
    uvicorn.run(
        "commerce.api.main:get_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload or settings.debug,
        workers=1 if (reload or settings.debug) else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_db_command() -> None:
    """Create database tables."""

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_run())
    console.print("[green]Database tables created.[/green]")


@app.command("outbox-worker")
def outbox_worker() -> None:
    """Publish outbox events until interrupted."""
    from commerce.workers.outbox_publisher import start_outbox_publisher

    asyncio.run(start_outbox_publisher())


@app.command("recovery-worker")
def recovery_worker(
    once: bool = typer.Option(False, "--once", help="Run a single recovery pass and exit"),
) -> None:
    """Compensate stuck checkouts and expire stale reservations."""
    from commerce.workers.saga_recovery import start_recovery_worker

    asyncio.run(start_recovery_worker(run_once=once))


@app.command()
def reindex() -> None:
    """Rebuild the search index from the catalog."""

    async def _run() -> int:
        await init_db()
        container = build_container()
        try:
            async with container.session_factory() as db:
                return await container.search.reindex_all(db)
        finally:
            await container.close()
            await close_db()

    setup_logging()
    count = asyncio.run(_run())
    console.print(f"[green]Success![/green] Indexed {count} products.")


@app.command("create-admin")
def create_admin(
    email: str = typer.Argument(..., help="Admin email"),
    full_name: str = typer.Option("Administrator", "--name", "-n", help="Display name"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    """Create an admin account, or promote an existing account to admin."""

    async def _run() -> None:
        await init_db()
        container = build_container()
        try:
            async with container.session_factory() as db:
                try:
                    user = await container.users.register(db, email, password, full_name, is_admin=True)
                    created = True
                except ConflictError:
                    user = await container.users.promote_admin(db, email)
                    created = False
        finally:
            await container.close()
            await close_db()

        table = Table(title="Admin account")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("id", str(user.id))
        table.add_row("email", user.email)
        table.add_row("action", "created" if created else "promoted")
        console.print(table)

    try:
        asyncio.run(_run())
    except CommerceError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
