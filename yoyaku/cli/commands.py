"""Yoyaku CLI commands for running the server and operating the booking data."""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from yoyaku.errors import YoyakuError

app = typer.Typer(help="Yoyaku meeting booking CLI", no_args_is_help=True)
console = Console()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


async def _with_orchestrator(work):
    """Open the database, run ``work(orchestrator)`` and tear everything down."""
    from yoyaku.database import close_db, init_db
    from yoyaku.orchestrator import Orchestrator

    await init_db()
    orch = Orchestrator()
    try:
        return await work(orch)
    finally:
        await orch.shutdown()
        await close_db()


def _fail(exc: YoyakuError) -> None:
    console.print(f"[red]✗ {exc.message}[/red] [dim]({exc.code})[/dim]")
    raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: API_PORT)"),
) -> None:
    """Start the API server."""
    import uvicorn

    from yoyaku.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "yoyaku.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.yoyaku_env == "development",
        log_level=settings.yoyaku_log_level.lower(),
    )


@app.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""
    from yoyaku.database import close_db, init_db

    async def _init():
        await init_db()
        await close_db()

    _async_run(_init())
    console.print("[green]✓[/green] Database ready")


@app.command()
def sync(admin_id: str = typer.Argument(..., help="User id of the admin whose calendar to read")) -> None:
    """Pull an admin's tagged calendar events into availability blocks."""

    async def _sync(orch):
        return await orch.availability.sync(admin_id)

    try:
        result = _async_run(_with_orchestrator(_sync))
    except YoyakuError as exc:
        _fail(exc)
    console.print(f"[green]✓[/green] Synced {result.synced} blocks, removed {result.removed}")


@app.command()
def slots() -> None:
    """Show the bookable slots."""

    async def _slots(orch):
        return await orch.slots.derive_slots()

    try:
        found = _async_run(_with_orchestrator(_slots))
    except YoyakuError as exc:
        _fail(exc)

    if not found:
        console.print("[yellow]No bookable slots.[/yellow]")
        return

    table = Table(title="Slots (UTC)")
    table.add_column("Block", style="dim", no_wrap=True)
    table.add_column("Admin", style="green")
    table.add_column("Start", style="cyan")
    table.add_column("End", style="cyan")
    table.add_column("Reservations", style="magenta")
    for slot in found:
        booked = ", ".join(f"{r.title} ({len(r.participants)})" for r in slot.reservations)
        table.add_row(
            slot.block_id[:8] + "...",
            (slot.admin.name or slot.admin.email) if slot.admin else "",
            slot.start_time.strftime("%Y-%m-%d %H:%M"),
            slot.end_time.strftime("%H:%M"),
            booked,
        )
    console.print(table)
    console.print(f"\nTotal: {len(found)} slots")


@app.command()
def promote(
    user_id: str = typer.Argument(..., help="User id to change"),
    demote: bool = typer.Option(False, "--demote", help="Make the user a member instead"),
) -> None:
    """Grant (or revoke) the admin role."""
    from yoyaku.security.identity import Role

    role = Role.MEMBER if demote else Role.ADMIN

    async def _promote(orch):
        return await orch.users.grant_role(user_id, role)

    try:
        user = _async_run(_with_orchestrator(_promote))
    except YoyakuError as exc:
        _fail(exc)
    console.print(f"[green]✓[/green] {user.email} is now {role.value}")


@app.command()
def version() -> None:
    """Show Yoyaku version."""
    from yoyaku import __version__

    console.print(f"[bold cyan]Yoyaku[/bold cyan] version [green]{__version__}[/green]")


if __name__ == "__main__":
    app()
