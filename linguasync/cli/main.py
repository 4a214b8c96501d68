"""
CLI entry point for linguasync.
"""

# Standard library imports
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

# Third-party imports
import httpx
import typer
from rich.console import Console
from rich.table import Table

# Local application imports
from linguasync.config import Settings, get_settings
from linguasync.constants import NARRATION_MODES, THEME_MODES
from linguasync.diagnostics import CheckStep, run_connection_check
from linguasync.exceptions import LinguaSyncError
from linguasync.insights import summarize
from linguasync.logging_config import configure_logging
from linguasync.models import ProgressDocument
from linguasync.runtime import SyncRuntime

T = TypeVar("T")

console = Console()

app = typer.Typer(
    name="linguasync",
    help="Lingua Avventura progress sync: sessions and learning progress.",
    add_completion=False,
    rich_markup_mode="markdown",
)
progress_app = typer.Typer(help="Inspect and update learning progress.")
app.add_typer(progress_app, name="progress")


_storage_option = typer.Option(  # noqa: B008
    None,
    "--storage",
    help="Path to the local store. Overrides LINGUA_STORAGE_PATH.",
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
):
    """Configure logging before any command runs."""
    configure_logging("DEBUG" if verbose else None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(storage: Optional[Path]) -> Settings:
    """Read settings, applying the --storage override. Exits on invalid
    configuration."""
    try:
        settings = get_settings()
    except RuntimeError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)
    if storage is not None:
        settings = settings.model_copy(update={"storage_path": storage})
    return settings


def _run(
    settings: Settings, action: Callable[[SyncRuntime], Awaitable[T]]
) -> T:
    """Run `action` inside a SyncRuntime on a fresh event loop. Library
    errors are printed and turned into exit code 1."""

    async def runner() -> T:
        async with SyncRuntime(settings) as runtime:
            return await action(runtime)

    try:
        return asyncio.run(runner())
    except (LinguaSyncError, ValueError) as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)


def _mutate(
    storage: Optional[Path],
    mutation: Callable[[SyncRuntime], Awaitable[ProgressDocument]],
) -> ProgressDocument:
    """Load progress, apply `mutation` and write it out before exiting."""

    async def action(runtime: SyncRuntime) -> ProgressDocument:
        await runtime.progress.load_progress()
        document = await mutation(runtime)
        await runtime.progress.flush(immediate=True)
        return document

    return _run(_load_settings(storage), action)


def _print_summary(document: ProgressDocument, backend_name: str) -> None:
    summary = summarize(document)
    table = Table(title=f"Progress ({backend_name} backend)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Level", str(summary.level))
    table.add_row("XP", f"{summary.xp_in_level} / {summary.xp_per_level} (total {summary.xp})")  # noqa: E501
    table.add_row("Streak", f"{summary.streak} day(s)")
    table.add_row("Words learned", str(summary.words_learned))
    table.add_row("Words with errors", str(summary.words_with_errors))
    for kind, count in sorted(summary.completions.items()):
        table.add_row(f"Completed: {kind}", str(count))
    table.add_row("Narration", document.settings.narration_mode)
    table.add_row("Theme", document.settings.theme)
    table.add_row("Last active", document.last_active.isoformat())
    console.print(table)


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


@app.command()
def signup(
    email: str = typer.Argument(..., help="Account e-mail."),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True
    ),
    storage: Optional[Path] = _storage_option,
):
    """Create an account on the remote backend."""

    async def action(runtime: SyncRuntime):
        return await runtime.session_store.sign_up(email, password)

    session = _run(_load_settings(storage), action)
    if session is None:
        console.print(
            "[yellow]Account created. Confirm your e-mail, then log in.[/yellow]"
        )
    else:
        console.print(f"[bold green]Signed up as {email}.[/bold green]")


@app.command()
def login(
    email: str = typer.Argument(..., help="Account e-mail."),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    storage: Optional[Path] = _storage_option,
):
    """Sign in and keep the session in the local store."""

    async def action(runtime: SyncRuntime):
        return await runtime.session_store.sign_in(email, password)

    session = _run(_load_settings(storage), action)
    shown = session.user.email if session.user else email
    console.print(f"[bold green]Signed in as {shown}.[/bold green]")


@app.command()
def logout(storage: Optional[Path] = _storage_option):
    """Sign out and forget the local session."""

    async def action(runtime: SyncRuntime):
        await runtime.session_store.sign_out()

    _run(_load_settings(storage), action)
    console.print("[green]Signed out.[/green]")


@app.command()
def whoami(storage: Optional[Path] = _storage_option):
    """Show the signed-in user, refreshing the session if needed."""

    async def action(runtime: SyncRuntime):
        return await runtime.session_store.get_current_identity()

    identity = _run(_load_settings(storage), action)
    if identity is None:
        console.print("[yellow]Not signed in.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"{identity.email or '(no e-mail)'} [dim]({identity.id})[/dim]")


@app.command()
def check(storage: Optional[Path] = _storage_option):
    """
    Validate the remote configuration and check the backend's health
    endpoint. Exits with 1 if any step did not pass.
    """
    settings = _load_settings(storage)

    async def run_checks() -> List[CheckStep]:
        async with httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        ) as client:
            return await run_connection_check(settings, client)

    steps = asyncio.run(run_checks())
    table = Table(title="Remote backend check")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Details")
    colors = {"passed": "green", "failed": "red", "blocked": "yellow"}
    for step in steps:
        color = colors[step.status]
        table.add_row(step.name, f"[{color}]{step.status}[/{color}]", step.details)
    console.print(table)
    if any(step.status != "passed" for step in steps):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Progress commands
# ---------------------------------------------------------------------------


@progress_app.command("show")
def progress_show(storage: Optional[Path] = _storage_option):
    """Load progress (applying migrations and the daily streak) and print it."""

    async def action(runtime: SyncRuntime):
        document = await runtime.progress.load_progress()
        return document, runtime.backend.name

    document, backend_name = _run(_load_settings(storage), action)
    _print_summary(document, backend_name)


@progress_app.command("xp")
def progress_xp(
    amount: int = typer.Argument(..., min=0, help="XP to award."),
    storage: Optional[Path] = _storage_option,
):
    """Award XP."""
    document = _mutate(storage, lambda rt: rt.progress.award_xp(amount))
    console.print(f"[green]XP is now {document.xp}.[/green]")


@progress_app.command("learn")
def progress_learn(
    word: str = typer.Argument(..., help="Word to mark as learned."),
    storage: Optional[Path] = _storage_option,
):
    """Mark a word as learned."""
    document = _mutate(storage, lambda rt: rt.progress.mark_learned(word))
    console.print(
        f"[green]'{word}' learned {document.words_learned[word]} time(s); "
        f"XP is now {document.xp}.[/green]"
    )


@progress_app.command("error")
def progress_error(
    word: str = typer.Argument(..., help="Word that was answered wrongly."),
    storage: Optional[Path] = _storage_option,
):
    """Record a mistake on a word."""
    document = _mutate(storage, lambda rt: rt.progress.mark_error(word))
    console.print(
        f"[yellow]'{word}' has {document.errors[word]} recorded error(s).[/yellow]"
    )


@progress_app.command("complete")
def progress_complete(
    kind: str = typer.Argument(..., help="Activity kind, e.g. quiz."),
    by: int = typer.Option(1, "--by", min=0, help="Increment."),
    storage: Optional[Path] = _storage_option,
):
    """Count completed activities."""
    document = _mutate(
        storage, lambda rt: rt.progress.increment_completion(kind, by)
    )
    console.print(f"[green]{kind}: {document.completions[kind]}[/green]")


@progress_app.command("narration")
def progress_narration(
    mode: str = typer.Argument(..., help=f"Narration language: {', '.join(NARRATION_MODES)}."),  # noqa: E501
    storage: Optional[Path] = _storage_option,
):
    """Set the narration language."""
    _mutate(storage, lambda rt: rt.progress.set_narration_mode(mode))
    console.print(f"[green]Narration set to {mode}.[/green]")


@progress_app.command("theme")
def progress_theme(
    theme: str = typer.Argument(..., help=f"Theme: {', '.join(THEME_MODES)}."),
    storage: Optional[Path] = _storage_option,
):
    """Set the UI theme preference."""
    _mutate(storage, lambda rt: rt.progress.set_theme_mode(theme))
    console.print(f"[green]Theme set to {theme}.[/green]")


@progress_app.command("reset")
def progress_reset(
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Do not ask for confirmation."
    ),
    storage: Optional[Path] = _storage_option,
):
    """Replace all progress with a fresh default document."""
    if not yes:
        typer.confirm("Erase all progress?", abort=True)

    async def action(runtime: SyncRuntime):
        return await runtime.progress.reset_all()

    _run(_load_settings(storage), action)
    console.print("[bold green]Progress reset.[/bold green]")


if __name__ == "__main__":
    app()
