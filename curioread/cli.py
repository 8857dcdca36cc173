"""Admin CLI: submit articles, drain the pending queue, run the API server."""
import click
from rich.console import Console
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "ready": "green",
    "errored": "yellow",
    "skip_by_failure": "red",
    "skip_by_admin": "red",
    "bookmarked": "dim",
}


def _controller():
    from curioread.config import get_settings
    from curioread.logs import setup_logging
    from curioread.main import build_controller

    settings = get_settings()
    setup_logging(settings.log_level)
    return build_controller(settings)


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """curioread reading-queue backend."""


@main.command()
@click.option("--user", "-u", "user_id", required=True, help="User id that owns the session")
@click.option("--url", required=True, help="Article URL")
@click.option("--sync", is_flag=True, help="Wait for processing to finish and print the outcome")
def submit(user_id: str, url: str, sync: bool) -> None:
    """Submit an article URL for a user (same path as POST /api/sessions)."""
    controller = _controller()
    try:
        result = controller.submit(user_id, url)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--url")

    console.print(f"Session [bold]{result.session.session_token}[/bold] -> {_styled(result.session.status.value)}")
    if not result.worker_invoked:
        console.print("[dim]Queue is full; the session waits until a slot frees up.[/dim]")
        return
    if sync:
        with console.status("[bold green]Processing..."):
            controller.runner.wait()
        session = controller.session_status(result.session.session_token)
        console.print(f"Final status: {_styled(session.status.value)}")
    controller.runner.shutdown()


@main.command("drain-pending")
@click.option("--limit", "-n", type=int, default=None, help="Stop after this many sessions")
def drain_pending(limit) -> None:
    """Claim and process pending sessions one at a time."""
    controller = _controller()
    with console.status("[bold green]Draining pending sessions..."):
        count = controller.orchestrator.drain_pending(limit)
    console.print(f"Processed {count} pending session(s).")
    controller.runner.shutdown()


@main.command("process-session")
@click.argument("token")
def process_session(token: str) -> None:
    """Run the pipeline for one session synchronously (manual retry)."""
    controller = _controller()
    with console.status(f"[bold green]Processing {token}..."):
        status = controller.orchestrator.retry_session(token)
    if status is None:
        console.print(f"[red]No session with token {token}[/red]")
        raise SystemExit(1)
    console.print(f"{token}: {_styled(status.value)}")
    controller.runner.shutdown()


@main.command()
@click.option("--user", "-u", "user_id", required=True)
def bookmarks(user_id: str) -> None:
    """Show a user's queue, waiting list and archive."""
    controller = _controller()
    view = controller.bookmarks(user_id)

    table = Table(title=f"Bookmarks for {user_id}")
    table.add_column("Section")
    table.add_column("Token")
    table.add_column("Status")
    table.add_column("Title / URL")
    table.add_column("Error")
    for section in ("queue", "waiting", "archived"):
        for entry in view[section]:
            table.add_row(
                section,
                entry["session_token"],
                _styled(entry["status"]),
                entry["article_title"] or entry["article_url"],
                entry["error_message"] or "",
            )
    console.print(table)
    controller.runner.shutdown()


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("curioread.main:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
