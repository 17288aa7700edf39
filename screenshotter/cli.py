"""Command-line entry point: run the capture service or inspect fingerprints."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from screenshotter.archive import ScreenshotArchive
from screenshotter.capture import PlaywrightRenderer, RenderOptions, Renderer
from screenshotter.fingerprint import FingerprintError, pixel_fingerprint, text_fingerprint
from screenshotter.history import HistoryStore
from screenshotter.main import build_app
from screenshotter.publish import ArtifactPublisher
from screenshotter.scheduler import CaptureCycleError, CaptureScheduler
from screenshotter.settings import Settings, get_settings
from screenshotter.targets import AppConfig, ConfigurationError, load_options
from screenshotter.text_extract import extract_text, tree_from_html

LOGGER = logging.getLogger(__name__)

console = Console()
cli = typer.Typer(
    help="Capture dashboards on a schedule and publish change-detectable screenshots.",
    add_completion=False,
)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_renderer(settings: Settings, config: AppConfig) -> Renderer:
    options = RenderOptions.from_settings(
        settings,
        access_token=config.access_token,
        language=config.language,
    )
    return PlaywrightRenderer(options)


def build_scheduler(
    settings: Settings,
    config: AppConfig,
    *,
    renderer: Renderer,
    stop_on_failure: bool = False,
) -> CaptureScheduler:
    history = HistoryStore(settings.paths.history_path, capacity=settings.paths.history_length)
    history.load()
    archive = None
    if settings.archive.enabled:
        archive = ScreenshotArchive(settings.archive.root, retention_hours=settings.archive.retention_hours)
    return CaptureScheduler(
        config.targets,
        renderer,
        history,
        ArtifactPublisher(settings.paths.screenshots_root),
        archive=archive,
        stop_on_failure=stop_on_failure,
    )


async def serve(
    settings: Settings,
    config: AppConfig,
    *,
    run_once: bool,
    port: int,
    host: str,
    exit_on_failure: bool,
) -> int:
    """Run captures (and the web server when ``port`` > 0); return the process exit code."""

    scheduler = build_scheduler(
        settings,
        config,
        renderer=build_renderer(settings, config),
        stop_on_failure=exit_on_failure,
    )

    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    if port > 0:
        app = build_app(
            scheduler.publisher,
            scheduler.history,
            targets=config.targets,
            schedule=None if run_once else config.schedule,
            scheduler=scheduler,
        )
        server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level=settings.log_level.lower(), lifespan="off")
        )
        server_task = asyncio.create_task(server.serve())
        server_task.add_done_callback(lambda _: scheduler.stop())
        LOGGER.info("Web server listening on http://%s:%d", host, port)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, scheduler.stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            LOGGER.debug("Signal handlers unavailable on this platform")
            break

    try:
        if run_once:
            await scheduler.run_once()
        else:
            await scheduler.run_forever(config.schedule)
    except CaptureCycleError as exc:
        LOGGER.error("Capture run failed: %s", exc)
        return 1
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
    return 0


@cli.command()
def run(
    once: Optional[bool] = typer.Option(
        None,
        "--once/--schedule",
        help="Capture every target once and exit (defaults to run_once from the options file).",
    ),
    port: Optional[int] = typer.Option(None, "--port", min=0, help="Web server port (0 disables it)."),
    host: str = typer.Option("0.0.0.0", "--host", help="Web server bind host."),
    env_file: Path = typer.Option(Path(".env"), "--env-file", help="Settings file read with python-decouple."),
    exit_on_failure: bool = typer.Option(
        False,
        "--exit-on-failure/--keep-running",
        help="Stop the schedule and exit non-zero after a failed cycle.",
    ),
) -> None:
    """Run the capture service."""

    settings = get_settings(str(env_file))
    configure_logging(settings.log_level)
    try:
        config = load_options(settings.paths.options_path)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error[/]: {exc}")
        raise typer.Exit(code=2) from exc

    run_once = config.run_once if once is None else once
    web_port = config.webserver_port if port is None else port
    LOGGER.info(
        "Loaded %d target(s); %s",
        len(config.targets),
        "single run" if run_once else f"schedule '{config.schedule}'",
    )
    for index, target in enumerate(config.targets):
        LOGGER.info("  %d. %s (%s)", index + 1, target.url, target.describe())

    exit_code = asyncio.run(
        serve(
            settings,
            config,
            run_once=run_once,
            port=web_port,
            host=host,
            exit_on_failure=exit_on_failure,
        )
    )
    if exit_code:
        raise typer.Exit(code=exit_code)


@cli.command()
def fingerprint(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="PNG, HTML snapshot or text file."),
    text: bool = typer.Option(False, "--text/--pixels", help="Fingerprint visible text instead of pixels."),
) -> None:
    """Print the fingerprint a capture of PATH would record."""

    if text:
        content = path.read_text(encoding="utf-8", errors="replace")
        if path.suffix.lower() in {".html", ".htm"}:
            content = extract_text(tree_from_html(content))
        typer.echo(text_fingerprint(content))
        return
    try:
        typer.echo(pixel_fingerprint(path.read_bytes()))
    except FingerprintError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc


@cli.command()
def history(
    index: int = typer.Argument(..., min=0, help="Zero-based target index."),
    env_file: Path = typer.Option(Path(".env"), "--env-file", help="Settings file read with python-decouple."),
    limit: int = typer.Option(20, min=0, help="Most recent entries to show (0 = all)."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Show the recorded fingerprints for one target."""

    settings = get_settings(str(env_file))
    store = HistoryStore(settings.paths.history_path, capacity=settings.paths.history_length)
    store.load()
    entries = store.get(index)
    if limit:
        entries = entries[-limit:]

    if json_output:
        console.print_json(data=[asdict(entry) for entry in entries])
        return
    if not entries:
        console.print(f"[dim]No fingerprints recorded for target {index}.[/]")
        return

    table = Table("Timestamp", "Fingerprint", "Changed", title=f"Target {index}")
    previous: str | None = None
    for entry in entries:
        changed = previous is not None and previous != entry.fingerprint
        table.add_row(entry.timestamp, entry.fingerprint, "yes" if changed else "")
        previous = entry.fingerprint
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
