"""FastAPI surface serving published screenshots, history and health."""

from __future__ import annotations

import html
import logging
import os
import time
from datetime import datetime, timezone
from typing import Sequence

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import FileResponse, HTMLResponse
from prometheus_fastapi_instrumentator import Instrumentator

from screenshotter import __version__
from screenshotter.history import HistoryStore
from screenshotter.publish import ArtifactPublisher, PublishedArtifact
from screenshotter.scheduler import CaptureScheduler
from screenshotter.schemas import (
    HealthResponse,
    HistoryEntryModel,
    ScreenshotSummary,
)
from screenshotter.targets import CaptureTarget

LOGGER = logging.getLogger(__name__)


def build_app(
    publisher: ArtifactPublisher,
    history: HistoryStore,
    *,
    targets: Sequence[CaptureTarget] = (),
    schedule: str | None = None,
    scheduler: CaptureScheduler | None = None,
) -> FastAPI:
    """Create the app; all state lives on ``app.state``."""

    app = FastAPI(title="Dashboard Screenshotter", version=__version__)
    app.state.publisher = publisher
    app.state.history = history
    app.state.targets = tuple(targets)
    app.state.schedule = schedule
    app.state.scheduler = scheduler
    app.state.started = time.monotonic()

    instrumentator = Instrumentator()
    instrumentator.instrument(app)
    try:
        instrumentator.expose(app, include_in_schema=False, should_gzip=True)
    except ValueError:  # pragma: no cover - already registered
        LOGGER.debug("Prometheus /metrics endpoint already exposed")

    @app.get("/", response_class=HTMLResponse)
    async def gallery(request: Request) -> str:
        """Render every published screenshot with its current fingerprint."""

        return _render_gallery(_summaries(request.app))

    @app.get("/screenshots/{name:path}")
    async def screenshot(name: str, request: Request) -> FileResponse:
        try:
            target = request.app.state.publisher.resolve_public(name)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found") from exc
        return FileResponse(target, headers={"Cache-Control": "no-cache"})

    @app.get("/api/screenshots", response_model=list[ScreenshotSummary])
    async def list_screenshots(request: Request) -> list[ScreenshotSummary]:
        return _summaries(request.app)

    @app.get("/api/screenshots/{index}/history", response_model=list[HistoryEntryModel])
    async def target_history(index: int, request: Request) -> list[HistoryEntryModel]:
        """Return the recorded fingerprints for one target, oldest first."""

        entries = request.app.state.history.get(index)
        if not entries and index >= len(request.app.state.targets):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown target")
        return [HistoryEntryModel(timestamp=item.timestamp, fingerprint=item.fingerprint) for item in entries]

    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def healthcheck(request: Request) -> HealthResponse:
        state = request.app.state
        return HealthResponse(
            pid=os.getpid(),
            uptime_seconds=round(time.monotonic() - state.started, 3),
            targets=len(state.targets),
            schedule=state.schedule,
            cycle_running=bool(state.scheduler and state.scheduler.is_running),
        )

    return app


def _summaries(app: FastAPI) -> list[ScreenshotSummary]:
    publisher: ArtifactPublisher = app.state.publisher
    current = app.state.history.current_summary()
    targets: tuple[CaptureTarget, ...] = app.state.targets
    summaries = []
    for artifact in publisher.list_published():
        latest = current.get(artifact.index)
        summaries.append(
            ScreenshotSummary(
                index=artifact.index,
                url=targets[artifact.index].url if artifact.index < len(targets) else None,
                image_url=f"/screenshots/{artifact.path.name}",
                size_bytes=artifact.size,
                modified=_iso(artifact),
                fingerprint=latest.fingerprint if latest else None,
                fingerprint_timestamp=latest.timestamp if latest else None,
                history_count=latest.history_count if latest else 0,
            )
        )
    return summaries


def _iso(artifact: PublishedArtifact) -> str:
    return datetime.fromtimestamp(artifact.modified, tz=timezone.utc).isoformat(timespec="seconds")


def _render_gallery(summaries: Sequence[ScreenshotSummary]) -> str:
    if summaries:
        cards = "\n".join(_render_card(summary) for summary in summaries)
    else:
        cards = '<p class="empty">No screenshots published yet.</p>'
    return f"""
<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta http-equiv="refresh" content="60" />
    <title>Dashboard Screenshotter</title>
    <style>
      body {{
        font-family: system-ui, -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
        margin: 1.5rem;
        background: #0f1115;
        color: #f2f4f8;
      }}
      .grid {{
        display: grid;
        grid-template-columns: repeat(auto-fill, minmax(320px, 1fr));
        gap: 1rem;
      }}
      .card {{
        border: 1px solid #333a45;
        background: #1b1f27;
        padding: 0.75rem;
      }}
      .card img {{
        display: block;
        max-width: 100%;
      }}
      .meta {{
        margin-top: 0.5rem;
        font-size: 0.85rem;
      }}
      .meta code {{
        background: #272c36;
        padding: 0.15rem 0.35rem;
        border-radius: 0.25rem;
      }}
    </style>
  </head>
  <body>
    <h1>Dashboard Screenshotter</h1>
    <main class="grid">
{cards}
    </main>
  </body>
</html>
"""


def _render_card(summary: ScreenshotSummary) -> str:
    image_url = html.escape(summary.image_url, quote=True)
    label = html.escape(summary.url or f"Target {summary.index}")
    fingerprint = html.escape(summary.fingerprint or "n/a")
    return f"""      <section class="card">
        <a href="{image_url}"><img src="{image_url}" alt="Screenshot {summary.index}" loading="lazy" /></a>
        <div class="meta">
          <p><strong>{label}</strong></p>
          <p>Fingerprint: <code>{fingerprint}</code> ({summary.history_count} recorded)</p>
          <p>Updated: {html.escape(summary.modified)}</p>
        </div>
      </section>"""
