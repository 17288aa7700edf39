"""Capture cycles: render, transform, fingerprint and publish every target in order."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Sequence, Set

from croniter import croniter

from screenshotter import metrics
from screenshotter.archive import ScreenshotArchive
from screenshotter.capture import RenderedPage, Renderer
from screenshotter.fingerprint import Fingerprint, FingerprintError, compute_fingerprint
from screenshotter.history import HistoryStore
from screenshotter.pipeline import Raster, check_crop, encode_png, load_image, transform
from screenshotter.publish import ArtifactPublisher
from screenshotter.targets import CaptureTarget, ConfigurationError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TargetOutcome:
    """Result of processing one target within a cycle."""

    index: int
    url: str
    ok: bool
    fingerprint: str | None = None
    method: str | None = None
    changed: bool = False
    error: str | None = None
    path: Path | None = None
    duration_s: float = 0.0


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> List[TargetOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


class CaptureCycleError(RuntimeError):
    """Raised after a cycle in which at least one target failed."""

    def __init__(self, report: CycleReport) -> None:
        self.report = report
        failures = "; ".join(f"{item.url}: {item.error}" for item in report.failed)
        super().__init__(
            f"{len(report.failed)} of {len(report.outcomes)} target(s) failed: {failures}"
        )


@dataclass(slots=True)
class _Processed:
    encoded: bytes
    raster: Raster
    fingerprint: Fingerprint | None


class CaptureScheduler:
    """Runs capture cycles, at most one at a time.

    The guard is checked without waiting: a trigger that arrives while a
    cycle is running is logged and dropped rather than queued.
    """

    def __init__(
        self,
        targets: Sequence[CaptureTarget],
        renderer: Renderer,
        history: HistoryStore,
        publisher: ArtifactPublisher,
        *,
        archive: ScreenshotArchive | None = None,
        stop_on_failure: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.targets = tuple(targets)
        self.history = history
        self.publisher = publisher
        self.archive = archive
        self.stop_on_failure = stop_on_failure
        self.last_report: CycleReport | None = None
        self._renderer = renderer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._guard = asyncio.Lock()
        self._stop = asyncio.Event()
        self._tasks: Set[asyncio.Task[CycleReport | None]] = set()
        self._fatal: CaptureCycleError | None = None

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    async def run_cycle(self) -> CycleReport | None:
        """Capture every target once; ``None`` when another cycle already holds the guard."""

        if self._guard.locked():
            LOGGER.info("Capture cycle already in progress; skipping this trigger")
            metrics.record_cycle("skipped")
            return None

        async with self._guard:
            report = CycleReport(started_at=self._clock())
            LOGGER.info("Starting capture cycle for %d target(s)", len(self.targets))
            for index, target in enumerate(self.targets):
                report.outcomes.append(await self.capture_target(index, target))
            await self._cleanup_archive()
            report.finished_at = self._clock()
            self.last_report = report

        LOGGER.info(
            "Capture cycle finished: %d succeeded, %d failed",
            report.succeeded,
            len(report.failed),
        )
        if not report.ok:
            metrics.record_cycle("failed")
            raise CaptureCycleError(report)
        metrics.record_cycle("ok")
        return report

    async def run_once(self) -> CycleReport | None:
        return await self.run_cycle()

    def trigger(self) -> asyncio.Task[CycleReport | None]:
        """Start a cycle in the background and return its task."""

        task = asyncio.create_task(self._run_triggered())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_forever(self, schedule: str, *, run_immediately: bool = True) -> None:
        """Fire ``trigger`` on every match of the cron ``schedule`` until ``stop`` is called."""

        if not croniter.is_valid(schedule):
            raise ConfigurationError(f"Invalid schedule: {schedule!r}. Must be a cron string.")

        self._stop.clear()
        LOGGER.info("Scheduling captures with cron pattern '%s'", schedule)
        if run_immediately:
            self.trigger()

        fire_times = croniter(schedule, self._clock())
        while not self._stop.is_set():
            now = self._clock()
            next_fire = fire_times.get_next(datetime)
            while next_fire <= now:
                next_fire = fire_times.get_next(datetime)
            delay = (next_fire - now).total_seconds()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                self.trigger()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        self._stop.set()

    async def capture_target(self, index: int, target: CaptureTarget) -> TargetOutcome:
        """Process one target; failures are reported in the outcome, never raised."""

        LOGGER.info(
            "[%d/%d] Capturing %s (%s)",
            index + 1,
            len(self.targets),
            target.url,
            target.describe(),
        )
        start = time.perf_counter()
        try:
            outcome = await self._capture(index, target)
        except Exception as exc:  # noqa: BLE001 - one target never aborts the cycle
            LOGGER.error("[%d/%d] Failed to capture %s: %s", index + 1, len(self.targets), target.url, exc)
            outcome = TargetOutcome(index=index, url=target.url, ok=False, error=str(exc) or type(exc).__name__)
        outcome.duration_s = time.perf_counter() - start
        metrics.record_capture("ok" if outcome.ok else "failed", outcome.duration_s)
        return outcome

    async def _run_triggered(self) -> CycleReport | None:
        try:
            return await self.run_cycle()
        except CaptureCycleError as exc:
            LOGGER.error("Capture cycle failed: %s", exc)
            if self.stop_on_failure:
                self._fatal = exc
                self.stop()
        except Exception as exc:  # noqa: BLE001 - the schedule keeps firing
            LOGGER.exception("Capture cycle crashed: %s", exc)
        return None

    async def _capture(self, index: int, target: CaptureTarget) -> TargetOutcome:
        rendered = await self._renderer(target)
        processed = await asyncio.to_thread(self._process, index, target, rendered)
        paths = self.publisher.paths(index)

        fingerprint = processed.fingerprint
        outcome = TargetOutcome(index=index, url=target.url, ok=True, path=paths.public)
        if fingerprint is not None and fingerprint.is_sentinel:
            outcome.method = fingerprint.method.value
            LOGGER.info("No text found on %s; fingerprint not recorded", target.url)
        elif fingerprint is not None:
            await self._record(index, target, fingerprint, outcome)

        await self._archive(index, target, rendered, processed, outcome)
        return outcome

    async def _record(
        self,
        index: int,
        target: CaptureTarget,
        fingerprint: Fingerprint,
        outcome: TargetOutcome,
    ) -> None:
        paths = self.publisher.paths(index)
        outcome.fingerprint = fingerprint.value
        outcome.method = fingerprint.method.value
        previous = self.history.get_current(index)
        try:
            await asyncio.to_thread(self.publisher.write_sidecar, index, fingerprint.value)
        except OSError as exc:
            LOGGER.warning("Failed to write fingerprint sidecar %s: %s", paths.sidecar, exc)
        entry = await asyncio.to_thread(self.history.append, index, fingerprint)

        if entry is not None and previous != fingerprint.value:
            outcome.changed = True
            metrics.record_fingerprint_change()
            LOGGER.info(
                "Fingerprint for %s changed: %s -> %s (%s)",
                target.url,
                previous or "none",
                fingerprint.value,
                fingerprint.method.value,
            )
        else:
            LOGGER.info("Fingerprint for %s unchanged: %s", target.url, fingerprint.value)

    def _process(self, index: int, target: CaptureTarget, rendered: RenderedPage) -> _Processed:
        image = load_image(rendered.png_bytes)
        check_crop(target.crop, image.width, image.height)
        with self.publisher.stage(index) as staged:
            raster = transform(image, target)
            encoded = encode_png(raster)
            fingerprint = self._fingerprint(encoded, rendered.text, target)
            staged.write(encoded)
        return _Processed(encoded=encoded, raster=raster, fingerprint=fingerprint)

    def _fingerprint(self, encoded: bytes, text: str | None, target: CaptureTarget) -> Fingerprint | None:
        try:
            return compute_fingerprint(encoded, text, use_text=target.use_text_fingerprint)
        except FingerprintError as exc:
            LOGGER.warning("Fingerprint unavailable for %s: %s", target.url, exc)
            return None

    async def _archive(
        self,
        index: int,
        target: CaptureTarget,
        rendered: RenderedPage,
        processed: _Processed,
        outcome: TargetOutcome,
    ) -> None:
        if self.archive is None:
            return
        metadata = {
            "index": index,
            "url": target.url,
            "timestamp": self._clock().isoformat(),
            "settings": target.describe(),
            "fingerprint": outcome.fingerprint,
            "method": outcome.method,
            "changed": outcome.changed,
            "width": processed.raster.width,
            "height": processed.raster.height,
            "bit_depth": processed.raster.bit_depth,
            "capture_ms": rendered.capture_ms,
        }
        try:
            await asyncio.to_thread(
                self.archive.save,
                index,
                rendered.png_bytes,
                processed.encoded,
                metadata,
                fingerprint=outcome.fingerprint,
            )
        except OSError as exc:
            LOGGER.warning("Failed to archive capture of %s: %s", target.url, exc)

    async def _cleanup_archive(self) -> None:
        if self.archive is None:
            return
        try:
            await asyncio.to_thread(self.archive.cleanup)
        except OSError as exc:
            LOGGER.warning("Archive cleanup failed: %s", exc)
