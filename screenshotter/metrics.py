"""Prometheus collectors for capture cycles."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

CAPTURES_TOTAL = Counter(
    "screenshotter_captures_total",
    "Per-target capture attempts by outcome",
    ["outcome"],
)
CYCLES_TOTAL = Counter(
    "screenshotter_cycles_total",
    "Capture cycles by outcome (ok, failed, skipped)",
    ["outcome"],
)
FINGERPRINT_CHANGES_TOTAL = Counter(
    "screenshotter_fingerprint_changes_total",
    "Captures whose fingerprint differed from the previous one",
)
CAPTURE_SECONDS = Histogram(
    "screenshotter_capture_seconds",
    "Wall time to render, transform and publish one target",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)


def record_capture(outcome: str, seconds: float) -> None:
    CAPTURES_TOTAL.labels(outcome=outcome).inc()
    CAPTURE_SECONDS.observe(max(0.0, seconds))


def record_cycle(outcome: str) -> None:
    CYCLES_TOTAL.labels(outcome=outcome).inc()


def record_fingerprint_change() -> None:
    FINGERPRINT_CHANGES_TOTAL.inc()
