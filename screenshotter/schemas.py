"""Pydantic DTOs returned by the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel, Field

class HistoryEntryModel(BaseModel):
    timestamp: str = Field(description="UTC ISO-8601 time the fingerprint was recorded")
    fingerprint: str = Field(description="8 lowercase hex characters")

class ScreenshotSummary(BaseModel):
    """One published screenshot and its latest fingerprint."""

    index: int = Field(ge=0)
    url: str | None = Field(default=None, description="Configured target URL, when known")
    image_url: str = Field(description="Path serving the published PNG")
    size_bytes: int = Field(ge=0)
    modified: str = Field(description="UTC ISO-8601 modification time of the PNG")
    fingerprint: str | None = None
    fingerprint_timestamp: str | None = None
    history_count: int = Field(default=0, ge=0)


class HealthResponse(BaseModel):
    status: str = "ok"
    pid: int
    uptime_seconds: float = Field(ge=0)
    targets: int = Field(ge=0)
    schedule: str | None = None
    cycle_running: bool = False
