"""Typed process settings backed by python-decouple."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "PathSettings",
    "BrowserSettings",
    "TextSettings",
    "ArchiveSettings",
    "Settings",
    "load_config",
    "get_settings",
]

MAX_TEXT_SETTLE_MS = 10_000


@dataclass(frozen=True, slots=True)
class PathSettings:
    """Filesystem layout for published screenshots and their history."""

    screenshots_root: Path
    options_path: Path
    history_filename: str
    history_length: int

    @property
    def history_path(self) -> Path:
        return self.screenshots_root / self.history_filename


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch and page readiness knobs."""

    executable_path: str | None
    playwright_channel: str
    navigation_timeout_ms: int
    ready_timeout_ms: int


@dataclass(frozen=True, slots=True)
class TextSettings:
    """Bounds applied to DOM text extraction."""

    settle_ms: int
    timeout_ms: int
    settle_selectors: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ArchiveSettings:
    """Optional debug archive of original/processed screenshots."""

    enabled: bool
    root: Path
    retention_hours: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    paths: PathSettings
    browser: BrowserSettings
    text: TextSettings
    archive: ArchiveSettings
    log_level: str


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a decouple config for ``env_path``, or the bare environment when it is absent."""

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: str = "") -> tuple[str, ...]:
    raw = cfg(key, default=default)
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=4)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    screenshots_root = Path(cfg("SCREENSHOTS_PATH", default="/media/ha-screenshotter"))
    paths = PathSettings(
        screenshots_root=screenshots_root,
        options_path=Path(cfg("OPTIONS_PATH", default="/data/options.json")),
        history_filename=cfg("HISTORY_FILENAME", default="checksum-history.json"),
        history_length=_int(cfg, "HISTORY_LENGTH", default=500),
    )
    if paths.history_length <= 0:
        raise ValueError("HISTORY_LENGTH must be a positive integer")

    browser = BrowserSettings(
        executable_path=cfg("CHROMIUM_EXECUTABLE", default=None) or None,
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        navigation_timeout_ms=_int(cfg, "NAVIGATION_TIMEOUT_MS", default=30_000),
        ready_timeout_ms=_int(cfg, "READY_TIMEOUT_MS", default=10_000),
    )

    settle_ms = _int(cfg, "TEXT_SETTLE_MS", default=2_000)
    text = TextSettings(
        settle_ms=max(0, min(settle_ms, MAX_TEXT_SETTLE_MS)),
        timeout_ms=_int(cfg, "TEXT_TIMEOUT_MS", default=5_000),
        settle_selectors=_csv_tuple(
            cfg, "TEXT_SETTLE_SELECTORS", default="hui-view,ha-panel-lovelace"
        ),
    )

    archive = ArchiveSettings(
        enabled=_bool(cfg, "ARCHIVE_ENABLED", default=False),
        root=Path(cfg("ARCHIVE_PATH", default=str(screenshots_root.parent / "screenshot-history"))),
        retention_hours=_int(cfg, "ARCHIVE_RETENTION_HOURS", default=48),
    )

    return Settings(
        env_path=env_path,
        paths=paths,
        browser=browser,
        text=text,
        archive=archive,
        log_level=cfg("LOG_LEVEL", default="INFO").upper(),
    )
