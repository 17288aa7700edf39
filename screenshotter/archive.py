"""Time-stamped debug archive of original and processed screenshots."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Mapping

LOGGER = logging.getLogger(__name__)

RETENTION_HOURS = 48
_STAMP_FORMAT = "%Y%m%d-%H%M%S"
_ARCHIVE_NAME = re.compile(
    r"^url\d+-(?P<stamp>\d{8}-\d{6})-(?P<fingerprint>.+?)-(?:original|processed|metadata)\.(?:png|json)$"
)


@dataclass(frozen=True, slots=True)
class ArchivedCapture:
    original: Path
    processed: Path
    metadata: Path


class ScreenshotArchive:
    """Flat directory of ``url{index:03d}-{stamp}-{fingerprint}-*`` files (stamps are UTC)."""

    def __init__(self, root: Path, *, retention_hours: int = RETENTION_HOURS) -> None:
        self.root = root
        self.retention = timedelta(hours=retention_hours)

    def base_name(self, index: int, fingerprint: str | None, when: datetime) -> str:
        stamp = _as_utc(when).strftime(_STAMP_FORMAT)
        return f"url{index:03d}-{stamp}-{fingerprint or 'nocrc'}"

    def save(
        self,
        index: int,
        original: bytes,
        processed: bytes,
        metadata: Mapping[str, Any],
        *,
        fingerprint: str | None = None,
        when: datetime | None = None,
    ) -> ArchivedCapture:
        moment = when or datetime.now(timezone.utc)
        base = self.base_name(index, fingerprint, moment)
        self.root.mkdir(parents=True, exist_ok=True)
        archived = ArchivedCapture(
            original=self.root / f"{base}-original.png",
            processed=self.root / f"{base}-processed.png",
            metadata=self.root / f"{base}-metadata.json",
        )
        archived.original.write_bytes(original)
        archived.processed.write_bytes(processed)
        archived.metadata.write_text(json.dumps(dict(metadata), indent=2, default=str), encoding="utf-8")
        return archived

    def cleanup(self, now: datetime | None = None) -> List[Path]:
        """Delete archive files whose timestamp is older than the retention period."""

        if not self.root.is_dir():
            return []
        cutoff = _as_utc(now or datetime.now(timezone.utc)) - self.retention
        removed: List[Path] = []
        for entry in self.root.iterdir():
            match = _ARCHIVE_NAME.match(entry.name)
            if not match:
                continue
            stamp = datetime.strptime(match.group("stamp"), _STAMP_FORMAT).replace(tzinfo=timezone.utc)
            if stamp >= cutoff:
                continue
            try:
                entry.unlink()
            except OSError as exc:
                LOGGER.warning("Failed to remove archived file %s: %s", entry, exc)
                continue
            removed.append(entry)
        if removed:
            LOGGER.info("Removed %d expired archive file(s)", len(removed))
        return removed


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
