"""Bounded per-target fingerprint history persisted as one JSON snapshot."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping

from screenshotter.fingerprint import TEXT_SENTINEL, Fingerprint, is_valid_fingerprint

LOGGER = logging.getLogger(__name__)

HISTORY_LENGTH = 500


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    timestamp: str
    fingerprint: str


@dataclass(frozen=True, slots=True)
class CurrentFingerprint:
    """Latest entry for one target plus how many entries are retained."""

    fingerprint: str
    timestamp: str
    history_count: int


class HistoryStore:
    """In-memory history that is the source of truth, mirrored to ``path``.

    Every append rewrites the full snapshot through a temp file in the same
    directory followed by ``os.replace`` so readers never see a partial file.
    Disk failures are logged and leave the in-memory state untouched.
    """

    def __init__(self, path: Path, *, capacity: int = HISTORY_LENGTH) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.path = path
        self.capacity = capacity
        self._entries: Dict[int, Deque[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def load(self) -> int:
        """Replace in-memory state with the persisted snapshot; return targets loaded."""

        with self._lock:
            self._entries.clear()
            if not self.path.exists():
                LOGGER.info("No fingerprint history at %s; starting fresh", self.path)
                return 0
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                self._entries.update(self._parse_snapshot(raw))
            except (OSError, ValueError) as exc:
                LOGGER.warning("Failed to load fingerprint history from %s: %s; starting empty", self.path, exc)
                self._entries.clear()
                return 0
            LOGGER.info("Loaded fingerprint history for %d target(s)", len(self._entries))
            return len(self._entries)

    def append(
        self,
        index: int,
        fingerprint: Fingerprint | str | None,
        *,
        timestamp: datetime | None = None,
    ) -> HistoryEntry | None:
        """Record ``fingerprint`` for target ``index``; sentinel and missing values are ignored."""

        value = _coerce_value(fingerprint)
        if value is None:
            return None
        moment = timestamp or datetime.now(timezone.utc)
        entry = HistoryEntry(timestamp=_isoformat(moment), fingerprint=value)
        with self._lock:
            history = self._entries.get(index)
            if history is None:
                history = deque(maxlen=self.capacity)
                self._entries[index] = history
            history.append(entry)
            payload = self._snapshot_payload()
        self._persist(payload)
        return entry

    def get(self, index: int) -> List[HistoryEntry]:
        with self._lock:
            return list(self._entries.get(index, ()))

    def get_current(self, index: int) -> str | None:
        with self._lock:
            history = self._entries.get(index)
            if not history:
                return None
            return history[-1].fingerprint

    def current_summary(self) -> Dict[int, CurrentFingerprint]:
        with self._lock:
            return {
                index: CurrentFingerprint(
                    fingerprint=history[-1].fingerprint,
                    timestamp=history[-1].timestamp,
                    history_count=len(history),
                )
                for index, history in sorted(self._entries.items())
                if history
            }

    def snapshot(self) -> Dict[str, List[Dict[str, str]]]:
        with self._lock:
            return self._snapshot_payload()

    def _snapshot_payload(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            str(index): [asdict(entry) for entry in history]
            for index, history in sorted(self._entries.items())
        }

    def _persist(self, payload: Mapping[str, Any]) -> None:
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2))
        except OSError as exc:
            LOGGER.warning("Failed to save fingerprint history to %s: %s", self.path, exc)

    def _parse_snapshot(self, raw: Any) -> Dict[int, Deque[HistoryEntry]]:
        if not isinstance(raw, Mapping):
            raise ValueError("history file must contain a JSON object")
        parsed: Dict[int, Deque[HistoryEntry]] = {}
        for key, items in raw.items():
            index = int(key)
            if not isinstance(items, list):
                raise ValueError(f"history for target {key} must be an array")
            history: Deque[HistoryEntry] = deque(maxlen=self.capacity)
            for item in items:
                if not isinstance(item, Mapping):
                    continue
                # Files written before the rename used "crc32" as the key.
                value = item.get("fingerprint", item.get("crc32"))
                timestamp = item.get("timestamp")
                if is_valid_fingerprint(value) and isinstance(timestamp, str):
                    history.append(HistoryEntry(timestamp=timestamp, fingerprint=value))
            parsed[index] = history
        return parsed


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a sibling temp file, fsync, then rename over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _coerce_value(fingerprint: Fingerprint | str | None) -> str | None:
    if fingerprint is None:
        return None
    if isinstance(fingerprint, Fingerprint):
        if fingerprint.is_sentinel:
            return None
        value = fingerprint.value
    else:
        if fingerprint == TEXT_SENTINEL:
            return None
        value = fingerprint
    if not is_valid_fingerprint(value):
        LOGGER.warning("Refusing to record malformed fingerprint %r", value)
        return None
    return value


def _isoformat(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
