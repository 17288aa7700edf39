from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from screenshotter.archive import ScreenshotArchive


def test_save_writes_original_processed_and_metadata(tmp_path: Path) -> None:
    archive = ScreenshotArchive(tmp_path / "history")
    when = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

    saved = archive.save(3, b"orig", b"proc", {"url": "https://a.example"}, fingerprint="0badcafe", when=when)

    assert saved.original.name == "url003-20260304-050607-0badcafe-original.png"
    assert saved.processed.read_bytes() == b"proc"
    assert json.loads(saved.metadata.read_text(encoding="utf-8")) == {"url": "https://a.example"}


def test_missing_fingerprint_uses_placeholder(tmp_path: Path) -> None:
    archive = ScreenshotArchive(tmp_path)
    when = datetime(2026, 1, 1, tzinfo=timezone.utc)

    assert archive.base_name(0, None, when) == "url000-20260101-000000-nocrc"


def test_cleanup_removes_only_expired_archive_files(tmp_path: Path) -> None:
    archive = ScreenshotArchive(tmp_path, retention_hours=48)
    now = datetime(2026, 6, 10, 12, 0, 0, tzinfo=timezone.utc)
    old = archive.save(0, b"a", b"b", {}, fingerprint="00000001", when=now - timedelta(hours=49))
    fresh = archive.save(0, b"a", b"b", {}, fingerprint="00000002", when=now - timedelta(hours=47))
    unrelated = tmp_path / "notes.txt"
    unrelated.write_text("keep", encoding="utf-8")

    removed = archive.cleanup(now=now)

    assert sorted(removed) == sorted([old.original, old.processed, old.metadata])
    assert fresh.original.exists() and fresh.metadata.exists()
    assert unrelated.exists()


def test_cleanup_without_directory_is_noop(tmp_path: Path) -> None:
    assert ScreenshotArchive(tmp_path / "missing").cleanup() == []
