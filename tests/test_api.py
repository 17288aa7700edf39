from __future__ import annotations

from pathlib import Path

import pytest

try:  # pragma: no cover - exercised only when libvips missing
    import pyvips  # noqa: F401
except Exception as exc:  # noqa: BLE001
    pytest.skip(f"pyvips unavailable: {exc}", allow_module_level=True)

from fastapi.testclient import TestClient

from screenshotter.history import HistoryStore
from screenshotter.main import build_app
from screenshotter.publish import ArtifactPublisher
from screenshotter.targets import CaptureTarget


def get_client(tmp_path: Path, *, targets: tuple[CaptureTarget, ...] = ()) -> tuple[TestClient, HistoryStore]:
    root = tmp_path / "shots"
    root.mkdir()
    (root / "0.png").write_bytes(b"\x89PNG first")
    (root / "1.png").write_bytes(b"\x89PNG second")
    (root / "1_temp.png").write_bytes(b"\x89PNG partial")
    history = HistoryStore(root / "checksum-history.json")
    app = build_app(ArtifactPublisher(root), history, targets=targets, schedule="*/5 * * * *")
    return TestClient(app), history


def test_serves_published_screenshot(tmp_path: Path) -> None:
    client, _ = get_client(tmp_path)

    response = client.get("/screenshots/0.png")

    assert response.status_code == 200
    assert response.content == b"\x89PNG first"
    assert response.headers["content-type"] == "image/png"


@pytest.mark.parametrize("name", ["1_temp.png", "missing.png", "checksum-history.json"])
def test_temp_and_unknown_files_are_not_served(tmp_path: Path, name: str) -> None:
    client, _ = get_client(tmp_path)

    response = client.get(f"/screenshots/{name}")

    assert response.status_code == 404


def test_list_screenshots_includes_fingerprints(tmp_path: Path) -> None:
    targets = (CaptureTarget(url="https://a.example"), CaptureTarget(url="https://b.example"))
    client, history = get_client(tmp_path, targets=targets)
    history.append(1, "00c0ffee")

    response = client.get("/api/screenshots")

    assert response.status_code == 200
    payload = response.json()
    assert [item["index"] for item in payload] == [0, 1]
    assert payload[0]["fingerprint"] is None
    assert payload[0]["url"] == "https://a.example"
    assert payload[1]["fingerprint"] == "00c0ffee"
    assert payload[1]["history_count"] == 1
    assert payload[1]["image_url"] == "/screenshots/1.png"


def test_target_history(tmp_path: Path) -> None:
    client, history = get_client(tmp_path, targets=(CaptureTarget(url="https://a.example"),))
    history.append(0, "00000001")
    history.append(0, "00000002")

    response = client.get("/api/screenshots/0/history")

    assert response.status_code == 200
    payload = response.json()
    assert isinstance(payload, list)
    assert [entry["fingerprint"] for entry in payload] == ["00000001", "00000002"]
    assert set(payload[0]) == {"timestamp", "fingerprint"}


def test_history_for_configured_target_without_entries(tmp_path: Path) -> None:
    client, _ = get_client(tmp_path, targets=(CaptureTarget(url="https://a.example"),))

    response = client.get("/api/screenshots/0/history")

    assert response.status_code == 200
    assert response.json() == []


def test_history_for_unknown_target(tmp_path: Path) -> None:
    client, _ = get_client(tmp_path)

    response = client.get("/api/screenshots/7/history")

    assert response.status_code == 404


def test_health(tmp_path: Path) -> None:
    client, _ = get_client(tmp_path, targets=(CaptureTarget(url="https://a.example"),))

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["targets"] == 1
    assert payload["schedule"] == "*/5 * * * *"
    assert payload["cycle_running"] is False


def test_gallery_lists_public_images_only(tmp_path: Path) -> None:
    client, history = get_client(tmp_path, targets=(CaptureTarget(url="https://a.example/?x=<b>"),))
    history.append(0, "0badf00d")

    response = client.get("/")

    assert response.status_code == 200
    body = response.text
    assert "/screenshots/0.png" in body
    assert "/screenshots/1.png" in body
    assert "1_temp.png" not in body
    assert "0badf00d" in body
    assert "&lt;b&gt;" in body


def test_metrics_endpoint(tmp_path: Path) -> None:
    client, _ = get_client(tmp_path)
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "screenshotter_cycles_total" in response.text
