from __future__ import annotations

import json
from pathlib import Path

import pytest

try:  # pragma: no cover - exercised only when libvips missing
    import pyvips
except Exception as exc:  # noqa: BLE001
    pytest.skip(f"pyvips unavailable: {exc}", allow_module_level=True)

from typer.testing import CliRunner

from screenshotter import cli as cli_module
from screenshotter.capture import RenderedPage, RenderError
from screenshotter.fingerprint import pixel_fingerprint
from screenshotter.history import HistoryStore
from screenshotter.targets import CaptureTarget

runner = CliRunner()


def _write_env(tmp_path: Path, options: dict | None = None) -> Path:
    shots = tmp_path / "shots"
    options_path = tmp_path / "options.json"
    if options is not None:
        options_path.write_text(json.dumps(options), encoding="utf-8")
    env_file = tmp_path / ".env"
    env_file.write_text(
        f"SCREENSHOTS_PATH={shots}\nOPTIONS_PATH={options_path}\nLOG_LEVEL=WARNING\n",
        encoding="utf-8",
    )
    return env_file


class StubRenderer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def __call__(self, target: CaptureTarget) -> RenderedPage:
        self.calls.append(target.url)
        if self.fail:
            raise RenderError(f"Failed to render {target.url}: net::ERR_NAME_NOT_RESOLVED")
        image = pyvips.Image.black(target.width, target.height, bands=3)
        return RenderedPage(png_bytes=image.pngsave_buffer())


def test_fingerprint_of_png(tmp_path: Path) -> None:
    png = pyvips.Image.black(4, 4).pngsave_buffer()
    path = tmp_path / "shot.png"
    path.write_bytes(png)

    result = runner.invoke(cli_module.cli, ["fingerprint", str(path)])

    assert result.exit_code == 0, result.output
    assert result.output.strip() == pixel_fingerprint(png)


def test_fingerprint_of_garbage_fails(tmp_path: Path) -> None:
    path = tmp_path / "shot.png"
    path.write_bytes(b"nope")

    result = runner.invoke(cli_module.cli, ["fingerprint", str(path)])

    assert result.exit_code == 1


def test_text_fingerprint_ignores_hidden_html(tmp_path: Path) -> None:
    visible = tmp_path / "visible.html"
    visible.write_text("<main><h1>Kitchen</h1><p>21 °C</p></main>", encoding="utf-8")
    hidden = tmp_path / "hidden.html"
    hidden.write_text(
        '<main><h1>Kitchen</h1><p>21 °C</p><div style="display: none">debug panel</div></main>',
        encoding="utf-8",
    )

    first = runner.invoke(cli_module.cli, ["fingerprint", "--text", str(visible)])
    second = runner.invoke(cli_module.cli, ["fingerprint", "--text", str(hidden)])

    assert first.exit_code == 0, first.output
    assert first.output.strip() == second.output.strip()
    assert len(first.output.strip()) == 8


def test_history_table_and_json(tmp_path: Path) -> None:
    env_file = _write_env(tmp_path)
    store = HistoryStore(tmp_path / "shots" / "checksum-history.json")
    store.append(0, "00000001")
    store.append(0, "00000002")

    table = runner.invoke(cli_module.cli, ["history", "0", "--env-file", str(env_file)])
    as_json = runner.invoke(cli_module.cli, ["history", "0", "--env-file", str(env_file), "--json"])

    assert table.exit_code == 0, table.output
    assert "00000001" in table.output and "00000002" in table.output
    assert as_json.exit_code == 0, as_json.output
    assert [entry["fingerprint"] for entry in json.loads(as_json.output)] == ["00000001", "00000002"]


def test_history_empty_target(tmp_path: Path) -> None:
    env_file = _write_env(tmp_path)

    result = runner.invoke(cli_module.cli, ["history", "3", "--env-file", str(env_file)])

    assert result.exit_code == 0
    assert "No fingerprints recorded for target 3." in result.output


def test_run_once_publishes_and_exits_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = _write_env(
        tmp_path,
        {"urls": ["https://a.example", "https://b.example"], "resolution_width": 32, "resolution_height": 24},
    )
    stub = StubRenderer()
    monkeypatch.setattr(cli_module, "build_renderer", lambda settings, config: stub)

    result = runner.invoke(cli_module.cli, ["run", "--once", "--port", "0", "--env-file", str(env_file)])

    assert result.exit_code == 0, result.output
    assert stub.calls == ["https://a.example", "https://b.example"]
    assert (tmp_path / "shots" / "0.png").exists()
    assert (tmp_path / "shots" / "1.png.crc32").exists()


def test_run_once_failure_exits_non_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = _write_env(tmp_path, {"urls": ["https://a.example"], "run_once": True})
    monkeypatch.setattr(cli_module, "build_renderer", lambda settings, config: StubRenderer(fail=True))

    result = runner.invoke(cli_module.cli, ["run", "--port", "0", "--env-file", str(env_file)])

    assert result.exit_code == 1
    assert not (tmp_path / "shots" / "0.png").exists()


def test_run_with_invalid_options_exits_two(tmp_path: Path) -> None:
    env_file = _write_env(tmp_path, {"urls": ["https://a.example"], "rotation_degrees": 45})

    result = runner.invoke(cli_module.cli, ["run", "--once", "--env-file", str(env_file)])

    assert result.exit_code == 2
    assert "rotation_degrees" in result.output


def test_run_with_invalid_schedule_exits_two(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = _write_env(tmp_path, {"urls": ["https://a.example"], "schedule": "whenever"})
    stub = StubRenderer()
    monkeypatch.setattr(cli_module, "build_renderer", lambda settings, config: stub)

    result = runner.invoke(cli_module.cli, ["run", "--schedule", "--port", "0", "--env-file", str(env_file)])

    assert result.exit_code == 2
    assert "Invalid schedule" in result.output
    assert stub.calls == []
