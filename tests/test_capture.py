from __future__ import annotations

import json
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError

import screenshotter.capture as capture_module
from screenshotter.capture import (
    USER_AGENT_PRESETS,
    RenderError,
    RenderOptions,
    context_options_for,
    origin_of,
    resolve_user_agent,
    token_seed_script,
)
from screenshotter.targets import CaptureTarget, MobileViewport

_DEVICES = {
    "iPhone 13": {
        "user_agent": "Mozilla/5.0 (iPhone)",
        "viewport": {"width": 390, "height": 664},
        "device_scale_factor": 3,
        "is_mobile": True,
        "has_touch": True,
        "default_browser_type": "webkit",
    }
}


def test_desktop_uses_target_viewport() -> None:
    options = context_options_for(CaptureTarget(url="https://a.example", width=800, height=480), _DEVICES)

    assert options == {"viewport": {"width": 800, "height": 480}}


def test_named_device_descriptor_drops_browser_type() -> None:
    options = context_options_for(CaptureTarget(url="https://a.example", device_emulation="iPhone 13"), _DEVICES)

    assert options["viewport"] == {"width": 390, "height": 664}
    assert options["is_mobile"] is True
    assert "default_browser_type" not in options


def test_unknown_device_falls_back_to_desktop() -> None:
    options = context_options_for(
        CaptureTarget(url="https://a.example", width=640, height=480, device_emulation="Nokia 3310"),
        _DEVICES,
    )

    assert options == {"viewport": {"width": 640, "height": 480}}


def test_custom_profile_swaps_for_landscape_and_expands_user_agent() -> None:
    target = CaptureTarget(
        url="https://a.example",
        device_emulation="custom",
        mobile_viewport=MobileViewport(width=390, height=844, device_scale_factor=2, is_landscape=True, user_agent="Android"),
    )

    options = context_options_for(target, _DEVICES)

    assert options["viewport"] == {"width": 844, "height": 390}
    assert options["device_scale_factor"] == 2
    assert options["is_mobile"] is True
    assert options["has_touch"] is True
    assert options["user_agent"] == USER_AGENT_PRESETS["Android"]


def test_custom_without_profile_uses_desktop() -> None:
    target = CaptureTarget(url="https://a.example", width=1024, height=768, device_emulation="custom")

    assert context_options_for(target, _DEVICES) == {"viewport": {"width": 1024, "height": 768}}


def test_literal_user_agent_passes_through() -> None:
    assert resolve_user_agent("MyKiosk/1.0") == "MyKiosk/1.0"
    assert resolve_user_agent("iPad") == USER_AGENT_PRESETS["iPad"]


def test_origin_of() -> None:
    assert origin_of("http://homeassistant.local:8123/lovelace/0?kiosk") == "http://homeassistant.local:8123"
    assert origin_of("not a url") is None


def test_token_seed_script_is_scoped_to_origin() -> None:
    script = token_seed_script("http://ha.local:8123", "abc.def", "de")

    assert json.dumps("http://ha.local:8123") in script
    tokens = json.dumps({"hassUrl": "http://ha.local:8123", "access_token": "abc.def", "token_type": "Bearer"})
    assert json.dumps(tokens) in script
    assert json.dumps(json.dumps("de")) in script


class _FakePage:
    def __init__(self, owner: "_FakeBrowser") -> None:
        self.owner = owner

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.owner.calls.append(("goto", url, kwargs))
        if self.owner.fail_navigation:
            raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

    async def wait_for_function(self, expression: str, **kwargs: Any) -> None:
        self.owner.calls.append(("wait_for_function", expression, kwargs))

    async def screenshot(self, **kwargs: Any) -> bytes:
        self.owner.calls.append(("screenshot", None, kwargs))
        return b"png-bytes"


class _FakeContext:
    def __init__(self, owner: "_FakeBrowser") -> None:
        self.owner = owner

    async def add_init_script(self, script: str | None = None, **kwargs: Any) -> None:  # noqa: ARG002
        self.owner.init_scripts.append(script or "")

    async def new_page(self) -> _FakePage:
        return _FakePage(self.owner)

    async def close(self) -> None:
        self.owner.context_closed = True


class _FakeBrowser:
    def __init__(self, *, fail_navigation: bool = False) -> None:
        self.fail_navigation = fail_navigation
        self.calls: list[tuple[str, Any, dict[str, Any]]] = []
        self.context_options: dict[str, Any] = {}
        self.init_scripts: list[str] = []
        self.context_closed = False
        self.closed = False

    async def new_context(self, **kwargs: Any) -> _FakeContext:
        self.context_options = kwargs
        return _FakeContext(self)

    async def close(self) -> None:
        self.closed = True


class _FakeChromium:
    def __init__(self, browser: _FakeBrowser) -> None:
        self.browser = browser
        self.launch_kwargs: dict[str, Any] = {}

    async def launch(self, **kwargs: Any) -> _FakeBrowser:
        self.launch_kwargs = kwargs
        return self.browser


class _FakePlaywright:
    def __init__(self, browser: _FakeBrowser) -> None:
        self.chromium = _FakeChromium(browser)
        self.devices = _DEVICES

    async def __aenter__(self) -> "_FakePlaywright":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


@pytest.mark.asyncio()
async def test_capture_page_navigates_and_closes(monkeypatch: pytest.MonkeyPatch) -> None:
    browser = _FakeBrowser()
    playwright = _FakePlaywright(browser)
    monkeypatch.setattr(capture_module, "async_playwright", lambda: playwright)
    options = RenderOptions(navigation_timeout_ms=1234, ready_timeout_ms=567, access_token="tok", language="en")

    rendered = await capture_module.capture_page(CaptureTarget(url="http://ha.local:8123/lovelace"), options)

    assert rendered.png_bytes == b"png-bytes"
    assert rendered.text is None
    goto = browser.calls[0]
    assert goto[0] == "goto"
    assert goto[2] == {"wait_until": "networkidle", "timeout": 1234}
    assert browser.calls[1][2] == {"timeout": 567}
    assert browser.calls[2][2] == {"type": "png", "full_page": False}
    assert browser.context_options["extra_http_headers"] == {"Authorization": "Bearer tok"}
    assert len(browser.init_scripts) == 1
    assert playwright.chromium.launch_kwargs["channel"] == "chromium"
    assert browser.context_closed and browser.closed


@pytest.mark.asyncio()
async def test_navigation_failure_raises_render_error_and_closes(monkeypatch: pytest.MonkeyPatch) -> None:
    browser = _FakeBrowser(fail_navigation=True)
    monkeypatch.setattr(capture_module, "async_playwright", lambda: _FakePlaywright(browser))

    with pytest.raises(RenderError, match="ERR_NAME_NOT_RESOLVED"):
        await capture_module.capture_page(CaptureTarget(url="http://nowhere.invalid"), RenderOptions())

    assert browser.context_closed and browser.closed
    assert browser.init_scripts == []


@pytest.mark.asyncio()
async def test_executable_path_replaces_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    browser = _FakeBrowser()
    playwright = _FakePlaywright(browser)
    monkeypatch.setattr(capture_module, "async_playwright", lambda: playwright)

    await capture_module.capture_page(
        CaptureTarget(url="https://a.example"),
        RenderOptions(executable_path="/usr/bin/chromium"),
    )

    assert playwright.chromium.launch_kwargs["executable_path"] == "/usr/bin/chromium"
    assert "channel" not in playwright.chromium.launch_kwargs
