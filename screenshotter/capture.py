"""Playwright render adapter: one fresh browser per target, PNG bytes out."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence
from urllib.parse import urlsplit

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, async_playwright

from screenshotter.settings import Settings
from screenshotter.targets import CaptureTarget, MobileViewport
from screenshotter.text_extract import extract_visible_text

LOGGER = logging.getLogger(__name__)

USER_AGENT_PRESETS = {
    "iPhone": (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 14_7_1 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/14.1.2 Mobile/15E148 Safari/604.1"
    ),
    "iPad": (
        "Mozilla/5.0 (iPad; CPU OS 14_7_1 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/14.1.2 Mobile/15E148 Safari/604.1"
    ),
    "Android": (
        "Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.120 Mobile Safari/537.36"
    ),
}

CHROMIUM_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
)

_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}

_TOKEN_SEED_SCRIPT = """
(() => {
  if (window.location.origin !== %s) return;
  try {
    window.localStorage.setItem('hassTokens', %s);
    window.localStorage.setItem('selectedLanguage', %s);
  } catch (e) {}
})();
"""


class RenderError(RuntimeError):
    """Raised when a page cannot be loaded or screenshotted."""


@dataclass(slots=True)
class RenderedPage:
    """Raw viewport screenshot plus visible text when it was requested."""

    png_bytes: bytes
    text: str | None = None
    capture_ms: int = 0


@dataclass(slots=True)
class RenderOptions:
    """Process-wide render knobs shared by every target."""

    navigation_timeout_ms: int = 30_000
    ready_timeout_ms: int = 10_000
    access_token: str = ""
    language: str = "en"
    executable_path: str | None = None
    playwright_channel: str = "chromium"
    text_settle_ms: int = 2_000
    text_timeout_ms: int = 5_000
    settle_selectors: Sequence[str] = ()

    @classmethod
    def from_settings(cls, settings: Settings, *, access_token: str = "", language: str = "en") -> RenderOptions:
        return cls(
            navigation_timeout_ms=settings.browser.navigation_timeout_ms,
            ready_timeout_ms=settings.browser.ready_timeout_ms,
            access_token=access_token,
            language=language,
            executable_path=settings.browser.executable_path,
            playwright_channel=settings.browser.playwright_channel,
            text_settle_ms=settings.text.settle_ms,
            text_timeout_ms=settings.text.timeout_ms,
            settle_selectors=settings.text.settle_selectors,
        )


Renderer = Callable[[CaptureTarget], Awaitable[RenderedPage]]


class PlaywrightRenderer:
    """Callable renderer the scheduler drives, bound to one ``RenderOptions``."""

    def __init__(self, options: RenderOptions) -> None:
        self.options = options

    async def __call__(self, target: CaptureTarget) -> RenderedPage:
        return await capture_page(target, self.options)


async def capture_page(target: CaptureTarget, options: RenderOptions) -> RenderedPage:
    """Load ``target.url`` in a fresh browser and screenshot the viewport."""

    start = time.perf_counter()
    try:
        async with async_playwright() as playwright:
            browser = await _launch_browser(playwright, options)
            try:
                context = await _build_context(browser, playwright, target, options)
                try:
                    page = await context.new_page()
                    png_bytes, text = await _render(page, target, options)
                finally:
                    await context.close()
            finally:
                await browser.close()
    except PlaywrightError as exc:
        raise RenderError(f"Failed to render {target.url}: {exc}") from exc

    capture_ms = int((time.perf_counter() - start) * 1000)
    LOGGER.debug("Rendered %s in %dms", target.url, capture_ms)
    return RenderedPage(png_bytes=png_bytes, text=text, capture_ms=capture_ms)


async def _render(page: Page, target: CaptureTarget, options: RenderOptions) -> tuple[bytes, str | None]:
    await page.goto(target.url, wait_until="networkidle", timeout=options.navigation_timeout_ms)
    await page.wait_for_function(
        "document.readyState === 'complete'",
        timeout=options.ready_timeout_ms,
    )
    png_bytes = await page.screenshot(type="png", full_page=False)

    text: str | None = None
    if target.use_text_fingerprint:
        text = await extract_visible_text(
            page,
            settle_ms=options.text_settle_ms,
            timeout_s=options.text_timeout_ms / 1000,
            settle_selectors=options.settle_selectors,
        )
    return png_bytes, text


async def _launch_browser(playwright, options: RenderOptions) -> Browser:
    launch_kwargs: dict[str, Any] = {"headless": True, "args": list(CHROMIUM_ARGS)}
    if options.executable_path:
        launch_kwargs["executable_path"] = options.executable_path
    else:
        channel = options.playwright_channel
        normalized = _normalize_channel(channel)
        if normalized != channel:
            LOGGER.warning(
                "Playwright channel '%s' is not supported; falling back to '%s'",
                channel,
                normalized,
            )
        launch_kwargs["channel"] = normalized
    return await playwright.chromium.launch(**launch_kwargs)


async def _build_context(
    browser: Browser,
    playwright,
    target: CaptureTarget,
    options: RenderOptions,
) -> BrowserContext:
    context_options = context_options_for(target, playwright.devices)
    if options.access_token:
        context_options["extra_http_headers"] = {"Authorization": f"Bearer {options.access_token}"}
    context = await browser.new_context(**context_options)
    if options.access_token:
        origin = origin_of(target.url)
        if origin:
            await context.add_init_script(
                script=token_seed_script(origin, options.access_token, options.language)
            )
        else:
            LOGGER.warning("Cannot derive an origin from %s; skipping token injection", target.url)
    return context


def context_options_for(target: CaptureTarget, devices: dict[str, Any]) -> dict[str, Any]:
    """Translate a target's emulation settings into ``new_context`` keyword arguments."""

    desktop = {"viewport": {"width": target.width, "height": target.height}}
    emulation = target.device_emulation
    if not emulation or emulation == "desktop":
        return desktop

    if emulation == "custom":
        if target.mobile_viewport is None:
            LOGGER.warning(
                "Custom device emulation requested for %s without mobile_viewport; using desktop",
                target.url,
            )
            return desktop
        return _custom_profile(target, target.mobile_viewport)

    descriptor = devices.get(emulation)
    if descriptor is None:
        LOGGER.warning("Unknown device preset '%s'; using desktop mode", emulation)
        return desktop
    return {key: value for key, value in descriptor.items() if key != "default_browser_type"}


def _custom_profile(target: CaptureTarget, profile: MobileViewport) -> dict[str, Any]:
    width = profile.width or target.width
    height = profile.height or target.height
    if profile.is_landscape and width < height:
        width, height = height, width
    options: dict[str, Any] = {
        "viewport": {"width": width, "height": height},
        "device_scale_factor": profile.device_scale_factor or 1.0,
        "is_mobile": True,
        "has_touch": profile.touch_enabled,
    }
    if profile.user_agent:
        options["user_agent"] = resolve_user_agent(profile.user_agent)
    return options


def resolve_user_agent(value: str) -> str:
    """Expand a preset name (``iPhone``/``iPad``/``Android``) or return the literal string."""

    return USER_AGENT_PRESETS.get(value, value)


def origin_of(url: str) -> str | None:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def token_seed_script(origin: str, token: str, language: str) -> str:
    """Init script that seeds the frontend's stored auth before any page script runs."""

    tokens = json.dumps({"hassUrl": origin, "access_token": token, "token_type": "Bearer"})
    return _TOKEN_SEED_SCRIPT % (
        json.dumps(origin),
        json.dumps(tokens),
        json.dumps(json.dumps(language)),
    )


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)
