"""Options-file parsing that normalizes every target shape into ``CaptureTarget``."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from croniter import croniter

LOGGER = logging.getLogger(__name__)

VALID_ROTATIONS = (0, 90, 180, 270)
VALID_BIT_DEPTHS = (1, 4, 8, 16, 24)
DEFAULT_SCHEDULE = "* * * * *"
DEFAULT_URLS = ("https://google.com", "https://time.now/")

# Global option names that differ from their per-target spelling.
_GLOBAL_ALIASES = {
    "resolution_width": "width",
    "resolution_height": "height",
    "rotation_degrees": "rotation",
    "use_text_based_crc32": "use_text_fingerprint",
}
_TARGET_KEYS = frozenset(
    {
        "width",
        "height",
        "rotation",
        "grayscale",
        "bit_depth",
        "crop",
        "device_emulation",
        "mobile_viewport",
        "contrast",
        "saturation",
        "gamma",
        "black_level",
        "white_level",
        "remove_gamma",
        "use_text_fingerprint",
    }
)


class ConfigurationError(ValueError):
    """Raised when the options file cannot produce a valid configuration."""


@dataclass(frozen=True, slots=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    def fits(self, width: int, height: int) -> bool:
        return self.x + self.width <= width and self.y + self.height <= height


@dataclass(frozen=True, slots=True)
class ColorAdjust:
    """Tone and color parameters; the defaults are the identity."""

    contrast: float = 1.0
    saturation: float = 1.0
    gamma: float = 1.0
    black_level: float = 0.0
    white_level: float = 100.0
    remove_gamma: bool = False

    @property
    def is_identity(self) -> bool:
        return (
            self.contrast == 1.0
            and self.saturation == 1.0
            and self.gamma == 1.0
            and self.black_level == 0.0
            and self.white_level == 100.0
            and not self.remove_gamma
        )


@dataclass(frozen=True, slots=True)
class MobileViewport:
    """Custom device profile used when ``device_emulation == "custom"``."""

    width: int | None = None
    height: int | None = None
    device_scale_factor: float = 1.0
    touch_enabled: bool = True
    is_landscape: bool = False
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class CaptureTarget:
    """Everything needed to render and post-process one dashboard."""

    url: str
    width: int = 1920
    height: int = 1080
    rotation: int = 0
    grayscale: bool = False
    bit_depth: int = 24
    crop: CropRect | None = None
    device_emulation: str = "desktop"
    mobile_viewport: MobileViewport | None = None
    color: ColorAdjust | None = None
    use_text_fingerprint: bool = False

    def describe(self) -> str:
        parts = [f"{self.width}x{self.height}"]
        if self.rotation:
            parts.append(f"rotated {self.rotation}°")
        if self.crop:
            parts.append(
                f"cropped to ({self.crop.x},{self.crop.y}) {self.crop.width}x{self.crop.height}"
            )
        if self.grayscale:
            parts.append("grayscale")
        if self.bit_depth != 24:
            parts.append(f"{self.bit_depth}-bit")
        if self.device_emulation != "desktop":
            parts.append(f"[{self.device_emulation}]")
        if self.use_text_fingerprint:
            parts.append("text fingerprint")
        return ", ".join(parts)


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Validated options consumed by the scheduler and web server."""

    schedule: str
    targets: tuple[CaptureTarget, ...]
    run_once: bool = False
    webserver_port: int = 0
    access_token: str = ""
    language: str = "en"


def load_options(path: Path) -> AppConfig:
    """Read ``path`` and return a validated configuration.

    A missing file yields the built-in defaults; anything unreadable or invalid
    raises ``ConfigurationError`` so startup aborts.
    """

    if not path.exists():
        LOGGER.info("No options file at %s; using defaults", path)
        return parse_options({})
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read options file {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Options file must contain a JSON object")
    return parse_options(raw)


def parse_options(raw: Mapping[str, Any]) -> AppConfig:
    """Validate global options and expand ``urls`` into capture targets."""

    schedule = raw.get("schedule") or DEFAULT_SCHEDULE
    if not isinstance(schedule, str) or not croniter.is_valid(schedule):
        raise ConfigurationError(f"Invalid schedule: {schedule!r}. Must be a cron string.")

    run_once = _expect_bool(raw, "run_once", default=False)
    port = raw.get("webserverport", 0)
    if not _is_int(port) or port < 0:
        raise ConfigurationError(
            f"Invalid webserverport setting: {port!r}. Must be a non-negative integer."
        )
    language = raw.get("language", "en")
    if not isinstance(language, str) or not language.strip():
        raise ConfigurationError(f"Invalid language setting: {language!r}. Must be a non-empty string.")
    token = raw.get("long_lived_access_token") or ""
    if not isinstance(token, str):
        raise ConfigurationError("long_lived_access_token must be a string")

    defaults = _target_fields({_GLOBAL_ALIASES.get(key, key): value for key, value in raw.items()})
    base = build_target("about:blank", defaults)

    urls = raw.get("urls", list(DEFAULT_URLS))
    targets = tuple(
        _build_with_context(url, base, overrides) for url, overrides in iter_target_entries(urls)
    )
    if not targets:
        raise ConfigurationError("At least one URL must be configured")

    return AppConfig(
        schedule=schedule,
        targets=targets,
        run_once=run_once,
        webserver_port=port,
        access_token=token,
        language=language.strip(),
    )


def iter_target_entries(urls: Any) -> Iterator[tuple[str, Mapping[str, Any]]]:
    """Yield ``(url, overrides)`` pairs for every supported ``urls`` shape.

    Accepted shapes, possibly JSON-encoded as a string:

    * ``["https://a", ...]``: plain URLs.
    * ``[{"url": "https://a", "rotation": 90}, ...]``: objects with overrides.
    * ``{"https://a": {"rotation": 90}, ...}``: mapping of URL to overrides.
    """

    if isinstance(urls, str):
        stripped = urls.strip()
        if stripped.startswith(("[", "{")):
            try:
                urls = json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    f"Invalid URLs configuration: {exc}. "
                    'Expected format: ["https://example.com", "https://example2.com"]'
                ) from exc
        else:
            urls = [stripped]

    if isinstance(urls, Mapping):
        for url, overrides in urls.items():
            if overrides is None:
                overrides = {}
            if not isinstance(overrides, Mapping):
                raise ConfigurationError(f"Settings for {url} must be an object")
            yield _expect_url(url), overrides
        return

    if not isinstance(urls, Sequence):
        raise ConfigurationError("URLs must be an array or an object")

    for entry in urls:
        if isinstance(entry, str):
            yield _expect_url(entry), {}
        elif isinstance(entry, Mapping):
            if "url" in entry:
                overrides = {key: value for key, value in entry.items() if key != "url"}
                yield _expect_url(entry["url"]), overrides
            else:
                yield from iter_target_entries(entry)
        else:
            raise ConfigurationError(f"Unsupported URL entry: {entry!r}")


def build_target(url: str, fields: Mapping[str, Any]) -> CaptureTarget:
    """Create a ``CaptureTarget`` from already-normalized field values."""

    target = CaptureTarget(url=url, **fields)
    validate_target(target)
    return target


def validate_target(target: CaptureTarget) -> None:
    if target.width <= 0 or target.height <= 0:
        raise ConfigurationError(
            f"Invalid resolution {target.width}x{target.height}. Must be positive integers."
        )
    if target.rotation not in VALID_ROTATIONS:
        raise ConfigurationError(
            f"Invalid rotation_degrees: {target.rotation}. Must be one of: 0, 90, 180, or 270."
        )
    if target.bit_depth not in VALID_BIT_DEPTHS:
        raise ConfigurationError(
            f"Invalid bit_depth setting: {target.bit_depth}. Must be one of: 1, 4, 8, 16, or 24."
        )
    crop = target.crop
    if crop is not None and not crop.fits(target.width, target.height):
        raise ConfigurationError(
            f"Crop area ({crop.x + crop.width}, {crop.y + crop.height}) exceeds "
            f"viewport dimensions ({target.width}x{target.height})"
        )
    color = target.color
    if color is not None and color.black_level >= color.white_level:
        raise ConfigurationError("black_level must be lower than white_level")


def _build_with_context(url: str, base: CaptureTarget, overrides: Mapping[str, Any]) -> CaptureTarget:
    fields = _target_fields(overrides, base=base)
    try:
        return build_target(url, fields)
    except ConfigurationError as exc:
        raise ConfigurationError(f"{url}: {exc}") from exc


def _target_fields(raw: Mapping[str, Any], *, base: CaptureTarget | None = None) -> dict[str, Any]:
    """Translate option keys into ``CaptureTarget`` keyword arguments."""

    fields: dict[str, Any] = {}
    if base is not None:
        fields = {
            "width": base.width,
            "height": base.height,
            "rotation": base.rotation,
            "grayscale": base.grayscale,
            "bit_depth": base.bit_depth,
            "crop": base.crop,
            "device_emulation": base.device_emulation,
            "mobile_viewport": base.mobile_viewport,
            "color": base.color,
            "use_text_fingerprint": base.use_text_fingerprint,
        }

    unknown = set(raw) - _TARGET_KEYS
    options = {key: value for key, value in raw.items() if key in _TARGET_KEYS}
    if base is not None and unknown:
        LOGGER.warning("Ignoring unknown target settings: %s", ", ".join(sorted(unknown)))

    for key in ("width", "height"):
        if key in options:
            value = options[key]
            if not _is_int(value) or value <= 0:
                raise ConfigurationError(f"Invalid {key}: {value!r}. Must be a positive integer.")
            fields[key] = value
    if "rotation" in options:
        if not _is_int(options["rotation"]):
            raise ConfigurationError(f"Invalid rotation_degrees: {options['rotation']!r}.")
        fields["rotation"] = options["rotation"]
    if "bit_depth" in options:
        if not _is_int(options["bit_depth"]):
            raise ConfigurationError(f"Invalid bit_depth setting: {options['bit_depth']!r}.")
        fields["bit_depth"] = options["bit_depth"]
    for key in ("grayscale", "use_text_fingerprint"):
        if key in options:
            fields[key] = _expect_bool(options, key, default=False)
    if "crop" in options:
        fields["crop"] = _parse_crop(options["crop"])
    if "device_emulation" in options:
        device = options["device_emulation"]
        if not isinstance(device, str) or not device.strip():
            raise ConfigurationError(f"Invalid device_emulation: {device!r}")
        fields["device_emulation"] = device.strip()
    if "mobile_viewport" in options:
        fields["mobile_viewport"] = _parse_mobile_viewport(options["mobile_viewport"])

    color_keys = {"contrast", "saturation", "gamma", "black_level", "white_level", "remove_gamma"}
    if color_keys & set(options):
        current = fields.get("color") or ColorAdjust()
        fields["color"] = replace(current, **_parse_color(options))
    if fields.get("color") is not None and fields["color"].is_identity:
        fields["color"] = None
    return fields


def _parse_crop(value: Any) -> CropRect | None:
    if value in (None, False, {}):
        return None
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Invalid crop setting: {value!r}. Must be an object.")
    try:
        crop = CropRect(
            x=int(value.get("x", 0)),
            y=int(value.get("y", 0)),
            width=int(value["width"]),
            height=int(value["height"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid crop setting: {value!r}") from exc
    if crop.x < 0 or crop.y < 0:
        raise ConfigurationError(f"Crop coordinates must be non-negative (got x:{crop.x}, y:{crop.y})")
    if crop.width <= 0 or crop.height <= 0:
        raise ConfigurationError(
            f"Crop dimensions must be positive (got width:{crop.width}, height:{crop.height})"
        )
    return crop


def _parse_mobile_viewport(value: Any) -> MobileViewport | None:
    if value in (None, False):
        return None
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Invalid mobile_viewport: {value!r}. Must be an object.")
    try:
        return MobileViewport(
            width=int(value["width"]) if value.get("width") else None,
            height=int(value["height"]) if value.get("height") else None,
            device_scale_factor=float(value.get("device_scale_factor", 1.0)),
            touch_enabled=bool(value.get("touch_enabled", True)),
            is_landscape=bool(value.get("is_landscape", False)),
            user_agent=value.get("user_agent") or None,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid mobile_viewport: {value!r}") from exc


def _parse_color(options: Mapping[str, Any]) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for key in ("contrast", "saturation", "gamma"):
        if key in options:
            value = _as_float(options[key], key)
            if value <= 0 and key == "gamma":
                raise ConfigurationError("gamma must be positive")
            if value < 0:
                raise ConfigurationError(f"{key} must not be negative")
            parsed[key] = value
    for key in ("black_level", "white_level"):
        if key in options:
            value = _as_percent(options[key], key)
            if not 0.0 <= value <= 100.0:
                raise ConfigurationError(f"{key} must be between 0% and 100%")
            parsed[key] = value
    if "remove_gamma" in options:
        parsed["remove_gamma"] = _expect_bool(options, "remove_gamma", default=False)
    return parsed


def _as_float(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid {key}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {key}: {value!r}") from exc


def _as_percent(value: Any, key: str) -> float:
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    return _as_float(value, key)


def _expect_bool(raw: Mapping[str, Any], key: str, *, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"Invalid {key} setting: {value!r}. Must be true or false.")
    return value


def _expect_url(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Invalid URL: {value!r}")
    return value.strip()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
