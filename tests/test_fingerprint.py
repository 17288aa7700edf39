from __future__ import annotations

import pytest

try:  # pragma: no cover - exercised only when libvips missing
    import pyvips
except Exception as exc:  # noqa: BLE001
    pytest.skip(f"pyvips unavailable: {exc}", allow_module_level=True)

import screenshotter.fingerprint as fingerprint_module
from screenshotter.fingerprint import (
    TEXT_SENTINEL,
    FingerprintError,
    FingerprintMethod,
    compute_fingerprint,
    format_hex,
    is_valid_fingerprint,
    pixel_fingerprint,
    text_fingerprint,
    token_sketch,
)


def _png(pixels: bytes, width: int, height: int, bands: int = 1, *, compression: int = 6) -> bytes:
    image = pyvips.Image.new_from_memory(pixels, width, height, bands, "uchar")
    return image.pngsave_buffer(compression=compression)


@pytest.mark.parametrize("value", ["", "   \n\t ", None, 42, b"bytes"])
def test_text_sentinel_for_empty_or_non_string(value: object) -> None:
    assert text_fingerprint(value) == TEXT_SENTINEL


def test_text_sentinel_when_hashing_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(token: str) -> int:
        raise RuntimeError("hash backend unavailable")

    monkeypatch.setattr(fingerprint_module, "token_sketch", _boom)

    assert text_fingerprint("Front door locked") == TEXT_SENTINEL


def test_text_sentinel_for_unencodable_text() -> None:
    assert text_fingerprint("garage \ud800 open") == TEXT_SENTINEL


def test_text_fingerprint_is_stable_hex() -> None:
    first = text_fingerprint("Living room 21.5 °C")
    second = text_fingerprint("Living room 21.5 °C")

    assert first == second
    assert is_valid_fingerprint(first)


def test_text_fingerprint_ignores_case_and_whitespace() -> None:
    assert text_fingerprint("Front Door  LOCKED") == text_fingerprint("front door\nlocked\t")


def test_single_token_fingerprint_is_its_folded_sketch() -> None:
    sketch = token_sketch("thermostat")

    assert text_fingerprint("thermostat") == format_hex((sketch >> 32) ^ (sketch & 0xFFFFFFFF))


def test_text_change_changes_fingerprint() -> None:
    assert text_fingerprint("garage open") != text_fingerprint("garage closed")


def test_pixel_fingerprint_ignores_container_encoding() -> None:
    pixels = bytes(range(48))

    fast = _png(pixels, 4, 4, 3, compression=0)
    small = _png(pixels, 4, 4, 3, compression=9)

    assert fast != small
    assert pixel_fingerprint(fast) == pixel_fingerprint(small)


def test_pixel_fingerprint_includes_dimensions() -> None:
    zeros = bytes(8)

    assert pixel_fingerprint(_png(zeros, 4, 2)) != pixel_fingerprint(_png(zeros, 2, 4))


def test_single_pixel_change_changes_fingerprint() -> None:
    base = bytearray(16)
    changed = bytearray(base)
    changed[5] = 1

    assert pixel_fingerprint(_png(bytes(base), 4, 4)) != pixel_fingerprint(_png(bytes(changed), 4, 4))


def test_undecodable_bytes_raise() -> None:
    with pytest.raises(FingerprintError):
        pixel_fingerprint(b"definitely not a png")


def test_compute_fingerprint_text_mode_skips_pixels() -> None:
    fingerprint = compute_fingerprint(b"not a png", "Hello", use_text=True)

    assert fingerprint.method is FingerprintMethod.TEXT
    assert fingerprint.value == text_fingerprint("Hello")
    assert not fingerprint.is_sentinel


def test_compute_fingerprint_text_mode_sentinel() -> None:
    fingerprint = compute_fingerprint(b"", None, use_text=True)

    assert fingerprint.is_sentinel


def test_compute_fingerprint_pixel_mode() -> None:
    png = _png(bytes(4), 2, 2)

    fingerprint = compute_fingerprint(png, "ignored", use_text=False)

    assert fingerprint.method is FingerprintMethod.PIXEL
    assert fingerprint.value == pixel_fingerprint(png)


@pytest.mark.parametrize(
    "value",
    ["0000000g", "ABCDEF01", "1234567", None, 12345678, "0x12ab34", " 12ab34 ", "+1234567", "1_2_3_45", "0badf00d\n"],
)
def test_is_valid_fingerprint_rejects_malformed(value: object) -> None:
    assert is_valid_fingerprint(value) is False
