"""Content fingerprints: CRC32 over decoded pixels, or SimHash over visible text.

Pixel fingerprints hash the *decoded* samples, never the PNG container, so two
encodings of the same pixels (different zlib levels, filters, chunk layouts)
always agree. A 12-byte little-endian header of ``width, height, bands`` is
hashed first so images whose raw bytes happen to coincide but whose shapes
differ still produce different values.

Text fingerprints are a 64-bit SimHash folded to 32 bits: small edits to a
dashboard's text flip few bits, and the value is stable across runs because
token hashes are keyed BLAKE2b digests rather than Python's salted ``hash``.
"""

from __future__ import annotations

import hashlib
import logging
import re
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any

import pyvips

LOGGER = logging.getLogger(__name__)

TEXT_SENTINEL = "deadbeef"

_HEADER = struct.Struct("<III")
_HEX_FINGERPRINT = re.compile(r"[0-9a-f]{8}")
_LOW_PERSON = b"simhash-low"
_HIGH_PERSON = b"simhash-high"


class FingerprintMethod(str, Enum):
    PIXEL = "pixel"
    TEXT = "text"


class FingerprintError(RuntimeError):
    """Raised when pixel data cannot be decoded for fingerprinting."""


@dataclass(frozen=True, slots=True)
class Fingerprint:
    value: str
    method: FingerprintMethod

    @property
    def is_sentinel(self) -> bool:
        return self.method is FingerprintMethod.TEXT and self.value == TEXT_SENTINEL


def format_hex(value: int) -> str:
    return f"{value & 0xFFFFFFFF:08x}"


def pixel_checksum(pixels: bytes, *, width: int, height: int, bands: int) -> str:
    """CRC32 of the dimension header followed by the raw sample bytes."""

    crc = zlib.crc32(_HEADER.pack(width, height, bands))
    crc = zlib.crc32(pixels, crc)
    return format_hex(crc)


def pixel_fingerprint(image_bytes: bytes) -> str:
    """Decode an encoded raster and fingerprint its pixels."""

    try:
        image = pyvips.Image.new_from_buffer(image_bytes, "", access="sequential")
        pixels = image.write_to_memory()
    except pyvips.Error as exc:
        raise FingerprintError(f"Unable to decode image for fingerprinting: {exc}") from exc
    return pixel_checksum(pixels, width=image.width, height=image.height, bands=image.bands)


def tokenize(text: str) -> list[str]:
    return [token for token in text.lower().split() if token]


def _token_hash(token: bytes, person: bytes) -> int:
    digest = hashlib.blake2b(token, digest_size=4, person=person).digest()
    return int.from_bytes(digest, "little")


def token_sketch(token: str) -> int:
    """Return the 64-bit sketch for one token (two independent 32-bit halves)."""

    encoded = token.encode("utf-8")
    low = _token_hash(encoded, _LOW_PERSON)
    high = _token_hash(encoded, _HIGH_PERSON)
    return (high << 32) | low


def simhash64(tokens: list[str]) -> int:
    """Majority vote per bit over all token sketches."""

    votes = [0] * 64
    for token in tokens:
        sketch = token_sketch(token)
        for bit in range(64):
            if sketch >> bit & 1:
                votes[bit] += 1

    total = len(tokens)
    result = 0
    for bit, count in enumerate(votes):
        if count * 2 >= total:
            result |= 1 << bit
    return result


def text_fingerprint(text: Any) -> str:
    """SimHash of ``text`` folded to 8 hex chars; ``"deadbeef"`` when not computable."""

    if not isinstance(text, str):
        return TEXT_SENTINEL
    try:
        tokens = tokenize(text)
        if not tokens:
            return TEXT_SENTINEL
        sketch = simhash64(tokens)
        return format_hex((sketch >> 32) ^ (sketch & 0xFFFFFFFF))
    except Exception as exc:  # noqa: BLE001 - text mode never raises
        LOGGER.warning("Text fingerprint failed: %s", exc)
        return TEXT_SENTINEL


def compute_fingerprint(image_bytes: bytes, text: str | None, *, use_text: bool) -> Fingerprint:
    """Pick the method configured for a target and compute its fingerprint."""

    if use_text:
        return Fingerprint(value=text_fingerprint(text), method=FingerprintMethod.TEXT)
    return Fingerprint(value=pixel_fingerprint(image_bytes), method=FingerprintMethod.PIXEL)


def is_valid_fingerprint(value: Any) -> bool:
    return isinstance(value, str) and _HEX_FINGERPRINT.fullmatch(value) is not None
