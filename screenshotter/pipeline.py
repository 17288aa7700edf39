"""Deterministic screenshot transforms backed by pyvips.

Stages always run in the same order: crop, tone/color, rotation, grayscale,
bit-depth quantization. Crop is a precondition and raises; the tone and
quantization stages log a warning and hand the pre-stage image onward when
they fail.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Sequence

import pyvips

from screenshotter.targets import CaptureTarget, ColorAdjust, CropRect

LOGGER = logging.getLogger(__name__)

REMOVE_GAMMA_EXPONENT = 1 / 2.2
PNG_COMPRESSION = 6

_LUMA = [[0.299, 0.587, 0.114]]

_BAYER_8 = (
    (0, 32, 8, 40, 2, 34, 10, 42),
    (48, 16, 56, 24, 50, 18, 58, 26),
    (12, 44, 4, 36, 14, 46, 6, 38),
    (60, 28, 52, 20, 62, 30, 54, 22),
    (3, 35, 11, 43, 1, 33, 9, 41),
    (51, 19, 59, 27, 49, 17, 57, 25),
    (15, 47, 7, 39, 13, 45, 5, 37),
    (63, 31, 55, 23, 61, 29, 53, 21),
)

# Per-band level counts for palette depths; products are 2/16/256 colors.
_GRAY_LEVELS = {1: (2,), 4: (16,), 8: (256,)}
_COLOR_LEVELS = {4: (2, 4, 2), 8: (8, 8, 4)}


class CropError(ValueError):
    """Raised when a crop rectangle does not fit inside the captured image."""


@dataclass(slots=True)
class Raster:
    """A processed image plus the bit depth it should be encoded with."""

    image: pyvips.Image
    bit_depth: int = 24

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def load_image(image_bytes: bytes) -> pyvips.Image:
    """Decode a screenshot into an opaque 8-bit sRGB or b-w image."""

    image = pyvips.Image.new_from_buffer(image_bytes, "")
    if image.hasalpha():
        white = 65535 if image.format == "ushort" else 255
        image = image.flatten(background=[white] * (image.bands - 1), max_alpha=white)
    interpretation = "srgb" if image.bands >= 3 else "b-w"
    if image.format == "ushort":
        image = (image >> 8).cast("uchar").copy(interpretation=interpretation)
    elif image.format != "uchar":
        image = _clamp_uchar(image, interpretation)
    return image


def check_crop(crop: CropRect | None, width: int, height: int) -> None:
    if crop is None:
        return
    if crop.x < 0 or crop.y < 0:
        raise CropError(f"Crop coordinates must be non-negative (got x:{crop.x}, y:{crop.y})")
    if crop.width <= 0 or crop.height <= 0:
        raise CropError(f"Crop dimensions must be positive (got width:{crop.width}, height:{crop.height})")
    if not crop.fits(width, height):
        raise CropError(
            f"Crop area ({crop.x + crop.width}, {crop.y + crop.height}) exceeds "
            f"image dimensions ({width}x{height})"
        )


def crop_image(image: pyvips.Image, crop: CropRect) -> pyvips.Image:
    check_crop(crop, image.width, image.height)
    return image.crop(crop.x, crop.y, crop.width, crop.height)


def adjust_color(image: pyvips.Image, adjust: ColorAdjust) -> pyvips.Image:
    """Apply gamma, levels, contrast and saturation in that order."""

    interpretation = image.interpretation
    out = image.cast("float")

    if adjust.remove_gamma:
        out = _power_curve(out, REMOVE_GAMMA_EXPONENT)
    if adjust.gamma != 1.0:
        out = _power_curve(out, adjust.gamma)

    if adjust.black_level != 0.0 or adjust.white_level != 100.0:
        low = round(adjust.black_level / 100 * 255)
        high = round(adjust.white_level / 100 * 255)
        if high <= low:
            raise ValueError(f"white level {adjust.white_level}% must exceed black level {adjust.black_level}%")
        scale = 255 / (high - low)
        out = out.linear(scale, -low * scale)

    if adjust.contrast != 1.0:
        out = out.linear(adjust.contrast, 128 * (1 - adjust.contrast))

    if adjust.saturation != 1.0 and out.bands >= 3:
        luma = out.recomb(pyvips.Image.new_from_array(_LUMA))
        out = luma * (1 - adjust.saturation) + out * adjust.saturation

    return _clamp_uchar(out, interpretation)


def rotate(image: pyvips.Image, degrees: int) -> pyvips.Image:
    """Rotate clockwise by a multiple of 90 degrees."""

    if degrees == 0:
        return image
    if degrees == 90:
        return image.rot90()
    if degrees == 180:
        return image.rot180()
    if degrees == 270:
        return image.rot270()
    raise ValueError(f"Rotation must be a multiple of 90 degrees (got {degrees})")


def to_grayscale(image: pyvips.Image) -> pyvips.Image:
    if image.bands == 1:
        return image
    return image.colourspace("b-w")


def quantize(image: pyvips.Image, bit_depth: int) -> Raster:
    """Reduce ``image`` to the palette implied by ``bit_depth``."""

    if bit_depth in (16, 24):
        return Raster(image=image, bit_depth=bit_depth)
    if bit_depth not in _GRAY_LEVELS:
        raise ValueError(f"Unsupported bit depth {bit_depth}")

    if image.bands == 1:
        levels = _GRAY_LEVELS[bit_depth]
    elif bit_depth == 1:
        image = to_grayscale(image)
        levels = _GRAY_LEVELS[1]
    else:
        levels = _COLOR_LEVELS[bit_depth]
    return Raster(image=ordered_dither(image, levels), bit_depth=bit_depth)


def ordered_dither(image: pyvips.Image, levels: Sequence[int]) -> pyvips.Image:
    """Quantize each band to ``levels[band]`` evenly spaced values with an 8x8 Bayer matrix."""

    if len(levels) != image.bands:
        raise ValueError(f"Expected {image.bands} level counts, got {len(levels)}")

    threshold = _bayer_threshold(image.width, image.height)
    bands: List[pyvips.Image] = image.bandsplit() if image.bands > 1 else [image]
    quantized: List[pyvips.Image] = []
    for band, count in zip(bands, levels):
        steps = count - 1
        index = (band * (steps / 255.0) + threshold).floor()
        index = (index > steps).ifthenelse(steps, index)
        quantized.append((index * (255.0 / steps)).rint().cast("uchar"))

    joined = quantized[0] if len(quantized) == 1 else quantized[0].bandjoin(quantized[1:])
    return joined.copy(interpretation=image.interpretation)


def transform(image: pyvips.Image, target: CaptureTarget) -> Raster:
    """Run every stage configured on ``target`` in the fixed order."""

    if target.crop is not None:
        image = crop_image(image, target.crop)

    color = target.color
    if color is not None and not color.is_identity:
        try:
            image = adjust_color(image, color).copy_memory()
        except (pyvips.Error, ValueError) as exc:
            LOGGER.warning("Color adjustment failed for %s, continuing without it: %s", target.url, exc)

    image = rotate(image, target.rotation)

    if target.grayscale:
        image = to_grayscale(image)

    try:
        raster = quantize(image, target.bit_depth)
        raster.image = raster.image.copy_memory()
    except (pyvips.Error, ValueError) as exc:
        LOGGER.warning(
            "Bit depth reduction to %d-bit failed for %s, continuing without it: %s",
            target.bit_depth,
            target.url,
            exc,
        )
        raster = Raster(image=image, bit_depth=24)
    return raster


def encode_png(raster: Raster, *, compression: int = PNG_COMPRESSION) -> bytes:
    """Encode ``raster`` honoring its bit depth."""

    image = raster.image
    if raster.bit_depth in _GRAY_LEVELS:
        try:
            return _palette_png(image, raster.bit_depth, compression)
        except pyvips.Error as exc:
            LOGGER.warning("Palette PNG encode failed, writing full color instead: %s", exc)
    elif raster.bit_depth == 16:
        return _sixteen_bit_png(image, compression)
    return image.pngsave_buffer(compression=compression)


def process_screenshot(image_bytes: bytes, target: CaptureTarget) -> tuple[bytes, Raster]:
    """Decode, transform and re-encode one screenshot."""

    raster = transform(load_image(image_bytes), target)
    return encode_png(raster), raster


async def process_screenshot_async(image_bytes: bytes, target: CaptureTarget) -> tuple[bytes, Raster]:
    return await asyncio.to_thread(process_screenshot, image_bytes, target)


def _palette_png(image: pyvips.Image, bit_depth: int, compression: int) -> bytes:
    if image.bands == 1:
        image = image.colourspace("srgb")
    return image.pngsave_buffer(
        palette=True,
        bitdepth=bit_depth,
        Q=100,
        dither=0.0,
        compression=compression,
    )


def _sixteen_bit_png(image: pyvips.Image, compression: int) -> bytes:
    interpretation = "grey16" if image.bands == 1 else "rgb16"
    wide = (image.cast("ushort") * 257).cast("ushort").copy(interpretation=interpretation)
    return wide.pngsave_buffer(bitdepth=16, compression=compression)


def _power_curve(image: pyvips.Image, exponent: float) -> pyvips.Image:
    return (image / 255.0) ** exponent * 255.0


def _clamp_uchar(image: pyvips.Image, interpretation: str) -> pyvips.Image:
    image = image.rint()
    image = (image < 0).ifthenelse(0, image)
    image = (image > 255).ifthenelse(255, image)
    return image.cast("uchar").copy(interpretation=interpretation)


def _bayer_threshold(width: int, height: int) -> pyvips.Image:
    size = len(_BAYER_8)
    cells = size * size
    matrix = [[(value + 0.5) / cells for value in row] for row in _BAYER_8]
    tile = pyvips.Image.new_from_array(matrix)
    across = -(-width // size)
    down = -(-height // size)
    return tile.replicate(across, down).crop(0, 0, width, height)
