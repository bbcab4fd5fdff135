"""Image normalization: decode arbitrary uploads into a fixed canonical canvas.

Every source image is decoded (with EXIF orientation applied), scaled to fit
an ``S x S`` square without distortion, and centered on a solid fill color.
Downstream detection then sees one tensor shape regardless of the source
resolution or aspect ratio.
"""

from __future__ import annotations

import io
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from faceprint.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

RGB = tuple[int, int, int]

DEFAULT_CANVAS_SIZE: int = 256
DEFAULT_FILL_COLOR: RGB = (255, 255, 255)
RESAMPLING = Image.Resampling.BILINEAR


@dataclass(frozen=True)
class SourceImage:
    """Raw upload: undecoded bytes and the name they were submitted under."""

    filename: str
    data: bytes
    content_type: str | None = None


@dataclass(frozen=True)
class Placement:
    """Destination rectangle of the scaled source inside the canvas."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class CanonicalCanvas:
    """Fixed-size RGB canvas holding one letterboxed source image.

    ``pixels`` is a read-only HxWx3 uint8 array with H == W == ``size``.
    """

    filename: str
    pixels: NDArray[np.uint8]
    fill_color: RGB
    placement: Placement

    @property
    def size(self) -> int:
        return int(self.pixels.shape[0])


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def letterbox(width: int, height: int, size: int) -> Placement:
    """Compute where a ``width x height`` image lands on a ``size`` square.

    The longer side spans the whole canvas; the shorter side is scaled by the
    same factor and centered. Rounding is half-up, and the scaled side never
    drops below one pixel.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    ratio = width / height
    if width > height:
        dw, dh = size, max(1, _round_half_up(size / ratio))
    elif height > width:
        dw, dh = max(1, _round_half_up(size * ratio)), size
    else:
        dw = dh = size

    return Placement(
        x=_round_half_up((size - dw) / 2),
        y=_round_half_up((size - dh) / 2),
        width=dw,
        height=dh,
    )


def decode_image(source: SourceImage, max_pixels: int | None = None) -> Image.Image:
    """Decode ``source`` into an upright RGBA image detached from the input buffer.

    Raises:
        DecodeError: If the bytes are empty, corrupt, in an unsupported
            format, have a zero dimension, or exceed ``max_pixels``.
    """
    if not source.data:
        raise DecodeError(f"Failed to load image {source.filename}: file is empty")

    try:
        with Image.open(io.BytesIO(source.data)) as img:
            # Header dimensions only; pixel data is not decoded yet.
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise DecodeError(
                    f"Failed to load image {source.filename}: {width}x{height} exceeds {max_pixels} pixels"
                )
            img.load()
            upright = ImageOps.exif_transpose(img)
            rgba = upright.convert("RGBA")
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Failed to load image {source.filename}: {exc}") from exc

    if rgba.width == 0 or rgba.height == 0:
        raise DecodeError(f"Failed to load image {source.filename}: zero-sized image")
    return rgba


def normalize(
    source: SourceImage,
    target_size: int = DEFAULT_CANVAS_SIZE,
    fill_color: RGB = DEFAULT_FILL_COLOR,
    *,
    max_pixels: int | None = None,
) -> CanonicalCanvas:
    """Letterbox ``source`` onto a ``target_size`` square filled with ``fill_color``.

    Transparent source pixels show the fill color. The result depends only
    on the input bytes and parameters.

    Raises:
        DecodeError: If the source cannot be decoded.
    """
    image = decode_image(source, max_pixels=max_pixels)
    placement = letterbox(image.width, image.height, target_size)

    scaled = image.resize((placement.width, placement.height), RESAMPLING)
    canvas = Image.new("RGB", (target_size, target_size), fill_color)
    canvas.paste(scaled, (placement.x, placement.y), mask=scaled)

    pixels = np.array(canvas, dtype=np.uint8)
    pixels.flags.writeable = False
    return CanonicalCanvas(
        filename=source.filename,
        pixels=pixels,
        fill_color=fill_color,
        placement=placement,
    )
