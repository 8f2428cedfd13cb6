"""Image preprocessing: decoding, centered square crop, and resize to model input size.

The crop always takes the largest centered square of the source, so the
resize step only scales and never letterboxes or crops again.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image as PILImage
from PIL import ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_SUPPORTED_CHANNELS = (1, 3, 4)


class PreprocessError(Exception):
    """Base class for failures while turning a photo into model input."""


class CropFailedError(PreprocessError):
    """The source image has no usable pixel buffer or the crop area is empty."""


class DecodeError(PreprocessError):
    """Uploaded bytes could not be decoded or exceed the pixel limit."""


@dataclass(frozen=True)
class Image:
    """Immutable pixel buffer plus display metadata.

    ``pixels`` is an HxW or HxWxC uint8 array. It is copied on construction and
    the copy is marked read-only, so the caller's buffer stays writable.
    ``orientation`` is the EXIF orientation code (1 = up) and ``scale`` the
    display scale factor; both are carried through preprocessing unchanged.
    """

    pixels: NDArray[np.uint8] | None
    orientation: int = 1
    scale: float = 1.0

    def __post_init__(self) -> None:
        if self.pixels is not None:
            owned = np.array(self.pixels, copy=True)
            owned.setflags(write=False)
            object.__setattr__(self, "pixels", owned)

    @property
    def width(self) -> int:
        if self.pixels is None or self.pixels.ndim < 2:
            return 0
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        if self.pixels is None or self.pixels.ndim < 2:
            return 0
        return int(self.pixels.shape[0])


def center_square(width: int, height: int) -> tuple[int, int, int]:
    """Return ``(x, y, side)`` of the largest square centered in a width x height frame."""
    side = min(width, height)
    if width < height:
        return 0, (height - width) // 2, side
    return (width - height) // 2, 0, side


def crop_and_resize(image: Image, target_size: int) -> Image:
    """Crop ``image`` to its centered square and scale it to target_size x target_size.

    Raises:
        CropFailedError: If the image has no usable uint8 pixel buffer (1, 3 or 4
            channels) or a zero dimension.
        ValueError: If ``target_size`` is not positive.
    """
    if target_size <= 0:
        raise ValueError(f"target_size must be positive, got {target_size}")

    pixels = image.pixels
    if pixels is None or pixels.ndim not in (2, 3):
        raise CropFailedError("Image has no usable pixel buffer")
    if pixels.dtype != np.uint8:
        raise CropFailedError(f"Expected uint8 pixels, got {pixels.dtype}")
    if pixels.ndim == 3 and pixels.shape[2] not in _SUPPORTED_CHANNELS:
        raise CropFailedError(f"Unsupported channel count {pixels.shape[2]}")

    x, y, side = center_square(image.width, image.height)
    if side == 0:
        raise CropFailedError(f"Cannot crop a {image.width}x{image.height} image")

    cropped = np.ascontiguousarray(pixels[y : y + side, x : x + side])
    if cropped.ndim == 3 and cropped.shape[2] == 1:
        cropped = cropped[:, :, 0]
    resized = PILImage.fromarray(cropped).resize(
        (target_size, target_size),
        resample=PILImage.Resampling.BILINEAR,
    )
    return replace(image, pixels=np.asarray(resized, dtype=np.uint8))


def decode_image(data: bytes, max_pixels: int) -> Image:
    """Decode raw file bytes into an upright RGB Image.

    Raises:
        DecodeError: If the bytes are not a supported image or the image is too large.
    """
    try:
        with PILImage.open(io.BytesIO(data)) as source:
            width, height = source.size
            if width * height > max_pixels:
                raise DecodeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            upright = ImageOps.exif_transpose(source)
            rgb = upright.convert("RGB")
    except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError) as exc:
        raise DecodeError(f"Unable to decode image: {exc}") from exc

    logger.debug("Decoded %dx%d image", rgb.width, rgb.height)
    return Image(pixels=np.asarray(rgb, dtype=np.uint8))
