"""
compression.py - Page raster encoding.

Supports:
- JPEG with selectable chroma subsampling (4:4:4 or 4:2:0)
- Lossless deflate of raw samples with a compression-effort level

Every encode resizes first, then applies grayscale and the optional
contrast boost, so lossy and lossless pages look the same.
"""

import io
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from PIL import Image
import cv2

from .errors import EncodingError

logger = logging.getLogger(__name__)

# Saturation threshold for "effectively grayscale" detection
GRAYSCALE_SATURATION_THRESHOLD = 10  # Out of 255

MAX_CONTRAST_BOOST = 0.2


class Subsampling(str, Enum):
    """JPEG chroma subsampling."""
    HIGH_FIDELITY = "4:4:4"
    AGGRESSIVE = "4:2:0"

    @property
    def pillow_value(self) -> int:
        return 0 if self is Subsampling.HIGH_FIDELITY else 2


@dataclass(frozen=True)
class EncodingSettings:
    """Everything needed to encode a full candidate document."""
    quality: int = 90
    subsampling: Subsampling = Subsampling.HIGH_FIDELITY
    scale: float = 1.0
    lossless_page: Optional[int] = None  # index of the one page stored losslessly
    lossless_level: int = 9  # zlib effort, 9 = smallest

    def describe(self) -> str:
        text = f"q={self.quality} {self.subsampling.value} scale={self.scale:.2f}"
        if self.lossless_page is not None:
            text += f" lossless=p{self.lossless_page}@{self.lossless_level}"
        return text


@dataclass
class EncodedPage:
    """Encoded page data ready for PDF embedding."""
    index: int
    data: bytes
    width: int
    height: int
    is_color: bool
    is_lossless: bool = False  # True if deflated raw samples, False if JPEG

    @property
    def total_size(self) -> int:
        return len(self.data)


def is_grayscale_image(image: np.ndarray) -> bool:
    """
    Check if image is effectively grayscale based on saturation.

    Only returns True if the entire page has very low saturation.
    """
    if len(image.shape) != 3 or image.shape[2] != 3:
        return True  # Already grayscale

    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV)
    mean_saturation = np.mean(hsv[:, :, 1])

    is_gray = mean_saturation < GRAYSCALE_SATURATION_THRESHOLD
    logger.debug(f"Mean saturation: {mean_saturation:.1f}, is_grayscale: {is_gray}")

    return is_gray


def clamp_contrast_boost(boost: float) -> float:
    return max(0.0, min(MAX_CONTRAST_BOOST, float(boost or 0.0)))


def scaled_size(width: int, height: int, scale: float) -> tuple:
    if scale == 1.0:
        return width, height
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def apply_contrast_boost(image: np.ndarray, boost: float) -> np.ndarray:
    """
    Linear contrast gain followed by a gamma curve for small-text legibility.

    gain = 1 + 0.6 * boost, gamma = 1 - 0.2 * boost. boost=0 is a no-op.
    """
    boost = clamp_contrast_boost(boost)
    if boost == 0:
        return image

    gain = 1 + boost * 0.6
    gamma = 1 - boost * 0.2

    levels = np.arange(256, dtype=np.float64)
    boosted = np.clip(levels * gain, 0, 255)
    curve = 255.0 * np.power(boosted / 255.0, 1.0 / gamma)
    lut = np.clip(np.round(curve), 0, 255).astype(np.uint8)

    return cv2.LUT(image, lut)


def prepare_image(
    image: np.ndarray,
    scale: float = 1.0,
    grayscale: bool = False,
    contrast_boost: float = 0.0
) -> np.ndarray:
    """
    Resize, then optionally convert to single channel and boost contrast.

    Args:
        image: RGB numpy array
        scale: Resize factor (1.0 = unchanged)
        grayscale: Convert to single-channel
        contrast_boost: 0..0.2

    Returns:
        RGB (H, W, 3) or grayscale (H, W) array
    """
    height, width = image.shape[:2]
    new_width, new_height = scaled_size(width, height, scale)
    if (new_width, new_height) != (width, height):
        image = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_LANCZOS4)

    if grayscale and len(image.shape) == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)

    return apply_contrast_boost(image, contrast_boost)


def encode_jpeg(
    image: np.ndarray,
    quality: int = 90,
    subsampling: Subsampling = Subsampling.HIGH_FIDELITY
) -> bytes:
    """
    Encode a prepared RGB or grayscale array as JPEG.

    Subsampling has no effect on single-channel images.
    """
    img = Image.fromarray(np.ascontiguousarray(image))

    buffer = io.BytesIO()
    img.save(
        buffer,
        format="JPEG",
        quality=int(quality),
        optimize=True,
        progressive=True,
        subsampling=subsampling.pillow_value
    )
    return buffer.getvalue()


def encode_lossless(image: np.ndarray, level: int = 9) -> bytes:
    """
    Deflate raw 8-bit samples (FlateDecode-ready).

    level 9 = most compressed, 0 = stored.
    """
    level = max(0, min(9, int(level)))
    return zlib.compress(np.ascontiguousarray(image).tobytes(), level)


def encode_page(
    image: np.ndarray,
    index: int,
    settings: EncodingSettings,
    grayscale: bool = False,
    contrast_boost: float = 0.0
) -> EncodedPage:
    """
    Encode one page raster according to document-wide settings.

    The page listed in settings.lossless_page is deflated; every other
    page is JPEG.

    Raises:
        EncodingError: if resizing or encoding fails
    """
    lossless = settings.lossless_page == index

    try:
        prepared = prepare_image(image, settings.scale, grayscale, contrast_boost)
        if lossless:
            data = encode_lossless(prepared, settings.lossless_level)
        else:
            data = encode_jpeg(prepared, settings.quality, settings.subsampling)
    except (cv2.error, OSError, ValueError) as e:
        raise EncodingError(f"Page {index} encode failed ({settings.describe()}): {e}") from e

    height, width = prepared.shape[:2]
    is_color = len(prepared.shape) == 3

    logger.debug(
        f"Page {index}: {len(data):,} bytes | {width}x{height} | "
        f"color={is_color} | {'lossless' if lossless else 'jpeg'} {settings.describe()}"
    )

    return EncodedPage(
        index=index,
        data=data,
        width=width,
        height=height,
        is_color=is_color,
        is_lossless=lossless
    )
