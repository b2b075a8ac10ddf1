"""
image_target.py - Single-image compression to a maximum size.

Steps JPEG quality down, and dimensions once quality bottoms out, until
the output fits under the target. The step sizes depend on how tight
the target is. Bounded to MAX_ATTEMPTS encodes.
"""

import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image

from .rasterize import load_image

logger = logging.getLogger(__name__)

START_QUALITY = 95
MIN_QUALITY = 10
MAX_ATTEMPTS = 20
MIN_DIMENSION = 400


@dataclass(frozen=True)
class StepPolicy:
    """Quality step, and what to do once quality reaches its floor."""
    quality_step: int
    quality_floor: int
    scale: float
    reset_quality: int


# (max target KB, policy), first match wins
STEP_POLICIES = (
    (90, StepPolicy(quality_step=15, quality_floor=30, scale=0.85, reset_quality=60)),
    (250, StepPolicy(quality_step=10, quality_floor=40, scale=0.90, reset_quality=70)),
    (float("inf"), StepPolicy(quality_step=8, quality_floor=50, scale=0.95, reset_quality=75)),
)


@dataclass
class ImageCompressionResult:
    """Result of compressing one image."""
    success: bool
    original_size: int = 0
    compressed_size: int = 0
    compression_ratio: float = 0.0
    final_quality: int = 0
    final_dimensions: Tuple[int, int] = (0, 0)
    attempts: int = 0
    reached_target: bool = False
    output_path: Optional[Path] = None
    data: Optional[bytes] = None
    error: Optional[str] = None


def policy_for_target(target_kb: float) -> StepPolicy:
    for limit, policy in STEP_POLICIES:
        if target_kb <= limit:
            return policy
    return STEP_POLICIES[-1][1]


def _encode(
    img: Image.Image,
    size: Tuple[float, float],
    quality: int
) -> Tuple[bytes, Tuple[int, int]]:
    width, height = round(size[0]), round(size[1])
    if (width, height) != img.size:
        # Fit inside the box, keep aspect
        img = img.copy()
        img.thumbnail((width, height), Image.LANCZOS)

    buffer = io.BytesIO()
    img.save(
        buffer,
        format="JPEG",
        quality=quality,
        optimize=True,
        progressive=True,
        subsampling=2  # 4:2:0 chroma subsampling
    )
    return buffer.getvalue(), img.size


def compress_image_to_target(
    source: Union[bytes, str, os.PathLike],
    target_kb: float,
    output_path: Optional[Path] = None
) -> ImageCompressionResult:
    """
    Compress an image to at most target_kb, as JPEG.

    An image already under target is kept byte-for-byte. If the target
    cannot be reached within MAX_ATTEMPTS (or the image would drop under
    MIN_DIMENSION pixels) the last attempt is returned.

    Args:
        source: Image bytes or path
        target_kb: Maximum output size in KB
        output_path: Where to write the result (optional)
    """
    result = ImageCompressionResult(success=False, output_path=output_path)

    try:
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
        else:
            data = Path(source).read_bytes()
        result.original_size = len(data)
        img = load_image(data)
        target_bytes = target_kb * 1024

        logger.info(
            f"[Image] Original: {img.width}x{img.height} = "
            f"{len(data) / 1024:.1f}KB, target {target_kb}KB"
        )

        if len(data) <= target_bytes:
            logger.info("[Image] Already below target, kept as-is")
            output = data
            result.final_quality = 100
            result.final_dimensions = img.size
            result.reached_target = True
        else:
            policy = policy_for_target(target_kb)
            quality = START_QUALITY
            size = [float(img.width), float(img.height)]
            output = b""

            while result.attempts < MAX_ATTEMPTS:
                result.attempts += 1
                output, result.final_dimensions = _encode(img, size, quality)
                result.final_quality = quality

                logger.debug(
                    f"[Image] Attempt {result.attempts}: {result.final_dimensions[0]}x"
                    f"{result.final_dimensions[1]} Q{quality} = {len(output) / 1024:.1f}KB"
                )

                if len(output) <= target_bytes:
                    result.reached_target = True
                    break

                if quality > policy.quality_floor:
                    quality = max(MIN_QUALITY, quality - policy.quality_step)
                else:
                    size = [size[0] * policy.scale, size[1] * policy.scale]
                    quality = policy.reset_quality

                if size[0] < MIN_DIMENSION or size[1] < MIN_DIMENSION:
                    logger.warning(
                        f"[Image] Dimensions too small, stopping at "
                        f"{round(size[0])}x{round(size[1])}"
                    )
                    break

            if not result.reached_target:
                logger.warning(
                    f"[Image] Could not reach {target_kb}KB after {result.attempts} attempts"
                )

        if output_path is not None:
            Path(output_path).write_bytes(output)

        result.data = output
        result.compressed_size = len(output)
        result.compression_ratio = round((1 - len(output) / len(data)) * 100, 1)
        result.success = True

        logger.info(
            f"[Image] Final: {len(output) / 1024:.1f}KB (target {target_kb}KB), "
            f"{result.compression_ratio:.1f}% reduction"
        )

    except Exception as e:
        logger.error(f"Image compression failed: {e}")
        result.error = str(e)

    return result
