"""
ghostscript.py - Ghostscript pdfwrite pass.

Ghostscript cannot aim at an exact size, so the required compression
ratio is mapped to a (DPI, JPEG quality, preset) triple and the tool is
run once. The caller decides whether the result is good enough.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ToolUnavailableError

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5
DEFAULT_TIMEOUT = 600


@dataclass(frozen=True)
class GhostscriptSettings:
    """Downsample resolution, JPEG quality and PDFSETTINGS preset."""
    dpi: int
    quality: int
    preset: str


@dataclass
class GhostscriptOutcome:
    """Result of one Ghostscript run."""
    success: bool
    settings: Optional[GhostscriptSettings] = None
    original_size: int = 0
    output_size: int = 0
    error: Optional[str] = None
    grayscale: bool = False

    @property
    def method(self) -> str:
        method = f"external-tool:{self.settings.preset}" if self.settings else "external-tool"
        return method + (":gray" if self.grayscale else "")


def _candidate_commands() -> List[str]:
    if sys.platform == "win32":
        return ["gswin64c", "gswin32c"]
    return ["gs"]


def get_gs_command() -> str:
    """
    Get Ghostscript command for this platform.

    Raises:
        ToolUnavailableError: if no candidate answers a version probe
    """
    for cmd in _candidate_commands():
        try:
            result = subprocess.run(
                [cmd, "--version"], capture_output=True, text=True, timeout=PROBE_TIMEOUT
            )
        except (subprocess.SubprocessError, OSError):
            continue
        if result.returncode == 0:
            logger.debug(f"Ghostscript {result.stdout.strip()} found as {cmd}")
            return cmd
    raise ToolUnavailableError("Ghostscript not found. Install gs or gswin64c.")


def detect_ghostscript() -> Optional[str]:
    """Ghostscript command, or None when it is not installed."""
    try:
        return get_gs_command()
    except ToolUnavailableError as e:
        logger.info(f"{e} Raster pipeline only.")
        return None


def settings_for_ratio(ratio_needed: float) -> GhostscriptSettings:
    """
    Map target/original size ratio to Ghostscript settings.

    The harder the squeeze, the lower the resolution and quality.
    """
    if ratio_needed < 0.1:
        return GhostscriptSettings(dpi=72, quality=45, preset="screen")
    if ratio_needed < 0.3:
        return GhostscriptSettings(dpi=96, quality=50, preset="screen")
    if ratio_needed < 0.5:
        return GhostscriptSettings(dpi=120, quality=60, preset="ebook")
    return GhostscriptSettings(dpi=150, quality=65, preset="ebook")


def build_command(
    gs_cmd: str,
    input_path: Path,
    output_path: Path,
    settings: GhostscriptSettings,
    grayscale: bool = False
) -> List[str]:
    """Full pdfwrite command line for one run."""
    cmd = [
        gs_cmd,
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        f"-dPDFSETTINGS=/{settings.preset}",
        "-dNOPAUSE",
        "-dBATCH",
        "-dQUIET",
        "-dSAFER",
        # Downsample
        "-dDownsampleColorImages=true",
        "-dColorImageDownsampleType=/Bicubic",
        "-dColorImageDownsampleThreshold=1.5",
        "-dDownsampleGrayImages=true",
        "-dGrayImageDownsampleType=/Bicubic",
        "-dGrayImageDownsampleThreshold=1.5",
        "-dDownsampleMonoImages=true",
        "-dMonoImageDownsampleType=/Subsample",
        "-dMonoImageDownsampleThreshold=1.5",
        # Force JPEG for continuous-tone images
        "-dAutoFilterColorImages=false",
        "-dAutoFilterGrayImages=false",
        "-sColorImageFilter=/DCTEncode",
        "-sGrayImageFilter=/DCTEncode",
        f"-dJPEGQ={settings.quality}",
        f"-dColorImageResolution={settings.dpi}",
        f"-dGrayImageResolution={settings.dpi}",
        f"-dMonoImageResolution={settings.dpi * 2}",
        "-dDetectDuplicateImages=true",
        "-dEncodeColorImages=true",
        "-dEncodeGrayImages=true",
        "-dCompressFonts=true",
        "-dSubsetFonts=true",
    ]

    if grayscale:
        cmd += [
            "-sProcessColorModel=DeviceGray",
            "-sColorConversionStrategy=Gray",
            "-dProcessColorModel=/DeviceGray",
            "-dConvertCMYKImagesToRGB=false",
        ]

    cmd += [f"-sOutputFile={output_path}", str(input_path)]
    return cmd


def compress_with_ghostscript(
    gs_cmd: str,
    input_path: Path,
    output_path: Path,
    target_kb: float,
    grayscale: bool = False,
    timeout: int = DEFAULT_TIMEOUT
) -> GhostscriptOutcome:
    """
    Run Ghostscript once with settings picked from the required ratio.

    The output size is reported without checking it against any band.
    Failures are returned, never raised.
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    outcome = GhostscriptOutcome(success=False, grayscale=grayscale)

    try:
        outcome.original_size = input_path.stat().st_size
        ratio_needed = (target_kb * 1024) / outcome.original_size
        outcome.settings = settings_for_ratio(ratio_needed)

        cmd = build_command(gs_cmd, input_path, output_path, outcome.settings, grayscale)
        logger.debug(
            f"Ghostscript ratio={ratio_needed:.3f} -> "
            f"{outcome.settings.preset} {outcome.settings.dpi} DPI q={outcome.settings.quality}"
        )

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        if result.returncode != 0:
            raise RuntimeError(f"Ghostscript failed ({result.returncode}): {result.stderr.strip()}")

        outcome.output_size = output_path.stat().st_size
        outcome.success = True

    except subprocess.TimeoutExpired:
        outcome.error = f"Ghostscript timed out after {timeout}s"
    except (RuntimeError, OSError, subprocess.SubprocessError) as e:
        outcome.error = str(e)

    if outcome.success:
        logger.info(
            f"Ghostscript/{outcome.settings.preset}{' (grayscale)' if grayscale else ''}: "
            f"{outcome.original_size / 1024:.1f}KB -> {outcome.output_size / 1024:.1f}KB"
        )
    else:
        logger.warning(f"Ghostscript pass failed: {outcome.error}")

    return outcome
