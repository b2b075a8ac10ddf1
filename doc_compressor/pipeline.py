"""
pipeline.py - Band-seeking document compression.

Pipeline:
1. Already at or under target? Copy as-is.
2. Ghostscript pass for eligible PDFs, kept only if it lands in band
3. Rasterize pages
4. Quality search (JPEG quality -> downscale -> 4:2:0)
5. Lossless bump if the result is under the band
6. Write PDF

Each call owns a private temp workspace that is removed afterwards.
"""

import logging
import multiprocessing
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .compression import (
    EncodedPage,
    EncodingSettings,
    clamp_contrast_boost,
    encode_page,
    is_grayscale_image,
)
from .errors import ExtractionError
from .ghostscript import DEFAULT_TIMEOUT, compress_with_ghostscript, detect_ghostscript
from .inflation import inflate
from .pdf_writer import assemble
from .rasterize import (
    DEFAULT_DPI,
    PageRaster,
    get_page_count,
    is_pdf,
    iter_page_images,
    rasterize_document,
)
from .search import SizeBand, search_quality

logger = logging.getLogger(__name__)

# Working band: ~290 KB documents
DEFAULT_BAND = SizeBand(min_kb=275, max_kb=295, target_kb=290)

# Not band-limited to the working band, raster pipeline only
EXTREME_BAND = SizeBand(min_kb=95, max_kb=105, target_kb=100)

# Input sizes where Ghostscript is worth a try
GS_MIN_KB = 300
GS_MAX_KB = 1000 * 1024

# Sanity bound for analysis
MAX_FEASIBLE_MB = 1000

ANALYSIS_DPI = 36

Source = Union[bytes, bytearray, str, os.PathLike]


@dataclass
class CompressorConfig:
    """Per-service settings; nothing here changes between calls."""
    temp_root: Optional[Path] = None  # None = system temp
    dpi: int = DEFAULT_DPI
    max_workers: int = 0  # 0 = CPU count, 1 = sequential
    ghostscript: Optional[str] = None  # None = auto-detect
    use_ghostscript: bool = True
    ghostscript_timeout: int = DEFAULT_TIMEOUT
    default_band: SizeBand = DEFAULT_BAND

    @classmethod
    def from_env(cls) -> "CompressorConfig":
        """
        Build config from environment variables.

        DOC_COMPRESSOR_TEMP_ROOT, DOC_COMPRESSOR_DPI, DOC_COMPRESSOR_WORKERS,
        DOC_COMPRESSOR_GS (command name, or "off" to disable).
        """
        config = cls()

        temp_root = os.environ.get("DOC_COMPRESSOR_TEMP_ROOT")
        if temp_root:
            config.temp_root = Path(temp_root)

        config.dpi = int(os.environ.get("DOC_COMPRESSOR_DPI", config.dpi))
        config.max_workers = int(os.environ.get("DOC_COMPRESSOR_WORKERS", config.max_workers))

        gs = os.environ.get("DOC_COMPRESSOR_GS")
        if gs and gs.lower() == "off":
            config.use_ghostscript = False
        elif gs:
            config.ghostscript = gs

        return config


@dataclass
class CompressionOptions:
    """How the output should look."""
    grayscale: bool = False
    contrast_boost: float = 0.0  # 0..0.2
    force_external_tool: bool = False  # skip the Ghostscript size-range check

    def __post_init__(self):
        self.contrast_boost = clamp_contrast_boost(self.contrast_boost)


@dataclass
class CompressionRequest:
    """One document to compress."""
    source: Source
    output_path: Optional[Path] = None
    band: Optional[SizeBand] = None  # None = config default band
    options: CompressionOptions = field(default_factory=CompressionOptions)


@dataclass
class CompressionResult:
    """Result of compressing one document."""
    success: bool
    method: Optional[str] = None
    original_size: int = 0
    compressed_size: int = 0
    compression_ratio: float = 0.0  # percent saved
    error: Optional[str] = None
    output_path: Optional[Path] = None
    data: Optional[bytes] = field(default=None, repr=False)
    band: Optional[SizeBand] = None
    total_time: float = 0.0

    @property
    def compressed_kb(self) -> float:
        return self.compressed_size / 1024

    @property
    def in_band(self) -> bool:
        return self.success and self.band is not None and self.band.contains(self.compressed_kb)

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "method": self.method,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "compression_ratio": self.compression_ratio,
        }

    def summary(self) -> str:
        if not self.success:
            return f"Failed: {self.error}"
        return (
            f"Method: {self.method}\n"
            f"Before: {self.original_size / 1024:.1f}KB ({self.original_size:,} bytes)\n"
            f"After:  {self.compressed_kb:.1f}KB ({self.compressed_size:,} bytes)\n"
            f"Reduction: {self.compression_ratio:.1f}%\n"
            f"In band {self.band}: {'Yes' if self.in_band else 'No'}\n"
            f"Time: {self.total_time:.1f}s"
        )


@dataclass
class DocumentAnalysis:
    """What compressing a document would involve."""
    original_size: int
    page_count: int
    target_kb: float
    compression_ratio_needed: float  # original KB / target KB
    feasible: bool
    recommended_method: str
    ghostscript_available: bool
    grayscale_pages: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "original_size_mb": self.original_size / 1024 / 1024,
            "page_count": self.page_count,
            "target_kb": self.target_kb,
            "compression_ratio_needed": round(self.compression_ratio_needed, 1),
            "feasible": self.feasible,
            "recommended_method": self.recommended_method,
            "ghostscript_available": self.ghostscript_available,
            "grayscale_pages": self.grayscale_pages,
        }


class RasterDocumentBuilder:
    """
    Encodes page rasters and assembles them into a PDF for given settings.

    Lossy pages are cached per (page, settings), so candidates that differ
    in one page only re-encode that page. Lossless pages are never cached:
    inflation builds each one exactly once. Page pixels are reloaded from
    the workspace PNG on every encode, so no decoded page outlives it.
    """

    def __init__(
        self,
        pages: Sequence[PageRaster],
        grayscale: bool = False,
        contrast_boost: float = 0.0,
        max_workers: int = 1
    ):
        self.pages = sorted(pages, key=lambda p: p.index)
        self.grayscale = grayscale
        self.contrast_boost = clamp_contrast_boost(contrast_boost)
        self.max_workers = max(1, max_workers)
        self._encoded: Dict[Tuple, EncodedPage] = {}
        self.builds = 0

    @property
    def page_areas(self) -> List[int]:
        return [p.area for p in self.pages]

    @staticmethod
    def _cache_key(index: int, settings: EncodingSettings) -> Tuple:
        return index, settings.scale, settings.quality, settings.subsampling

    def encode(self, page: PageRaster, settings: EncodingSettings) -> EncodedPage:
        if settings.lossless_page == page.index:
            return self._encode(page, settings)

        key = self._cache_key(page.index, settings)
        encoded = self._encoded.get(key)
        if encoded is None:
            encoded = self._encode(page, settings)
            self._encoded[key] = encoded
        return encoded

    def _encode(self, page: PageRaster, settings: EncodingSettings) -> EncodedPage:
        return encode_page(
            page.load(),
            page.index,
            settings,
            grayscale=self.grayscale,
            contrast_boost=self.contrast_boost
        )

    def build(self, settings: EncodingSettings) -> bytes:
        """Encode every page (in parallel when allowed) and assemble the PDF."""
        self.builds += 1

        if self.max_workers == 1 or len(self.pages) == 1:
            encoded = [self.encode(page, settings) for page in self.pages]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                encoded = list(executor.map(lambda page: self.encode(page, settings), self.pages))

        return assemble(encoded)

    __call__ = build


def _read_source(source: Source) -> Tuple[bytes, Optional[Path]]:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source), None
    path = Path(source)
    return path.read_bytes(), path


def _write_output(output_path: Path, data: bytes):
    """Write via a sibling temp file so a failure never leaves a partial output."""
    output_path = Path(output_path)
    partial = output_path.with_name(f".{output_path.name}.partial")
    try:
        partial.write_bytes(data)
        os.replace(partial, output_path)
    except OSError:
        partial.unlink(missing_ok=True)
        raise


def _log_summary(method: str, before: Optional[int], after: Optional[int], band: SizeBand):
    if before is None or after is None:
        return
    delta_kb = (after - before) / 1024
    pct = (1 - after / before) * 100 if before else 0.0
    met = "Yes" if band.contains(after / 1024) else "No"
    logger.info(
        f"[{method}] Before: {before / 1024:.1f}KB | After: {after / 1024:.1f}KB | "
        f"Δ {delta_kb:.1f}KB ({pct:.1f}%) | in {band.min_kb:g}-{band.max_kb:g}KB: {met}"
    )


class DocumentCompressor:
    """
    Stateless compression service.

    Holds configuration and the detected Ghostscript command only, so a
    single instance can serve concurrent calls.
    """

    def __init__(self, config: Optional[CompressorConfig] = None):
        self.config = config or CompressorConfig()

        self.gs_command: Optional[str] = None
        if self.config.use_ghostscript:
            self.gs_command = self.config.ghostscript or detect_ghostscript()

        # Auto-detect workers
        self.max_workers = self.config.max_workers
        if self.max_workers <= 0:
            self.max_workers = multiprocessing.cpu_count()

    @property
    def ghostscript_available(self) -> bool:
        return self.gs_command is not None

    def _workspace(self) -> tempfile.TemporaryDirectory:
        temp_root = self.config.temp_root
        if temp_root is not None:
            Path(temp_root).mkdir(parents=True, exist_ok=True)
        return tempfile.TemporaryDirectory(
            prefix="doc-compress-",
            dir=temp_root,
            ignore_cleanup_errors=True
        )

    def _external_tool_eligible(self, data: bytes, options: CompressionOptions) -> bool:
        if not self.ghostscript_available or not is_pdf(data):
            return False
        if options.force_external_tool:
            return True
        return GS_MIN_KB <= len(data) / 1024 <= GS_MAX_KB

    def compress(self, request: CompressionRequest) -> CompressionResult:
        """
        Compress one document into its band.

        Never raises: every failure is reported as success=False.
        """
        return self._run(request, raster_only=False)

    def compress_raster(self, request: CompressionRequest) -> CompressionResult:
        """Raster pipeline only: no size short-circuit, no Ghostscript."""
        return self._run(request, raster_only=True)

    def _run(self, request: CompressionRequest, raster_only: bool) -> CompressionResult:
        band = request.band or self.config.default_band
        result = CompressionResult(success=False, band=band, output_path=request.output_path)
        start_time = time.time()

        try:
            data, input_path = _read_source(request.source)
            result.original_size = len(data)
            if not data:
                raise ExtractionError("Input is empty")

            logger.info(f"Original size: {len(data) / 1024:.1f}KB, band {band}")

            with self._workspace() as workspace:
                method, output = self._compress(
                    data, input_path, band, request.options, Path(workspace), raster_only
                )

            if request.output_path is not None:
                _write_output(request.output_path, output)

            result.success = True
            result.method = method
            result.data = output
            result.compressed_size = len(output)
            result.compression_ratio = round((1 - len(output) / len(data)) * 100, 1)
            _log_summary(method, result.original_size, result.compressed_size, band)

        except Exception as e:
            logger.error(f"Compression failed: {e}")
            result.error = str(e)

        result.total_time = time.time() - start_time
        return result

    def _compress(
        self,
        data: bytes,
        input_path: Optional[Path],
        band: SizeBand,
        options: CompressionOptions,
        workspace: Path,
        raster_only: bool
    ) -> Tuple[str, bytes]:
        """Run the strategies in order, returns (method, output bytes)."""
        if not raster_only:
            if len(data) / 1024 <= band.target_kb:
                logger.info("Already at or under target, copying as-is")
                return "none", data

            if self._external_tool_eligible(data, options):
                output = self._try_ghostscript(data, input_path, band, options, workspace)
                if output is not None:
                    return output
                logger.info("Ghostscript miss or fail, switching to raster pipeline")
            else:
                logger.info("Ghostscript unavailable or input out of range, raster pipeline")

        return self._compress_raster(data, band, options, workspace)

    def _try_ghostscript(
        self,
        data: bytes,
        input_path: Optional[Path],
        band: SizeBand,
        options: CompressionOptions,
        workspace: Path
    ) -> Optional[Tuple[str, bytes]]:
        if input_path is None:
            input_path = workspace / "input.pdf"
            input_path.write_bytes(data)
        gs_output = workspace / "ghostscript.pdf"

        outcome = compress_with_ghostscript(
            self.gs_command,
            input_path,
            gs_output,
            band.target_kb,
            grayscale=options.grayscale,
            timeout=self.config.ghostscript_timeout
        )
        if not outcome.success:
            return None

        _log_summary(outcome.method, outcome.original_size, outcome.output_size, band)
        if not band.contains(outcome.output_size / 1024):
            return None
        return outcome.method, gs_output.read_bytes()

    def _compress_raster(
        self,
        data: bytes,
        band: SizeBand,
        options: CompressionOptions,
        workspace: Path
    ) -> Tuple[str, bytes]:
        pages = rasterize_document(data, workspace / "pages", dpi=self.config.dpi)

        builder = RasterDocumentBuilder(
            pages,
            grayscale=options.grayscale,
            contrast_boost=options.contrast_boost,
            max_workers=self.max_workers
        )
        outcome = search_quality(builder, band)
        best = inflate(builder, outcome.best, band, builder.page_areas)

        logger.info(
            f"Raster search: {builder.builds} build(s), "
            f"{best.settings.describe()} -> {best.kb:.1f}KB"
        )
        method = "raster-search" + (":gray" if options.grayscale else "")
        return method, best.data

    def analyze(self, source: Source, band: Optional[SizeBand] = None) -> DocumentAnalysis:
        """
        Describe what compressing a document into the band would take.

        Raises:
            OSError: if the source cannot be read
            ExtractionError: if the document cannot be decoded
        """
        band = band or self.config.default_band
        data, _ = _read_source(source)
        original_kb = len(data) / 1024

        grayscale_pages = [
            index for index, image in enumerate(iter_page_images(data, dpi=ANALYSIS_DPI))
            if is_grayscale_image(image)
        ]

        if original_kb <= band.target_kb:
            recommended = "none"
        elif self._external_tool_eligible(data, CompressionOptions()):
            recommended = "external-tool"
        else:
            recommended = "raster-search"

        return DocumentAnalysis(
            original_size=len(data),
            page_count=get_page_count(data),
            target_kb=band.target_kb,
            compression_ratio_needed=original_kb / band.target_kb,
            feasible=len(data) / 1024 / 1024 < MAX_FEASIBLE_MB,
            recommended_method=recommended,
            ghostscript_available=self.ghostscript_available,
            grayscale_pages=grayscale_pages,
        )


def compress_document(
    source: Source,
    output_path: Optional[Path] = None,
    band: Optional[SizeBand] = None,
    grayscale: bool = False,
    contrast_boost: float = 0.0,
    force_external_tool: bool = False,
    compressor: Optional[DocumentCompressor] = None
) -> CompressionResult:
    """
    Compress a PDF or image into a size band (default 275-295 KB).

    Args:
        source: Input bytes or path
        output_path: Where to write the result (optional, bytes are in result.data)
        band: Target window, defaults to DEFAULT_BAND
        grayscale: Single-channel output
        contrast_boost: 0..0.2 legibility boost
        force_external_tool: Try Ghostscript regardless of input size
        compressor: Service to use (a new one is built if omitted)

    Returns:
        CompressionResult
    """
    compressor = compressor or DocumentCompressor()
    request = CompressionRequest(
        source=source,
        output_path=Path(output_path) if output_path is not None else None,
        band=band,
        options=CompressionOptions(
            grayscale=grayscale,
            contrast_boost=contrast_boost,
            force_external_tool=force_external_tool
        )
    )
    return compressor.compress(request)


def extreme_compression(
    source: Source,
    output_path: Optional[Path] = None,
    compressor: Optional[DocumentCompressor] = None
) -> CompressionResult:
    """Force the raster pipeline towards ~100 KB."""
    compressor = compressor or DocumentCompressor(CompressorConfig(use_ghostscript=False))
    request = CompressionRequest(
        source=source,
        output_path=Path(output_path) if output_path is not None else None,
        band=EXTREME_BAND
    )
    return compressor.compress_raster(request)


def analyze_document(
    source: Source,
    band: Optional[SizeBand] = None,
    compressor: Optional[DocumentCompressor] = None
) -> DocumentAnalysis:
    compressor = compressor or DocumentCompressor()
    return compressor.analyze(source, band)


def check_ghostscript_installed() -> bool:
    return detect_ghostscript() is not None
