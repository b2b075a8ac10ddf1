"""
doc_compressor - Size-targeted compression for scanned paperwork.

Compresses a PDF or raster image into an explicit byte-size band
(e.g. 275-295 KB) instead of "as small as possible". Quality and
resolution are traded for size; a result under the band gets one
lossless page to add bytes back.
"""

from .errors import CompressionError, EncodingError, ExtractionError, ToolUnavailableError
from .image_target import compress_image_to_target
from .pdf_writer import image_to_a4_pdf
from .pipeline import (
    DEFAULT_BAND,
    EXTREME_BAND,
    CompressionOptions,
    CompressionRequest,
    CompressionResult,
    CompressorConfig,
    DocumentCompressor,
    analyze_document,
    check_ghostscript_installed,
    compress_document,
    extreme_compression,
)
from .search import SizeBand

__version__ = "1.0.0"

__all__ = [
    "CompressionError",
    "CompressionOptions",
    "CompressionRequest",
    "CompressionResult",
    "CompressorConfig",
    "DEFAULT_BAND",
    "DocumentCompressor",
    "EXTREME_BAND",
    "EncodingError",
    "ExtractionError",
    "SizeBand",
    "ToolUnavailableError",
    "analyze_document",
    "check_ghostscript_installed",
    "compress_document",
    "compress_image_to_target",
    "extreme_compression",
    "image_to_a4_pdf",
]
