"""
rasterize.py - Input document to page rasters using PyMuPDF.

PDF pages are rendered in memory and written as PNG files into the
request workspace. A plain image input becomes a single implicit page.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
try:
    import fitz  # pip install pymupdf
except ImportError:
    import pymupdf as fitz  # apt install python3-pymupdf

from .errors import ExtractionError

logger = logging.getLogger(__name__)

# Working resolution for PDF pages
DEFAULT_DPI = 150
MIN_DPI = 50
MAX_DPI = 300

PAGE_FILE_PATTERN = "page-{:04d}.png"


@dataclass
class PageRaster:
    """One rendered page, backed by a PNG in the request workspace."""
    index: int
    width: int
    height: int
    path: Path

    @property
    def area(self) -> int:
        return self.width * self.height

    def load(self) -> np.ndarray:
        """Load the page as an RGB numpy array."""
        with Image.open(self.path) as img:
            return np.array(img.convert("RGB"))


def is_pdf(data: bytes) -> bool:
    """PDF header may be preceded by up to 1 KB of junk."""
    return b"%PDF-" in data[:1024]


def get_page_count(data: bytes) -> int:
    """Page count of a PDF, or 1 for an image."""
    if not is_pdf(data):
        return 1
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            return len(doc)
    except (RuntimeError, ValueError) as e:
        raise ExtractionError(f"Cannot open PDF: {e}") from e


def flatten_to_rgb(img: Image.Image) -> Image.Image:
    """Composite any transparency onto white and return an RGB image."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return img.convert("RGB")


def iter_pdf_pages(data: bytes, dpi: int = DEFAULT_DPI) -> Iterator[np.ndarray]:
    """
    Render every page of a PDF to an RGB numpy array, in page order.

    Args:
        data: PDF bytes
        dpi: Render DPI (clamped to 50-300)

    Raises:
        ExtractionError: if the PDF cannot be opened, rendered or has no pages
    """
    dpi = max(MIN_DPI, min(dpi, MAX_DPI))

    # Calculate zoom factor (72 DPI is PDF default)
    zoom = dpi / 72.0
    matrix = fitz.Matrix(zoom, zoom)

    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if len(doc) == 0:
                raise ExtractionError("PDF has no pages")

            for page_num, page in enumerate(doc):
                pixmap = page.get_pixmap(matrix=matrix, alpha=False, colorspace=fitz.csRGB)

                image = np.frombuffer(pixmap.samples, dtype=np.uint8).reshape(
                    pixmap.height, pixmap.width, pixmap.n
                )

                logger.debug(
                    f"Rasterized page {page_num}: {pixmap.width}x{pixmap.height} @ {dpi} DPI"
                )
                yield np.ascontiguousarray(image[:, :, :3])
    except ExtractionError:
        raise
    except (RuntimeError, ValueError) as e:
        # fitz.FileDataError is a RuntimeError subclass
        raise ExtractionError(f"Cannot rasterize PDF: {e}") from e


def load_image(data: bytes) -> Image.Image:
    """Decode an image input to upright RGB."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            return flatten_to_rgb(img)
    except (UnidentifiedImageError, OSError) as e:
        raise ExtractionError(f"Unsupported or corrupt image: {e}") from e


def iter_page_images(data: bytes, dpi: int = DEFAULT_DPI) -> Iterator[np.ndarray]:
    """RGB arrays for each page of a PDF, or the single page of an image."""
    if is_pdf(data):
        yield from iter_pdf_pages(data, dpi=dpi)
    else:
        yield np.array(load_image(data))


def rasterize_document(data: bytes, workspace: Path, dpi: int = DEFAULT_DPI) -> List[PageRaster]:
    """
    Rasterize a PDF or image input into ordered page rasters.

    Each page is written to the workspace so only one decoded page is
    held in memory here.
    """
    workspace = Path(workspace)
    workspace.mkdir(parents=True, exist_ok=True)

    pages = []
    for index, image in enumerate(iter_page_images(data, dpi=dpi)):
        path = workspace / PAGE_FILE_PATTERN.format(index)
        Image.fromarray(image).save(path, format="PNG", compress_level=1)
        height, width = image.shape[:2]
        pages.append(PageRaster(index=index, width=width, height=height, path=path))

    logger.info(f"Rasterized {len(pages)} page(s)")
    return pages
