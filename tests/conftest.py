"""Shared fixtures: synthetic scans, PDFs and fake document builders."""

import io

import numpy as np
import pytest
from PIL import Image

try:
    import fitz
except ImportError:
    import pymupdf as fitz

from doc_compressor.pipeline import CompressorConfig, DocumentCompressor
from doc_compressor.rasterize import DEFAULT_DPI


def scan_like_image(width: int, height: int, seed: int = 0, noise: float = 8.0) -> np.ndarray:
    """RGB gradient with sensor-like noise and a few dark "text" bars."""
    rng = np.random.default_rng(seed)
    x = np.linspace(0, 1, width)[None, :]
    y = np.linspace(0, 1, height)[:, None]
    base = np.stack([
        200 + 40 * x * np.ones_like(y),
        190 + 50 * y * np.ones_like(x),
        210 - 30 * x * y,
    ], axis=-1)
    for row in range(40, height - 40, 60):
        base[row:row + 12, 40:width - 40] = 30
    image = base + rng.normal(0, noise, base.shape)
    return np.clip(image, 0, 255).astype(np.uint8)


def png_bytes(image: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format="PNG")
    return buffer.getvalue()


def make_pdf(images, dpi: int = DEFAULT_DPI) -> bytes:
    """One full-page lossless image per page, sized so rendering at dpi gives back the pixels."""
    doc = fitz.open()
    for image in images:
        height, width = image.shape[:2]
        page = doc.new_page(width=width * 72 / dpi, height=height * 72 / dpi)
        page.insert_image(page.rect, stream=png_bytes(image))
    data = doc.tobytes()
    doc.close()
    return data


def render_pages(data: bytes, dpi: int = 36) -> list:
    """Render every page of a PDF to an RGB array."""
    images = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page in doc:
            pix = page.get_pixmap(dpi=dpi, colorspace=fitz.csRGB, alpha=False)
            images.append(np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, 3))
    return images


class SyntheticBuilder:
    """
    Stands in for the raster document builder.

    size_fn(settings) returns the document size in KB; every call is
    recorded so tests can inspect the order of escalation.
    """

    def __init__(self, size_fn):
        self.size_fn = size_fn
        self.calls = []

    def __call__(self, settings):
        self.calls.append(settings)
        return b"\0" * int(round(self.size_fn(settings) * 1024))


@pytest.fixture
def compressor(tmp_path):
    config = CompressorConfig(temp_root=tmp_path / "work", use_ghostscript=False, max_workers=1)
    return DocumentCompressor(config)


@pytest.fixture
def single_page_pdf():
    return make_pdf([scan_like_image(600, 800, seed=1)])


@pytest.fixture
def three_page_pdf():
    return make_pdf([
        scan_like_image(600, 800, seed=1),
        scan_like_image(300, 400, seed=2),
        scan_like_image(500, 700, seed=3),
    ])
