"""
pdf_writer.py - PDF assembly from encoded pages.

Supports:
- JPEG images (DCTDecode)
- Lossless 8-bit images (FlateDecode)

Each page is exactly one image. By default the page is sized to the
image's pixel dimensions and the image fills it.
"""

import io
import logging
from typing import Optional, Sequence, Tuple

import pikepdf
from pikepdf import Pdf, Stream, Dictionary, Name
from PIL import Image

from .compression import EncodedPage

logger = logging.getLogger(__name__)

# A4 in PDF points
A4_WIDTH = 595
A4_HEIGHT = 842
A4_MARGIN = 20


class PDFWriter:
    """
    Assembles encoded pages into a minimal PDF.

    Each page contains exactly one image. No text layers, no masks.
    """

    def __init__(self):
        self.pdf = Pdf.new()

    def add_page(
        self,
        encoded: EncodedPage,
        page_size: Optional[Tuple[float, float]] = None,
        placement: Optional[Tuple[float, float, float, float]] = None
    ):
        """
        Add a page holding one image.

        Args:
            encoded: Encoded page
            page_size: (width, height) in points, defaults to pixel size
            placement: (x, y, width, height) of the image, defaults to full page
        """
        if page_size is None:
            page_size = (encoded.width, encoded.height)
        if placement is None:
            placement = (0, 0, page_size[0], page_size[1])

        self.pdf.add_blank_page(page_size=page_size)
        page = self.pdf.pages[-1]

        colorspace = Name.DeviceRGB if encoded.is_color else Name.DeviceGray
        image_dict = Dictionary({
            '/Type': Name.XObject,
            '/Subtype': Name.Image,
            '/Width': encoded.width,
            '/Height': encoded.height,
            '/ColorSpace': colorspace,
            '/BitsPerComponent': 8,
            '/Filter': Name.FlateDecode if encoded.is_lossless else Name.DCTDecode,
        })
        img_stream = Stream(self.pdf, encoded.data, image_dict)

        xobjects = Dictionary({})
        xobjects['/Im0'] = self.pdf.make_indirect(img_stream)
        page.Resources = Dictionary({'/XObject': xobjects})

        x, y, width, height = placement
        content = f"q\n{width:.4f} 0 0 {height:.4f} {x:.4f} {y:.4f} cm\n/Im0 Do\nQ"
        page.Contents = self.pdf.make_indirect(Stream(self.pdf, content.encode("latin-1")))

        mode = "lossless" if encoded.is_lossless else "jpeg"
        logger.debug(
            f"Added page {encoded.index}: "
            f"{encoded.total_size:,} bytes ({mode}, {'color' if encoded.is_color else 'gray'})"
        )

    def to_bytes(self) -> bytes:
        """Serialize the document."""
        buffer = io.BytesIO()
        self.pdf.save(
            buffer,
            compress_streams=True,
            object_stream_mode=pikepdf.ObjectStreamMode.generate,
            deterministic_id=True
        )
        return buffer.getvalue()

    def close(self):
        self.pdf.close()


def assemble(pages: Sequence[EncodedPage]) -> bytes:
    """
    Create a PDF from encoded pages, one page per image in index order.

    Returns the serialized document.
    """
    writer = PDFWriter()
    try:
        for page in sorted(pages, key=lambda p: p.index):
            writer.add_page(page)
        return writer.to_bytes()
    finally:
        writer.close()


def fit_to_page(
    image_width: int,
    image_height: int,
    page_width: float = A4_WIDTH,
    page_height: float = A4_HEIGHT,
    margin: float = A4_MARGIN
) -> Tuple[float, float, float, float]:
    """Centered (x, y, width, height) that fits the image inside the margins."""
    ratio = min(
        (page_width - 2 * margin) / image_width,
        (page_height - 2 * margin) / image_height
    )
    width = round(image_width * ratio)
    height = round(image_height * ratio)
    return (page_width - width) / 2, (page_height - height) / 2, width, height


def image_to_a4_pdf(jpeg_data: bytes) -> bytes:
    """
    Place an already compressed JPEG on a single A4 page.

    The JPEG is embedded as-is, fitted inside a 20pt margin and centered.
    """
    with Image.open(io.BytesIO(jpeg_data)) as img:
        if img.format != "JPEG":
            raise ValueError(f"Expected JPEG data, got {img.format}")
        width, height = img.size
        is_color = img.mode != "L"
        if img.mode == "CMYK":
            raise ValueError("CMYK JPEG is not supported")

    encoded = EncodedPage(index=0, data=jpeg_data, width=width, height=height, is_color=is_color)

    writer = PDFWriter()
    try:
        writer.add_page(
            encoded,
            page_size=(A4_WIDTH, A4_HEIGHT),
            placement=fit_to_page(width, height)
        )
        data = writer.to_bytes()
    finally:
        writer.close()

    logger.info(f"A4 PDF created from compressed image: {len(data) / 1024:.1f}KB")
    return data
