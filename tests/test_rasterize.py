import numpy as np
import pytest
from PIL import Image

from conftest import make_pdf, png_bytes, scan_like_image
from doc_compressor.errors import ExtractionError
from doc_compressor.rasterize import (
    MAX_DPI,
    get_page_count,
    is_pdf,
    iter_page_images,
    load_image,
    rasterize_document,
)


def close_to(actual, expected, slack=1):
    return all(abs(a - e) <= slack for a, e in zip(actual, expected))


def test_pdf_pages_in_order_with_dimensions(three_page_pdf, tmp_path):
    pages = rasterize_document(three_page_pdf, tmp_path / "pages")

    assert [p.index for p in pages] == [0, 1, 2]
    expected = [(600, 800), (300, 400), (500, 700)]
    for page, size in zip(pages, expected):
        assert close_to((page.width, page.height), size)
        assert page.path.exists()
        assert page.area == page.width * page.height
        assert page.load().shape == (page.height, page.width, 3)


def test_render_dpi_is_clamped():
    pdf = make_pdf([scan_like_image(150, 150)])
    image = next(iter_page_images(pdf, dpi=MAX_DPI * 4))
    assert close_to(image.shape[:2], (300, 300))


def test_image_input_is_a_single_page(tmp_path):
    data = png_bytes(scan_like_image(320, 240))
    pages = rasterize_document(data, tmp_path)

    assert len(pages) == 1
    assert (pages[0].width, pages[0].height) == (320, 240)


def test_transparency_is_flattened_on_white():
    rgba = Image.new("RGBA", (10, 10), (255, 0, 0, 0))
    buffer = png_bytes(np.array(rgba))

    img = load_image(buffer)
    assert img.mode == "RGB"
    assert img.getpixel((5, 5)) == (255, 255, 255)


def test_pdf_header_detection():
    assert is_pdf(b"%PDF-1.7\n...")
    assert is_pdf(b"\0" * 100 + b"%PDF-1.4")
    assert not is_pdf(b"\x89PNG\r\n\x1a\n")


def test_page_count(three_page_pdf):
    assert get_page_count(three_page_pdf) == 3
    assert get_page_count(png_bytes(scan_like_image(10, 10))) == 1


@pytest.mark.parametrize("data", [
    b"%PDF-1.4\nthis is not a pdf",
    b"not a document at all",
])
def test_corrupt_input_raises_extraction_error(data, tmp_path):
    with pytest.raises(ExtractionError):
        rasterize_document(data, tmp_path)
