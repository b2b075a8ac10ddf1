import io
import zlib

import numpy as np
import pytest
from PIL import Image, JpegImagePlugin

from conftest import scan_like_image
from doc_compressor.compression import (
    EncodingSettings,
    Subsampling,
    apply_contrast_boost,
    clamp_contrast_boost,
    encode_page,
    is_grayscale_image,
    prepare_image,
    scaled_size,
)
from doc_compressor.errors import EncodingError


@pytest.fixture
def page():
    return scan_like_image(600, 800, seed=7)


def test_jpeg_page_keeps_dimensions(page):
    encoded = encode_page(page, 0, EncodingSettings())

    assert encoded.data[:2] == b"\xff\xd8"
    assert (encoded.width, encoded.height) == (600, 800)
    assert encoded.is_color
    assert not encoded.is_lossless


def test_lower_quality_is_smaller(page):
    high = encode_page(page, 0, EncodingSettings(quality=100))
    low = encode_page(page, 0, EncodingSettings(quality=70))
    assert low.total_size < high.total_size


@pytest.mark.parametrize("subsampling, sampling", [
    (Subsampling.HIGH_FIDELITY, 0),
    (Subsampling.AGGRESSIVE, 2),
])
def test_subsampling_is_applied(page, subsampling, sampling):
    encoded = encode_page(page, 0, EncodingSettings(subsampling=subsampling))
    with Image.open(io.BytesIO(encoded.data)) as img:
        assert JpegImagePlugin.get_sampling(img) == sampling


def test_scale_resizes_before_encoding(page):
    encoded = encode_page(page, 0, EncodingSettings(scale=0.5))
    assert (encoded.width, encoded.height) == (300, 400)
    with Image.open(io.BytesIO(encoded.data)) as img:
        assert img.size == (300, 400)


def test_grayscale_page_is_single_channel(page):
    encoded = encode_page(page, 0, EncodingSettings(), grayscale=True)
    assert not encoded.is_color
    with Image.open(io.BytesIO(encoded.data)) as img:
        assert img.mode == "L"


def test_only_the_selected_page_is_lossless(page):
    settings = EncodingSettings(lossless_page=1, lossless_level=6)
    assert not encode_page(page, 0, settings).is_lossless

    encoded = encode_page(page, 1, settings)
    assert encoded.is_lossless
    raw = zlib.decompress(encoded.data)
    assert raw == page.tobytes()


def test_lossless_follows_scale_and_grayscale(page):
    settings = EncodingSettings(scale=0.5, lossless_page=0)
    encoded = encode_page(page, 0, settings, grayscale=True)

    assert (encoded.width, encoded.height) == (300, 400)
    assert len(zlib.decompress(encoded.data)) == 300 * 400


def test_lower_lossless_level_is_not_smaller(page):
    sizes = [
        encode_page(page, 0, EncodingSettings(lossless_page=0, lossless_level=level)).total_size
        for level in (9, 0)
    ]
    assert sizes[1] >= sizes[0]


def test_unencodable_image_raises_encoding_error():
    rgba = np.zeros((20, 20, 4), dtype=np.uint8)
    with pytest.raises(EncodingError):
        encode_page(rgba, 3, EncodingSettings())


def test_scaled_size_never_hits_zero():
    assert scaled_size(600, 800, 1.0) == (600, 800)
    assert scaled_size(600, 800, 0.92) == (552, 736)
    assert scaled_size(1, 1, 0.5) == (1, 1)


def test_contrast_boost_clamps():
    assert clamp_contrast_boost(0.5) == 0.2
    assert clamp_contrast_boost(-1) == 0.0
    assert clamp_contrast_boost(None) == 0.0
    assert clamp_contrast_boost(0.1) == 0.1


def test_zero_contrast_boost_is_noop(page):
    assert apply_contrast_boost(page, 0) is page
    np.testing.assert_array_equal(prepare_image(page), page)


def test_contrast_boost_keeps_range_and_order():
    ramp = np.arange(256, dtype=np.uint8).reshape(16, 16)
    boosted = apply_contrast_boost(ramp, 0.2).ravel()

    assert boosted[0] == 0
    assert boosted[-1] == 255
    assert np.all(np.diff(boosted.astype(int)) >= 0)
    assert not np.array_equal(boosted, ramp.ravel())


def test_is_grayscale_image():
    gray = np.repeat(scan_like_image(64, 64)[:, :, :1], 3, axis=2)
    assert is_grayscale_image(gray)
    assert is_grayscale_image(gray[:, :, 0])

    red = np.zeros((64, 64, 3), dtype=np.uint8)
    red[:, :, 0] = 200
    assert not is_grayscale_image(red)
