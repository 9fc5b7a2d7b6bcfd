"""Tests for image encoding and size-bounded compression."""

import base64

import numpy as np
import pytest

from screendoc.core.compression import (
    TARGET_SIZES, EncodedImage, compress, derive_thumbnail, encode_frame, estimate_base64_size
)


def test_estimate_base64_size():
    """Size is payload length times 3/4, with or without data URL header."""
    payload = base64.b64encode(b"x" * 300).decode()
    assert estimate_base64_size(payload) == 300
    assert estimate_base64_size(f"data:image/jpeg;base64,{payload}") == 300
    assert estimate_base64_size("") == 0
    assert estimate_base64_size("data:image/jpeg;base64,") == 0


def test_encode_frame_dimensions(noise_image):
    image = encode_frame(noise_image(320, 200), quality=0.8)
    assert (image.width, image.height) == (320, 200)
    assert image.quality == 0.8
    assert image.mime_type == "image/jpeg"
    assert image.data[:2] == b"\xff\xd8"
    decoded = image.decode()
    assert decoded.shape == (200, 320, 3)


def test_data_url_round_trip(noise_image):
    image = encode_frame(noise_image(64, 48))
    restored = EncodedImage.from_data_url(image.data_url)
    assert restored.data == image.data
    assert (restored.width, restored.height) == (64, 48)


def test_from_data_url_rejects_garbage():
    with pytest.raises(ValueError):
        EncodedImage.from_data_url("data:image/jpeg;base64,")
    with pytest.raises(ValueError):
        EncodedImage.from_data_url("data:image/jpeg;base64," + base64.b64encode(b"not an image").decode())


def test_within_budget_is_identity(noise_image):
    """An image already within budget is returned as the same object."""
    image = encode_frame(noise_image(100, 100))
    assert compress(image, target_bytes=10 * 1024 * 1024) is image


def test_large_noise_meets_thumbnail_budget(noise_image):
    """A 2000x2000 noise image fits a 50KB budget."""
    pixels = noise_image(2000, 2000)
    image = encode_frame(pixels, quality=0.9)
    assert image.estimated_size > TARGET_SIZES["thumbnail"]

    result = compress(image, target_bytes=TARGET_SIZES["thumbnail"], min_quality=0.3)

    assert result.attempts <= 5
    assert len(result.data) <= len(encode_frame(pixels, quality=1.0).data)
    assert result.estimated_size <= TARGET_SIZES["thumbnail"]
    assert result.width < 2000 and result.height < 2000
    # Aspect ratio preserved
    assert abs(result.width - result.height) <= 1


@pytest.mark.parametrize("target_kb", [150, 300, 500])
def test_result_meets_budget_or_floor(noise_image, target_kb):
    image = encode_frame(noise_image(1600, 1200), quality=0.95)
    result = compress(image, target_bytes=target_kb * 1024, min_quality=0.3)
    assert result.estimated_size <= target_kb * 1024 or result.quality == pytest.approx(0.3)


def _size_by_quality(pixels, quality=0.8):
    """Stand-in encoder whose output size is proportional to quality."""
    h, w = pixels.shape[:2]
    return EncodedImage(data=b"\x00" * int(quality * 20000), width=w, height=h, quality=quality)


def test_quality_loop_exhausts_attempts(noise_image, monkeypatch):
    image = encode_frame(noise_image(100, 100))
    monkeypatch.setattr("screendoc.core.compression.encode_frame", _size_by_quality)

    result = compress(image, target_bytes=5000, min_quality=0.3, max_attempts=5)

    assert result.attempts == 5
    assert result.quality == pytest.approx(0.3)
    assert result.estimated_size > 5000


def test_last_attempt_uses_min_quality(noise_image, monkeypatch):
    """The final permitted attempt re-encodes at the quality floor."""
    image = encode_frame(noise_image(100, 100))
    monkeypatch.setattr("screendoc.core.compression.encode_frame", _size_by_quality)

    result = compress(image, target_bytes=5000, min_quality=0.1, max_attempts=2)

    assert result.attempts == 2
    assert result.quality == pytest.approx(0.1)
    assert result.estimated_size <= 5000


def test_undecodable_input_returned_unchanged():
    bogus = EncodedImage(data=b"\x00" * 4096, width=10, height=10)
    assert compress(bogus, target_bytes=1024) is bogus


def test_invalid_arguments(noise_image):
    image = encode_frame(noise_image(10, 10))
    with pytest.raises(ValueError):
        compress(image, max_attempts=0)
    with pytest.raises(ValueError):
        compress(image, min_quality=0.0)


def test_max_dimension_forces_resize(noise_image):
    image = encode_frame(noise_image(800, 400))
    result = compress(image, target_bytes=10 * 1024 * 1024, max_dimension=200)
    assert max(result.width, result.height) <= 200


class TestDeriveThumbnail:
    """Thumbnail rendition."""

    def test_bounded_dimension_and_size(self, noise_image):
        image = encode_frame(noise_image(1920, 1080))
        thumb = derive_thumbnail(image)
        assert max(thumb.width, thumb.height) <= 200
        assert thumb.estimated_size <= TARGET_SIZES["thumbnail"]

    def test_small_image_kept(self):
        image = encode_frame(np.full((50, 80, 3), 127, dtype=np.uint8))
        assert derive_thumbnail(image) is image
