"""Image encoding and size-bounded compression."""

import base64
from dataclasses import dataclass, replace
from typing import Optional

import cv2
import numpy as np
from loguru import logger

# Target sizes for different quality levels (in bytes)
TARGET_SIZES = {
    "high": 500 * 1024,
    "medium": 300 * 1024,
    "low": 150 * 1024,
    "thumbnail": 50 * 1024,
}

DEFAULT_TARGET_BYTES = 1024 * 1024


@dataclass(frozen=True)
class EncodedImage:
    """Encoded (JPEG) image with metadata."""
    data: bytes
    width: int
    height: int
    quality: Optional[float] = None  # 0.0-1.0, None if unknown
    format: str = "jpeg"
    attempts: int = 0  # quality-reduction passes spent producing this image

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    @property
    def estimated_size(self) -> float:
        """Encoded size in bytes, estimated from the base64 length."""
        return len(self.base64) * 3 / 4

    def decode(self) -> Optional[np.ndarray]:
        """Decode to a BGR array, or None if the payload is not an image."""
        if not self.data:
            return None
        buf = np.frombuffer(self.data, dtype=np.uint8)
        return cv2.imdecode(buf, cv2.IMREAD_COLOR)

    @classmethod
    def from_data_url(cls, data_url: str) -> "EncodedImage":
        """Build an image from a ``data:image/...;base64,`` URL.

        Raises:
            ValueError: If the URL has no base64 payload or cannot be decoded
        """
        header, _, payload = data_url.partition(",")
        if not payload:
            raise ValueError("Data URL has no base64 payload")
        fmt = "jpeg"
        if header.startswith("data:image/"):
            fmt = header[len("data:image/"):].split(";")[0] or "jpeg"
        data = base64.b64decode(payload)
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            raise ValueError("Data URL payload is not a decodable image")
        h, w = image.shape[:2]
        return cls(data=data, width=w, height=h, format=fmt)


def estimate_base64_size(encoded: str) -> float:
    """Estimate decoded byte size of a base64 string or data URL.

    Base64 encodes 3 bytes into 4 characters, so the byte size is the payload
    length times 3/4. No decoding is performed.

    Args:
        encoded: Base64 payload, optionally prefixed with a data URL header

    Returns:
        Estimated size in bytes (0 for an empty payload)
    """
    payload = encoded.split(",", 1)[1] if encoded.startswith("data:") else encoded
    if not payload:
        return 0
    return len(payload) * 3 / 4


def _jpeg_quality(quality: float) -> int:
    return int(max(1, min(100, round(quality * 100))))


def encode_frame(image_bgr: np.ndarray, quality: float = 0.8) -> EncodedImage:
    """Encode a BGR frame as JPEG.

    Args:
        image_bgr: Frame in BGR (or grayscale) format
        quality: JPEG quality in 0.0-1.0

    Returns:
        Encoded image

    Raises:
        ValueError: If OpenCV refuses to encode the frame
    """
    ok, buf = cv2.imencode(".jpg", image_bgr, [cv2.IMWRITE_JPEG_QUALITY, _jpeg_quality(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    h, w = image_bgr.shape[:2]
    return EncodedImage(data=buf.tobytes(), width=w, height=h, quality=quality)


def _shrink_dimensions(width: int, height: int, target_bytes: int, step: float) -> tuple[int, int]:
    """Shrink dimensions until the uncompressed RGBA estimate fits the budget."""
    aspect = width / height
    new_w = float(width)
    new_h = float(height)
    while new_w * new_h * 4 > target_bytes and new_w > 1 and new_h > 1:
        new_w *= step
        new_h = new_w / aspect
    return max(1, int(new_w)), max(1, int(new_h))


def _fit_within(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    if max(width, height) <= max_dimension:
        return width, height
    scale = max_dimension / max(width, height)
    return max(1, int(width * scale)), max(1, int(height * scale))


def compress(
    image: EncodedImage,
    target_bytes: int = DEFAULT_TARGET_BYTES,
    min_quality: float = 0.3,
    max_attempts: int = 5,
    *,
    start_quality: float = 0.75,
    quality_step: float = 0.8,
    dimension_step: float = 0.9,
    max_dimension: Optional[int] = None,
) -> EncodedImage:
    """Bound the encoded size of an image.

    Images already within budget (and within ``max_dimension``) are returned
    as the same object. Otherwise the pixel dimensions are first shrunk by
    ``dimension_step`` while ``w*h*4`` exceeds the budget, then the JPEG
    quality is reduced by ``quality_step`` per attempt until the budget is
    met. The last permitted attempt encodes at ``min_quality``. The function
    never fails the caller: if the budget cannot be reached the last attempt
    is returned, and an undecodable input is returned unchanged.

    Args:
        image: Image to compress
        target_bytes: Byte budget
        min_quality: Quality floor (0.0-1.0)
        max_attempts: Maximum number of quality-reduction passes (>= 1)
        start_quality: Quality of the first re-encode after resizing
        quality_step: Multiplicative quality reduction per attempt
        dimension_step: Multiplicative dimension reduction per resize step
        max_dimension: Optional cap on the longest side

    Returns:
        Compressed image
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if not 0.0 < min_quality <= 1.0:
        raise ValueError("min_quality must be in (0, 1]")

    oversized = max_dimension is not None and max(image.width, image.height) > max_dimension
    if image.estimated_size <= target_bytes and not oversized:
        return image

    pixels = image.decode()
    if pixels is None:
        logger.warning("Could not decode image for compression, returning original")
        return image

    h, w = pixels.shape[:2]
    new_w, new_h = w, h
    if max_dimension is not None:
        new_w, new_h = _fit_within(new_w, new_h, max_dimension)
    if new_w * new_h * 4 > target_bytes:
        new_w, new_h = _shrink_dimensions(new_w, new_h, target_bytes, dimension_step)
    if (new_w, new_h) != (w, h):
        logger.debug(f"Resizing {w}x{h} -> {new_w}x{new_h} for {target_bytes} byte budget")
        pixels = cv2.resize(pixels, (new_w, new_h), interpolation=cv2.INTER_AREA)

    quality = max(min(start_quality, 1.0), min_quality)
    result = encode_frame(pixels, quality)
    attempts = 0

    while result.estimated_size > target_bytes and quality > min_quality and attempts < max_attempts:
        attempts += 1
        if attempts == max_attempts:
            quality = min_quality
        else:
            quality = max(quality * quality_step, min_quality)
        result = encode_frame(pixels, quality)

    if result.estimated_size > target_bytes:
        logger.debug(
            f"Compression shortfall: {result.estimated_size:.0f} > {target_bytes} bytes "
            f"at quality {quality:.2f} after {attempts} attempts"
        )

    return replace(result, attempts=attempts)


def derive_thumbnail(
    image: EncodedImage,
    max_dimension: int = 200,
    target_bytes: int = TARGET_SIZES["thumbnail"],
    quality: float = 0.6,
) -> EncodedImage:
    """Create a small preview rendition of an image.

    Args:
        image: Full-size image
        max_dimension: Maximum width or height of the thumbnail
        target_bytes: Byte budget for the thumbnail
        quality: Starting JPEG quality

    Returns:
        Thumbnail image
    """
    return compress(
        image,
        target_bytes,
        start_quality=quality,
        max_dimension=max_dimension,
    )
