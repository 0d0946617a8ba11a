"""Image preprocessing pipeline.

Decodes uploaded or captured bytes into an RGB array and prepares the
model input tensor. Decoded images are only ever held in memory.
"""

from __future__ import annotations

import io
import logging
import warnings
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from presidentface.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from presidentface.config import Settings

logger = logging.getLogger(__name__)


class ImageDecoder:
    """Decode raw image bytes with size and pixel-count limits."""

    def __init__(self, max_file_size: int, max_image_pixels: int) -> None:
        self._max_file_size = max_file_size
        self._max_image_pixels = max_image_pixels

    @classmethod
    def from_settings(cls, settings: Settings) -> ImageDecoder:
        return cls(
            max_file_size=settings.max_file_size,
            max_image_pixels=settings.max_image_pixels,
        )

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can open).

        Returns:
            HxWx3 RGB uint8 numpy array, EXIF orientation applied.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ImageDecodeError("Image is empty")
        if len(image_bytes) > self._max_file_size:
            raise ImageDecodeError(f"Image is larger than {self._max_file_size} bytes")

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(image_bytes)) as img:
                    width, height = img.size
                    if width * height > self._max_image_pixels:
                        raise ImageDecodeError(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")
                    oriented = ImageOps.exif_transpose(img)
                    rgb = oriented.convert("RGB")
        except ImageDecodeError:
            raise
        except (
            UnidentifiedImageError,
            OSError,
            ValueError,
            Image.DecompressionBombError,
            Image.DecompressionBombWarning,
        ) as exc:
            raise ImageDecodeError("Not a valid image file") from exc

        return np.asarray(rgb, dtype=np.uint8)


def preprocess_for_classification(image: NDArray[np.uint8], size: int) -> NDArray[np.float32]:
    """Prepare an image for the classifier.

    Center-crops to a square, resizes to ``size`` and scales pixels to
    [-1, 1], matching the Teachable Machine MobileNet input.

    Args:
        image: HxWx3 RGB uint8 array.
        size: Model input edge length.

    Returns:
        Float32 tensor of shape (1, size, size, 3).
    """
    if image.ndim != 3 or image.shape[2] != 3:  # noqa: PLR2004
        raise ValueError(f"Expected an HxWx3 image, got shape {image.shape}")

    pil = Image.fromarray(image)
    fitted = ImageOps.fit(pil, (size, size), method=Image.Resampling.BILINEAR)
    array = np.asarray(fitted, dtype=np.float32)
    array = array / 127.5 - 1.0
    return array[np.newaxis, ...]
