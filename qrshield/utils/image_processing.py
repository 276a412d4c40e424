"""
qrshield/utils/image_processing.py

QRShield - Image Loading & Luminance Conversion
-----------------------------------------------
• Decode PNG/JPEG/any Pillow-readable bytes or files into immutable grayscale buffers
• EXIF orientation applied, transparency flattened onto white before conversion
• Perceptual (ITU-R BT.601) luminance for RGB/RGBA arrays and PIL images

Author: QRShield Team
License: Apache 2.0
"""

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from qrshield.core.exceptions import DecodeError
from qrshield.utils.logger import get_logger

logger = get_logger(__name__)

# BT.601 weights, the same ones Pillow uses for mode "L"
LUMINANCE_WEIGHTS = (0.299, 0.587, 0.114)

ImageInput = Union["GrayscaleImage", np.ndarray, Image.Image]


@dataclass(frozen=True, eq=False)
class GrayscaleImage:
    """Immutable row-major luminance buffer (uint8, height x width)."""
    pixels: np.ndarray

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.ndim != 2:
            raise ValueError(f"grayscale buffer must be 2D, got shape {pixels.shape}")
        if pixels.dtype != np.uint8:
            pixels = np.clip(np.rint(pixels), 0, 255).astype(np.uint8)
        else:
            pixels = pixels.copy()
        pixels.setflags(write=False)
        object.__setattr__(self, 'pixels', pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return self.width, self.height

    @property
    def total_pixels(self) -> int:
        return int(self.pixels.size)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "GrayscaleImage":
        return cls(np.asarray(_flatten_alpha(image).convert('L')))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.array(self.pixels))


def _flatten_alpha(image: Image.Image) -> Image.Image:
    """Composite transparent images onto white so empty areas read as background."""
    if image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info):
        rgba = image.convert('RGBA')
        background = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
        return Image.alpha_composite(background, rgba).convert('RGB')
    return image


def decode_image(data: bytes) -> Image.Image:
    """
    Decode encoded image bytes into an RGB/L Pillow image.

    Raises:
        DecodeError: bytes are empty or not a readable image
    """
    if not data:
        raise DecodeError("Unable to decode image: no data")

    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            image = ImageOps.exif_transpose(opened)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Unable to decode image: {e}") from e

    image = _flatten_alpha(image)
    if image.mode not in ('RGB', 'L'):
        image = image.convert('RGB')
    return image


def decode_grayscale(data: bytes) -> GrayscaleImage:
    """Decode bytes straight to a GrayscaleImage."""
    image = decode_image(data)
    gray = GrayscaleImage.from_pil(image)
    logger.debug(f"Image decoded: {gray.width}x{gray.height} ({len(data)} bytes)")
    return gray


def load_image_bytes(path: Union[str, Path]) -> bytes:
    """Read an image file, reporting a missing/unreadable file as a decode failure."""
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise DecodeError(f"Unable to read image file {path}: {e}") from e


def to_luminance(array: np.ndarray) -> np.ndarray:
    """Convert an HxW, HxWx1, HxWx3 (RGB) or HxWx4 (RGBA) array to uint8 luminance."""
    array = np.asarray(array)
    if array.ndim == 3 and array.shape[2] == 1:
        array = array[:, :, 0]

    if array.ndim == 2:
        if array.dtype == np.uint8:
            return array
        return np.clip(np.rint(array), 0, 255).astype(np.uint8)

    if array.ndim != 3 or array.shape[2] not in (3, 4):
        raise DecodeError(f"Unsupported image array shape {array.shape}")

    rgb = array.astype(np.float32)
    if array.shape[2] == 4:
        alpha = rgb[:, :, 3:4] / 255.0
        rgb = rgb[:, :, :3] * alpha + 255.0 * (1.0 - alpha)
    rgb = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)


def ensure_grayscale(image: ImageInput) -> GrayscaleImage:
    """Normalize any supported image input to a GrayscaleImage."""
    if isinstance(image, GrayscaleImage):
        return image
    if isinstance(image, Image.Image):
        return GrayscaleImage.from_pil(image)
    if isinstance(image, np.ndarray):
        return GrayscaleImage(to_luminance(image))
    raise TypeError(f"Unsupported image input type: {type(image)!r}")


def downscale_to_fit(image: GrayscaleImage, max_size: int) -> GrayscaleImage:
    """Shrink so the long side is at most ``max_size``; smaller images pass through."""
    long_side = max(image.width, image.height)
    if long_side <= max_size:
        return image
    scale = max_size / long_side
    new_width = max(1, int(round(image.width * scale)))
    new_height = max(1, int(round(image.height * scale)))
    resized = cv2.resize(np.array(image.pixels), (new_width, new_height), interpolation=cv2.INTER_AREA)
    return GrayscaleImage(resized)
