"""
qrshield/detection/vision/preprocessor.py

QRShield - Classifier Input Preprocessing
-----------------------------------------
• Deterministic image -> [1, 69, 69, 1] float32 tensor transform
• Otsu-based content cropping with padding and centred-square fallback
• One fixed contrast-normalisation mode per instance (none / minmax / equalize)

Author: QRShield Team
License: Apache 2.0
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from qrshield.core.config_loader import PreprocessingSettings
from qrshield.detection.vision.image_statistics import compute_image_stats
from qrshield.utils.image_processing import (
    GrayscaleImage,
    ImageInput,
    decode_grayscale,
    ensure_grayscale,
)
from qrshield.utils.logger import get_logger

logger = get_logger(__name__)

INTERPOLATION_FLAGS = {
    'cubic': cv2.INTER_CUBIC,
    'linear': cv2.INTER_LINEAR,
    'area': cv2.INTER_AREA,
    'nearest': cv2.INTER_NEAREST,
}

# Tensor variance below which preprocessing is reported as low-signal
LOW_VARIANCE_THRESHOLD = 0.001


@dataclass(frozen=True)
class CropBox:
    """Square crop region in source pixel coordinates."""
    x: int
    y: int
    size: int
    fallback: bool = False

    def to_dict(self):
        return {'x': self.x, 'y': self.y, 'size': self.size, 'fallback': self.fallback}


class ImagePreprocessor:
    """Turns arbitrary images into the tensor layout the security classifier expects."""

    def __init__(self, settings: Optional[PreprocessingSettings] = None):
        self.settings = settings or PreprocessingSettings()
        self.input_size = self.settings.input_size
        self.interpolation = INTERPOLATION_FLAGS[self.settings.interpolation]
        self.enhancement = self.settings.enhancement

    @property
    def output_shape(self) -> Tuple[int, int, int, int]:
        return 1, self.input_size, self.input_size, 1

    def preprocess_bytes(self, data: bytes) -> np.ndarray:
        """Decode then preprocess. Raises DecodeError for unreadable bytes."""
        return self.preprocess(decode_grayscale(data))

    def preprocess(self, image: ImageInput) -> np.ndarray:
        """
        Produce a float32 tensor of shape ``output_shape`` with values in [0, 1].

        Args:
            image: GrayscaleImage, numpy array (HxW, HxWx3 RGB, HxWx4 RGBA) or PIL image

        Returns:
            Model-ready tensor
        """
        gray = ensure_grayscale(image)
        if gray.total_pixels == 0:
            raise ValueError("cannot preprocess an empty image")

        region, box = self.extract_region(gray)
        size = self.input_size
        resized = cv2.resize(np.array(region, dtype=np.uint8), (size, size), interpolation=self.interpolation)
        enhanced = self.enhance(resized)

        tensor = np.clip(enhanced / 255.0, 0.0, 1.0).astype(np.float32).reshape(self.output_shape)
        logger.debug(f"Preprocessed {gray.width}x{gray.height} via crop {box.to_dict()} "
                     f"-> {tensor.shape}, range [{tensor.min():.3f}, {tensor.max():.3f}]")
        self._check_tensor(tensor)
        return tensor

    def _check_tensor(self, tensor: np.ndarray):
        low, high = float(tensor.min()), float(tensor.max())
        variance = float(tensor.var())
        if low == high:
            logger.warning(f"Preprocessed image is uniform (all values {low:.3f}); classification will be unreliable")
        elif variance < LOW_VARIANCE_THRESHOLD:
            logger.warning(f"Preprocessed image has very low variance ({variance:.6f}); classification may be unreliable")

    def extract_region(self, image: GrayscaleImage) -> Tuple[np.ndarray, CropBox]:
        """Square crop around the high-contrast content, or a centred square when none is found."""
        box = self.find_content_box(image.pixels)
        if box is None:
            box = self.center_box(image.width, image.height)
        region = image.pixels[box.y:box.y + box.size, box.x:box.x + box.size]
        return region, box

    @staticmethod
    def center_box(width: int, height: int) -> CropBox:
        side = min(width, height)
        return CropBox(x=(width - side) // 2, y=(height - side) // 2, size=side, fallback=True)

    def find_content_box(self, pixels: np.ndarray) -> Optional[CropBox]:
        height, width = pixels.shape
        stats = compute_image_stats(pixels)
        if stats.otsu_threshold == 0:
            return None

        threshold = stats.otsu_threshold
        values = pixels.astype(np.int16)
        distant = np.abs(values - threshold) > self.settings.content_margin
        dark = distant & (values <= threshold)
        light = distant & (values > threshold)

        # Content is the minority class (modules on paper, or light modules on a dark screen)
        content = dark if np.count_nonzero(dark) <= np.count_nonzero(light) else light
        if not content.any():
            return None

        rows = np.flatnonzero(content.any(axis=1))
        cols = np.flatnonzero(content.any(axis=0))
        y0, y1 = int(rows[0]), int(rows[-1])
        x0, x1 = int(cols[0]), int(cols[-1])
        box_side = max(x1 - x0 + 1, y1 - y0 + 1)

        if box_side < self.settings.min_region_size:
            logger.debug(f"Content box {box_side}px below minimum, using centre crop")
            return None

        padding = max(self.settings.min_padding, int(round(box_side * self.settings.padding_ratio)))
        side = min(box_side + 2 * padding, width, height)

        center_x = (x0 + x1 + 1) / 2.0
        center_y = (y0 + y1 + 1) / 2.0
        x = int(min(max(round(center_x - side / 2.0), 0), width - side))
        y = int(min(max(round(center_y - side / 2.0), 0), height - side))
        return CropBox(x=x, y=y, size=side)

    def enhance(self, resized: np.ndarray) -> np.ndarray:
        """Apply the configured contrast normalisation to a uint8 image; returns float32 in [0, 255]."""
        if self.enhancement == 'equalize':
            return cv2.equalizeHist(resized).astype(np.float32)

        values = resized.astype(np.float32)
        if self.enhancement == 'minmax':
            low, high = float(values.min()), float(values.max())
            if high > low:
                values = (values - low) * (255.0 / (high - low))
        return values
