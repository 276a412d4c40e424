"""
qrshield/detection/vision/image_statistics.py

QRShield - Grayscale Image Statistics
-------------------------------------
• 256-bucket luminance histogram, mean/std/min/max snapshot
• Otsu threshold by cumulative-sum sweep over the histogram
• Small helpers shared by the detector heuristics (percentiles, bimodality)

Author: QRShield Team
License: Apache 2.0
"""

from dataclasses import dataclass
from typing import Union

import numpy as np

from qrshield.utils.image_processing import GrayscaleImage

NUM_BINS = 256


@dataclass(frozen=True, eq=False)
class ImageStats:
    """Per-analysis snapshot of a grayscale image. Never cached across images."""
    histogram: np.ndarray
    mean: float
    otsu_threshold: int
    total_pixels: int
    min_value: int = 0
    max_value: int = 0
    std: float = 0.0

    @property
    def dynamic_range(self) -> int:
        return self.max_value - self.min_value

    def to_dict(self):
        return {
            'mean': round(self.mean, 4),
            'std': round(self.std, 4),
            'otsu_threshold': self.otsu_threshold,
            'total_pixels': self.total_pixels,
            'min_value': self.min_value,
            'max_value': self.max_value,
        }


def compute_histogram(pixels: np.ndarray) -> np.ndarray:
    """Count luminance values into 256 buckets."""
    flat = np.asarray(pixels, dtype=np.uint8).ravel()
    return np.bincount(flat, minlength=NUM_BINS).astype(np.int64)


def otsu_threshold(histogram: np.ndarray) -> int:
    """
    Otsu's threshold: the ``t`` maximising ``w_bg * w_fg * (mean_bg - mean_fg)^2``
    where background is every value ``<= t``.

    Ties over a plateau (two-valued images have one spanning the whole gap)
    resolve to the plateau midpoint. Degenerate histograms return 0.
    """
    hist = np.asarray(histogram, dtype=np.float64)
    total = hist.sum()
    if total <= 0:
        return 0

    levels = np.arange(NUM_BINS, dtype=np.float64)
    sum_total = float(np.dot(levels, hist))

    weight_bg = 0.0
    sum_bg = 0.0
    best_variance = 0.0
    best_first = 0
    best_last = 0

    for t in range(NUM_BINS):
        weight_bg += hist[t]
        if weight_bg == 0:
            continue
        weight_fg = total - weight_bg
        if weight_fg == 0:
            break

        sum_bg += t * hist[t]
        mean_bg = sum_bg / weight_bg
        mean_fg = (sum_total - sum_bg) / weight_fg

        variance = weight_bg * weight_fg * (mean_bg - mean_fg) ** 2
        if variance > best_variance * (1.0 + 1e-12):
            best_variance = variance
            best_first = best_last = t
        elif best_variance > 0 and abs(variance - best_variance) <= best_variance * 1e-12:
            best_last = t

    if best_variance <= 0:
        return 0
    return int((best_first + best_last) // 2)


def compute_image_stats(image: Union[GrayscaleImage, np.ndarray]) -> ImageStats:
    """Histogram, mean and Otsu threshold for one image. An empty image yields zeros."""
    pixels = image.pixels if isinstance(image, GrayscaleImage) else np.asarray(image, dtype=np.uint8)
    histogram = compute_histogram(pixels)
    total = int(pixels.size)

    if total == 0:
        return ImageStats(histogram=histogram, mean=0.0, otsu_threshold=0, total_pixels=0)

    return ImageStats(
        histogram=histogram,
        mean=float(pixels.mean()),
        otsu_threshold=otsu_threshold(histogram),
        total_pixels=total,
        min_value=int(pixels.min()),
        max_value=int(pixels.max()),
        std=float(pixels.std()),
    )


def percentile_value(sorted_values: np.ndarray, fraction: float) -> int:
    """Nearest-rank percentile of an already sorted 1D array."""
    if sorted_values.size == 0:
        return 0
    index = int(round(sorted_values.size * fraction))
    index = min(max(index, 0), sorted_values.size - 1)
    return int(sorted_values[index])


def bimodal_ratio(values: np.ndarray, low: int, high: int, margin: int) -> float:
    """Fraction of values further than ``margin`` from the mid-range of [low, high]."""
    if values.size == 0:
        return 0.0
    midpoint = (int(low) + int(high)) / 2.0
    values = values.astype(np.int32)
    extreme = np.count_nonzero(values < midpoint - margin) + np.count_nonzero(values > midpoint + margin)
    return extreme / float(values.size)
