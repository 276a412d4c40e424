"""
tests/test_image_statistics.py

QRShield - Image Statistics Unit Tests
--------------------------------------
• Histogram, Otsu threshold, percentile and bimodality helpers
"""

import numpy as np
import pytest

from qrshield.detection.vision.image_statistics import (
    ImageStats,
    bimodal_ratio,
    compute_histogram,
    compute_image_stats,
    otsu_threshold,
    percentile_value,
)
from qrshield.utils.image_processing import GrayscaleImage


class TestHistogram:

    def test_histogram_has_256_buckets(self):
        hist = compute_histogram(np.array([[0, 0, 255]], dtype=np.uint8))
        assert hist.shape == (256,)
        assert hist[0] == 2
        assert hist[255] == 1
        assert hist.sum() == 3

    def test_histogram_of_empty_buffer(self):
        hist = compute_histogram(np.zeros((0, 0), dtype=np.uint8))
        assert hist.sum() == 0


class TestOtsuThreshold:

    def test_two_valued_image_splits_between_levels(self):
        pixels = np.array([[30, 220] * 50] * 10, dtype=np.uint8)
        t = otsu_threshold(compute_histogram(pixels))
        assert 30 < t < 220

    def test_two_valued_plateau_resolves_to_midpoint(self):
        pixels = np.array([[30, 220] * 8], dtype=np.uint8)
        assert otsu_threshold(compute_histogram(pixels)) == 124

    @pytest.mark.parametrize("value", [0, 128, 255])
    def test_uniform_image_is_degenerate(self, value):
        pixels = np.full((20, 20), value, dtype=np.uint8)
        assert otsu_threshold(compute_histogram(pixels)) == 0

    def test_empty_histogram(self):
        assert otsu_threshold(np.zeros(256)) == 0

    def test_threshold_always_in_range(self):
        rng = np.random.default_rng(42)
        for _ in range(20):
            pixels = rng.integers(0, 256, size=(32, 32), dtype=np.uint8)
            t = otsu_threshold(compute_histogram(pixels))
            assert 0 <= t <= 255

    def test_unbalanced_classes(self):
        pixels = np.concatenate([np.full(900, 40), np.full(100, 200)]).astype(np.uint8)
        t = otsu_threshold(compute_histogram(pixels))
        assert 40 <= t < 200


class TestImageStats:

    def test_stats_from_grayscale_image(self):
        image = GrayscaleImage(np.array([[0, 255], [0, 255]], dtype=np.uint8))
        stats = compute_image_stats(image)
        assert isinstance(stats, ImageStats)
        assert stats.total_pixels == 4
        assert stats.mean == pytest.approx(127.5)
        assert stats.min_value == 0
        assert stats.max_value == 255
        assert stats.dynamic_range == 255
        assert 0 <= stats.otsu_threshold < 255

    def test_empty_image_yields_zeros(self):
        stats = compute_image_stats(np.zeros((0, 5), dtype=np.uint8))
        assert stats.total_pixels == 0
        assert stats.mean == 0.0
        assert stats.otsu_threshold == 0

    def test_to_dict(self):
        stats = compute_image_stats(np.full((4, 4), 10, dtype=np.uint8))
        data = stats.to_dict()
        assert data['mean'] == 10.0
        assert data['total_pixels'] == 16
        assert 'histogram' not in data


class TestHelpers:

    def test_percentile_nearest_rank(self):
        values = np.arange(100)
        assert percentile_value(values, 0.25) == 25
        assert percentile_value(values, 0.75) == 75
        assert percentile_value(values, 1.0) == 99

    def test_percentile_empty(self):
        assert percentile_value(np.array([], dtype=np.uint8), 0.5) == 0

    def test_bimodal_ratio_binary_values(self):
        values = np.array([0, 0, 255, 255], dtype=np.uint8)
        assert bimodal_ratio(values, 0, 255, margin=30) == 1.0

    def test_bimodal_ratio_mid_values(self):
        values = np.array([0, 127, 128, 255], dtype=np.uint8)
        assert bimodal_ratio(values, 0, 255, margin=30) == 0.5

    def test_bimodal_ratio_empty(self):
        assert bimodal_ratio(np.array([], dtype=np.uint8), 0, 0, margin=30) == 0.0
