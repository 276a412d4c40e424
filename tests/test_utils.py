"""
tests/test_utils.py

QRShield - Utility Module Tests
-------------------------------
• Image decoding, luminance conversion, immutable grayscale buffers
• Logger creation, verbosity control and traceback logging
"""

import io
import logging
from unittest.mock import Mock

import numpy as np
import pytest
from PIL import Image

from qrshield.core.exceptions import DecodeError, QRShieldError
from qrshield.utils.image_processing import (
    GrayscaleImage,
    decode_grayscale,
    decode_image,
    downscale_to_fit,
    ensure_grayscale,
    load_image_bytes,
    to_luminance,
)
from qrshield.utils.logger import get_logger, log_traceback, set_verbosity

from conftest import to_png_bytes


class TestGrayscaleImage:

    def test_buffer_is_read_only_copy(self):
        source = np.zeros((4, 6), dtype=np.uint8)
        image = GrayscaleImage(source)
        source[0, 0] = 255
        assert image.pixels[0, 0] == 0
        with pytest.raises(ValueError):
            image.pixels[0, 0] = 1

    def test_dimensions(self):
        image = GrayscaleImage(np.zeros((4, 6), dtype=np.uint8))
        assert image.size == (6, 4)
        assert image.total_pixels == 24

    def test_float_input_is_rounded_and_clipped(self):
        image = GrayscaleImage(np.array([[-5.0, 127.6, 300.0]]))
        assert image.pixels.tolist() == [[0, 128, 255]]

    def test_rejects_non_2d(self):
        with pytest.raises(ValueError):
            GrayscaleImage(np.zeros((2, 2, 3), dtype=np.uint8))

    def test_equality_is_identity_and_hashable(self):
        pixels = np.arange(12, dtype=np.uint8).reshape(3, 4)
        image = GrayscaleImage(pixels)
        copy = GrayscaleImage(pixels.copy())
        assert image == image
        assert image != copy
        assert len({image, copy}) == 2

    def test_pil_round_trip(self):
        pil = Image.new('L', (5, 3), color=42)
        image = GrayscaleImage.from_pil(pil)
        assert image.to_pil().size == (5, 3)
        assert image.pixels.max() == 42


class TestDecoding:

    def test_decode_png(self):
        data = to_png_bytes(Image.new('RGB', (10, 8), color=(255, 255, 255)))
        gray = decode_grayscale(data)
        assert gray.size == (10, 8)
        assert gray.pixels.min() == 255

    def test_transparent_pixels_become_white(self):
        data = to_png_bytes(Image.new('RGBA', (4, 4), color=(0, 0, 0, 0)))
        gray = decode_grayscale(data)
        assert gray.pixels.min() == 255

    def test_jpeg_decodes(self):
        buffer = io.BytesIO()
        Image.new('RGB', (16, 16), color=(0, 0, 0)).save(buffer, format='JPEG')
        assert decode_image(buffer.getvalue()).size == (16, 16)

    @pytest.mark.parametrize("data", [b"", b"garbage", b"\xff\xd8\xff truncated jpeg"])
    def test_invalid_bytes(self, data):
        with pytest.raises(DecodeError):
            decode_grayscale(data)

    def test_decode_error_is_qrshield_error(self):
        with pytest.raises(QRShieldError):
            decode_grayscale(b"nope")

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(DecodeError):
            load_image_bytes(tmp_path / "nope.png")


class TestLuminance:

    def test_pure_red(self):
        rgb = np.zeros((2, 2, 3), dtype=np.uint8)
        rgb[..., 0] = 255
        assert to_luminance(rgb)[0, 0] == 76

    def test_rgba_alpha_composited_on_white(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        assert to_luminance(rgba)[0, 0] == 255

    def test_single_channel_array(self):
        assert to_luminance(np.full((3, 3, 1), 9, dtype=np.uint8)).shape == (3, 3)

    def test_unsupported_shape(self):
        with pytest.raises(DecodeError):
            to_luminance(np.zeros((2, 2, 2), dtype=np.uint8))

    def test_ensure_grayscale_passthrough(self):
        image = GrayscaleImage(np.zeros((2, 2), dtype=np.uint8))
        assert ensure_grayscale(image) is image


class TestDownscale:

    def test_small_image_unchanged(self):
        image = GrayscaleImage(np.zeros((100, 50), dtype=np.uint8))
        assert downscale_to_fit(image, 1024) is image

    def test_long_side_capped(self):
        image = GrayscaleImage(np.zeros((2000, 1000), dtype=np.uint8))
        scaled = downscale_to_fit(image, 1024)
        assert scaled.height == 1024
        assert scaled.width == 512


class TestLogger:

    def test_same_logger_returned(self):
        assert get_logger("qrshield.tests.same") is get_logger("qrshield.tests.same")

    def test_set_verbosity(self):
        logger = get_logger("qrshield.tests.verbosity")
        set_verbosity("DEBUG")
        assert logger.level == logging.DEBUG
        set_verbosity("INFO")
        assert logger.level == logging.INFO

    def test_log_traceback(self):
        logger = Mock()
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            log_traceback(logger, e, "Analysis failed")
        message = logger.error.call_args[0][0]
        assert message.startswith("Analysis failed")
        assert "RuntimeError: boom" in message
