"""
tests/conftest.py

QRShield - Shared Test Fixtures
-------------------------------
• Synthetic QR-like and non-QR images drawn with Pillow
• Stub inference engines and a labels file for classifier tests
"""

import io

import numpy as np
import pytest
from PIL import Image, ImageDraw

MODULE = 9
FINDER_SIDE = 7 * MODULE


def draw_finder(draw: ImageDraw.ImageDraw, x: int, y: int, module: int = MODULE):
    """Draw a 7x7-module finder square (dark border, light ring, dark 3x3 centre)."""
    side = 7 * module
    draw.rectangle([x, y, x + side - 1, y + side - 1], fill=0)
    draw.rectangle([x + module, y + module, x + side - module - 1, y + side - module - 1], fill=255)
    draw.rectangle([x + 2 * module, y + 2 * module, x + side - 2 * module - 1, y + side - 2 * module - 1], fill=0)


def make_finder_image(size: int = 300, margin: int = 20) -> Image.Image:
    """White canvas with finder squares at the top-left, top-right and bottom-left corners."""
    image = Image.new('L', (size, size), color=255)
    draw = ImageDraw.Draw(image)
    far = size - margin - FINDER_SIDE
    for x, y in ((margin, margin), (far, margin), (margin, far)):
        draw_finder(draw, x, y)
    return image


def make_qr_image(canvas=(1000, 800), modules: int = 29, module: int = 6, seed: int = 7) -> Image.Image:
    """Centred QR-like code: three finders plus seeded data modules outside the finder zones."""
    width, height = canvas
    side = modules * module
    x0, y0 = (width - side) // 2, (height - side) // 2
    image = Image.new('L', canvas, color=255)
    draw = ImageDraw.Draw(image)

    rng = np.random.default_rng(seed)
    far = modules - 8
    for row in range(modules):
        for col in range(modules):
            in_finder_zone = ((row <= 7 and col <= 7) or (row <= 7 and col >= far)
                              or (row >= far and col <= 7))
            if not in_finder_zone and rng.random() < 0.5:
                x, y = x0 + col * module, y0 + row * module
                draw.rectangle([x, y, x + module - 1, y + module - 1], fill=0)

    for col, row in ((0, 0), (modules - 7, 0), (0, modules - 7)):
        draw_finder(draw, x0 + col * module, y0 + row * module, module)
    return image


def make_bar_image(widths, height: int = 300, quiet: int = 20) -> Image.Image:
    """Full-height vertical bars of the given widths, alternating dark and light."""
    image = Image.new('L', (sum(widths) + 2 * quiet, height), color=255)
    draw = ImageDraw.Draw(image)
    x = quiet
    for index, w in enumerate(widths):
        if index % 2 == 0:
            draw.rectangle([x, 0, x + w - 1, height - 1], fill=0)
        x += w
    return image


def to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


class StubEngine:
    """Inference engine returning a fixed raw output and counting calls."""

    def __init__(self, output=0.0):
        self.output = output
        self.calls = 0
        self.closed = False
        self.last_input = None

    def run(self, tensor):
        self.calls += 1
        self.last_input = tensor
        if callable(self.output):
            return np.asarray(self.output(tensor), dtype=np.float32)
        return np.asarray([[self.output]], dtype=np.float32)

    def close(self):
        self.closed = True


@pytest.fixture
def finder_image():
    return make_finder_image()


@pytest.fixture
def finder_png(finder_image):
    return to_png_bytes(finder_image)


@pytest.fixture
def grey_image():
    return Image.new('L', (300, 300), color=128)


@pytest.fixture
def grey_png(grey_image):
    return to_png_bytes(grey_image)


@pytest.fixture
def gradient_image():
    """Smooth left-to-right ramp: full range, no structure."""
    ramp = np.tile(np.linspace(0, 255, 300).astype(np.uint8), (300, 1))
    return Image.fromarray(ramp)


@pytest.fixture
def labels_file(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("malicious\nbenign\n", encoding='utf-8')
    return path
