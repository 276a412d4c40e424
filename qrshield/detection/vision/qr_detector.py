"""
qrshield/detection/vision/qr_detector.py

QRShield - QR Likelihood Detector
---------------------------------
• Decides whether an image shows a QR-code-like pattern before any model inference
• Five independent heuristics: contrast, finder patterns, modular runs, edges, square regions
• Weighted combined score plus a disjunctive verdict, so QR codes shot under different
  lighting and distance qualify through whichever evidence they show strongly
• Ambiguous images are a normal negative result with a diagnostic reason, never an exception

Author: QRShield Team
License: Apache 2.0
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from qrshield.core.config_loader import DetectorSettings
from qrshield.core.exceptions import DecodeError
from qrshield.detection.vision.image_statistics import (
    ImageStats,
    bimodal_ratio,
    compute_image_stats,
    percentile_value,
)
from qrshield.utils.image_processing import (
    GrayscaleImage,
    ImageInput,
    decode_grayscale,
    downscale_to_fit,
    ensure_grayscale,
)
from qrshield.utils.logger import get_logger

logger = get_logger(__name__)

SCORE_NAMES = ('contrast', 'squares', 'patterns', 'finders', 'edges')

# Binarisation level for run-length line analysis
LINE_BINARY_LEVEL = 127
# Fallback dark/light split when Otsu degenerates (flat images)
DEFAULT_DARK_LEVEL = 127

# Finder probe regions as (x0, x1, y0, y1) fractions of the image; candidate
# centres inside a region compete for that region's score
FINDER_REGIONS = {
    'top_left': (0.0, 0.5, 0.0, 0.5),
    'top_right': (0.5, 1.0, 0.0, 0.5),
    'bottom_left': (0.0, 0.5, 0.5, 1.0),
    'bottom_right': (0.5, 1.0, 0.5, 1.0),
    'center': (0.25, 0.75, 0.25, 0.75),
}
# Candidate finder sizes (7 modules) as fractions of the short side
FINDER_SIZE_FRACTIONS = (0.03, 0.05, 0.08, 0.12, 0.16, 0.22, 0.30)
MIN_FINDER_SIZE = 14
# Band radii in modules: centre 3x3, light ring, dark border (1:1:3:1:1)
FINDER_BAND_MODULES = (1.5, 2.5, 3.5)

SQUARE_SIZE_FRACTIONS = (0.08, 0.12, 0.15)
EDGE_STRENGTH_THRESHOLD = 100


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detection call."""
    has_qr_code: bool
    confidence: float
    reason: str
    image_size: Optional[Tuple[int, int]] = None
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def confidence_percentage(self) -> str:
        return f"{self.confidence * 100:.1f}%"

    def to_dict(self):
        return {
            'has_qr_code': self.has_qr_code,
            'confidence': round(self.confidence, 4),
            'confidence_percentage': self.confidence_percentage,
            'reason': self.reason,
            'image_size': f"{self.image_size[0]}x{self.image_size[1]}" if self.image_size else None,
            'scores': {name: round(value, 4) for name, value in self.scores.items()},
        }


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class QRLikelihoodDetector:
    """
    Heuristic QR-likeness detector over grayscale images.

    Stateless apart from its settings; safe to share between threads.
    """

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()
        self.weights = self.settings.weights
        self.thresholds = self.settings.thresholds

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def detect_bytes(self, data: bytes) -> DetectionResult:
        """Detect from encoded bytes; unreadable input is a negative result, not an error."""
        try:
            image = decode_grayscale(data)
        except DecodeError as e:
            logger.warning(f"QR detection skipped: {e}")
            return DetectionResult(has_qr_code=False, confidence=0.0, reason=f"decode error: {e}")
        return self.detect(image)

    def detect(self, image: ImageInput) -> DetectionResult:
        """Run every heuristic and combine them into a verdict."""
        gray = ensure_grayscale(image)
        original_size = gray.size

        if gray.total_pixels == 0:
            return DetectionResult(False, 0.0, "Not a QR code: empty image", original_size,
                                   {name: 0.0 for name in SCORE_NAMES})

        analysed = downscale_to_fit(gray, self.settings.max_analysis_size)
        logger.debug(f"QR detection on {original_size[0]}x{original_size[1]} "
                     f"(analysed at {analysed.width}x{analysed.height})")

        scores = self.compute_scores(analysed)
        combined = self.combine_scores(scores)
        has_qr = self.is_qr_like(scores, combined)
        reason = self.build_reason(has_qr, scores)

        logger.debug("Detection scores: " + ", ".join(f"{k}={v:.3f}" for k, v in scores.items()))
        logger.debug(f"Combined score {combined:.3f} -> {'QR DETECTED' if has_qr else 'NO QR'} - {reason}")

        return DetectionResult(
            has_qr_code=has_qr,
            confidence=combined,
            reason=reason,
            image_size=original_size,
            scores=scores,
        )

    def compute_scores(self, image: GrayscaleImage) -> Dict[str, float]:
        pixels = image.pixels
        stats = compute_image_stats(image)
        return {
            'contrast': self.contrast_score(pixels),
            'squares': self.square_region_score(pixels),
            'patterns': self.modular_pattern_score(pixels),
            'finders': self.finder_pattern_score(pixels, stats),
            'edges': self.edge_score(pixels),
        }

    def combine_scores(self, scores: Dict[str, float]) -> float:
        w = self.weights
        weighted = (
            scores['contrast'] * w.contrast
            + scores['squares'] * w.squares
            + scores['patterns'] * w.patterns
            + scores['finders'] * w.finders
            + scores['edges'] * w.edges
        )
        return _clamp(weighted / w.total())

    def is_qr_like(self, scores: Dict[str, float], combined: float) -> bool:
        """Any single qualifying condition is enough."""
        t = self.thresholds
        return (
            combined > t.combined
            or (scores['finders'] > t.strong_finders and scores['contrast'] > t.decent_contrast)
            or scores['finders'] > t.very_strong_finders
            or (scores['contrast'] > t.high_contrast and scores['patterns'] > t.weak_structure)
        )

    def build_reason(self, has_qr: bool, scores: Dict[str, float]) -> str:
        if has_qr:
            features = []
            if scores['contrast'] > 0.7:
                features.append('excellent contrast')
            elif scores['contrast'] > 0.5:
                features.append('good contrast')

            if scores['finders'] > 0.6:
                features.append('strong finder patterns')
            elif scores['finders'] > 0.4:
                features.append('finder patterns')

            if scores['patterns'] > 0.5:
                features.append('clear modular structure')
            if scores['squares'] > 0.5:
                features.append('binary square modules')
            if scores['edges'] > 0.4:
                features.append('defined edges')

            return "QR detected: " + (', '.join(features) if features else 'combined evidence')

        problems = []
        if scores['contrast'] < 0.5:
            problems.append('insufficient contrast')
        if scores['finders'] < 0.4:
            problems.append('no clear finder patterns')
        if scores['patterns'] < 0.3:
            problems.append('no modular structure')
        return "Not a QR code: " + (', '.join(problems) if problems else 'weak combined evidence')

    # ------------------------------------------------------------------ #
    # 1. Contrast
    # ------------------------------------------------------------------ #

    def contrast_score(self, pixels: np.ndarray) -> float:
        """QR codes need strong, mostly black-or-white luminance separation."""
        height, width = pixels.shape
        sample_size = min(self.settings.contrast_sample_cap, (width * height) // 20)

        if sample_size < 1:
            sample = pixels.ravel()
        else:
            side = max(1, int(round(math.sqrt(sample_size))))
            step_x = max(1, width // side)
            step_y = max(1, height // side)
            sample = pixels[::step_y, ::step_x].ravel()

        if sample.size < 10:
            return 0.0

        values = np.sort(sample)
        low, high = int(values[0]), int(values[-1])
        value_range = high - low
        if value_range < self.settings.min_contrast_range:
            return 0.0

        iqr = percentile_value(values, 0.75) - percentile_value(values, 0.25)
        bimodal = bimodal_ratio(values, low, high, margin=30)

        range_score = min(1.0, value_range / 180.0)
        iqr_score = min(1.0, iqr / 120.0)
        bimodal_score = min(1.0, bimodal / 0.6)

        logger.debug(f"Contrast: range {low}-{high} ({value_range}), IQR {iqr}, bimodal {bimodal:.1%}")
        return _clamp(range_score * 0.3 + iqr_score * 0.3 + bimodal_score * 0.4)

    # ------------------------------------------------------------------ #
    # 2. Finder patterns
    # ------------------------------------------------------------------ #

    def finder_pattern_score(self, pixels: np.ndarray, stats: Optional[ImageStats] = None) -> float:
        """Search each probe region for the concentric dark/light/dark finder square."""
        height, width = pixels.shape
        short_side = min(height, width)
        if short_side < self.settings.min_finder_dimension:
            return 0.0

        stats = stats or compute_image_stats(pixels)
        dark_level = stats.otsu_threshold if stats.otsu_threshold > 0 else DEFAULT_DARK_LEVEL
        dark = (pixels <= dark_level).astype(np.int64)

        integral = np.zeros((height + 1, width + 1), dtype=np.int64)
        integral[1:, 1:] = dark.cumsum(axis=0).cumsum(axis=1)

        region_best = {name: 0.0 for name in FINDER_REGIONS}

        sizes = sorted({int(round(short_side * f)) for f in FINDER_SIZE_FRACTIONS})
        for size in sizes:
            if size < MIN_FINDER_SIZE:
                continue
            candidate_scores, outer = self._finder_candidates(pixels, integral, size)
            if candidate_scores is None:
                continue

            for name, (fx0, fx1, fy0, fy1) in FINDER_REGIONS.items():
                # candidate_scores[i, j] is centred at (outer + i, outer + j)
                i0 = max(0, int(height * fy0) - outer)
                i1 = min(candidate_scores.shape[0], int(height * fy1) - outer)
                j0 = max(0, int(width * fx0) - outer)
                j1 = min(candidate_scores.shape[1], int(width * fx1) - outer)
                if i0 >= i1 or j0 >= j1:
                    continue
                best = float(candidate_scores[i0:i1, j0:j1].max())
                region_best[name] = max(region_best[name], best)

        strong = [name for name, score in region_best.items() if score > self.settings.finder_acceptance]
        ratio = len(strong) / len(FINDER_REGIONS)

        logger.debug("Finder regions: " + ", ".join(f"{k}={v:.2f}" for k, v in region_best.items()))
        logger.debug(f"Strong finder patterns: {len(strong)}/{len(FINDER_REGIONS)}")

        # Real QR codes carry three finder squares
        if len(strong) >= 2:
            return _clamp(ratio * self.settings.finder_bonus)
        return _clamp(ratio)

    def _finder_candidates(self, pixels: np.ndarray, integral: np.ndarray,
                           size: int) -> Tuple[Optional[np.ndarray], int]:
        """Score every fully contained candidate centre for one finder size."""
        height, width = pixels.shape
        module = size / 7.0
        r1, r2, r3 = (max(1, int(round(module * m))) for m in FINDER_BAND_MODULES)
        if not r1 < r2 < r3 or 2 * r3 + 1 > min(height, width):
            return None, r3

        rows, cols = height - 2 * r3, width - 2 * r3

        def dark_fraction(dy0: int, dy1: int, dx0: int, dx1: int) -> np.ndarray:
            # rectangle rows cy+dy0..cy+dy1, cols cx+dx0..cx+dx1 around every candidate centre
            a0, a1 = r3 + dy0, r3 + dy1 + 1
            b0, b1 = r3 + dx0, r3 + dx1 + 1
            total = (integral[a1:a1 + rows, b1:b1 + cols]
                     - integral[a0:a0 + rows, b1:b1 + cols]
                     - integral[a1:a1 + rows, b0:b0 + cols]
                     + integral[a0:a0 + rows, b0:b0 + cols])
            return total / ((dy1 - dy0 + 1) * (dx1 - dx0 + 1))

        def band_sides(inner_r: int, outer_r: int) -> List[np.ndarray]:
            return [
                dark_fraction(-outer_r, -inner_r - 1, -inner_r, inner_r),
                dark_fraction(inner_r + 1, outer_r, -inner_r, inner_r),
                dark_fraction(-inner_r, inner_r, -outer_r, -inner_r - 1),
                dark_fraction(-inner_r, inner_r, inner_r + 1, outer_r),
            ]

        inner = dark_fraction(-r1, r1, -r1, r1)
        middle = band_sides(r1, r2)
        outer = band_sides(r2, r3)
        middle_max = np.maximum.reduce(middle)
        middle_min = np.minimum.reduce(middle)
        outer_max = np.maximum.reduce(outer)
        outer_min = np.minimum.reduce(outer)

        regular = (inner > 0.6) & (middle_max < 0.4) & (outer_min > 0.6)
        inverted = (inner < 0.4) & (middle_min > 0.6) & (outer_max < 0.4)
        pattern = np.where(regular, 1.0, np.where(inverted, 0.8, 0.0))

        kernel = np.ones((2 * r3 + 1, 2 * r3 + 1), dtype=np.uint8)
        writable = np.array(pixels, dtype=np.uint8)
        local_max = cv2.dilate(writable, kernel)
        local_min = cv2.erode(writable, kernel)
        local_range = (local_max.astype(np.int32) - local_min.astype(np.int32))[r3:height - r3, r3:width - r3]
        contrast = np.minimum(1.0, local_range / 200.0)

        return pattern * 0.8 + contrast * 0.2, r3

    # ------------------------------------------------------------------ #
    # 3. Modular run-length patterns
    # ------------------------------------------------------------------ #

    def modular_pattern_score(self, pixels: np.ndarray) -> float:
        """
        Sampled rows/columns of a QR code show regular module-sized runs.

        Rows and columns are scored separately and the weaker axis wins:
        a 1D barcode or stripe pattern only has runs across one axis.
        """
        height, width = pixels.shape

        row_step = max(5, height // 12)
        rows = [pixels[y, ::max(1, width // 50)] for y in range(row_step, height - row_step, row_step)]
        col_step = max(5, width // 12)
        cols = [pixels[::max(1, height // 50), x] for x in range(col_step, width - col_step, col_step)]

        horizontal = self._axis_score(rows)
        vertical = self._axis_score(cols)
        logger.debug(f"Pattern axes - horizontal: {horizontal:.2f}, vertical: {vertical:.2f}")
        return min(horizontal, vertical)

    def _axis_score(self, lines: List[np.ndarray]) -> float:
        if not lines:
            return 0.0

        strong = moderate = 0
        for line in lines:
            score = self._line_score(line)
            if score > 0.7:
                strong += 1
            elif score > 0.4:
                moderate += 1
        return _clamp((strong * 2 + moderate) / (len(lines) * 2))

    @staticmethod
    def _line_score(samples: np.ndarray) -> float:
        if samples.size < 10:
            return 0.0

        binary = samples <= LINE_BINARY_LEVEL
        changes = np.flatnonzero(binary[1:] != binary[:-1])
        transitions = changes.size

        boundaries = np.concatenate(([0], changes + 1, [binary.size]))
        runs = np.diff(boundaries)
        if runs.size < 4:
            return 0.0

        median = int(np.sort(runs)[runs.size // 2])
        uniformity = np.count_nonzero(np.abs(runs - median) <= 2) / runs.size

        density = transitions / samples.size
        if 0.1 <= density <= 0.4:
            transition_score = 1.0
        elif 0.05 <= density <= 0.6:
            transition_score = 0.5
        else:
            transition_score = 0.0

        score = _clamp(uniformity * 0.6 + transition_score * 0.4)
        if uniformity < 0.4 or transition_score < 0.3:
            return min(0.3, score)
        return score

    # ------------------------------------------------------------------ #
    # 4. Edges and geometry
    # ------------------------------------------------------------------ #

    def edge_score(self, pixels: np.ndarray) -> float:
        """Long straight edge runs (outer boundary, module grid) and busy-but-not-solid corners."""
        height, width = pixels.shape
        if height < 3 or width < 3:
            return 0.0

        edges = self.edge_magnitude(pixels) > EDGE_STRENGTH_THRESHOLD
        rectangle = self._rectangle_evidence(edges)
        corners = self._corner_evidence(edges)

        logger.debug(f"Edges - rectangle: {rectangle:.1%}, corners: {corners:.1%}")
        return _clamp(rectangle * 0.7 + corners * 0.3)

    @staticmethod
    def edge_magnitude(pixels: np.ndarray) -> np.ndarray:
        """Sobel gradient magnitude rescaled to the 0-255 range of a single step edge."""
        source = pixels.astype(np.float32)
        gx = cv2.Sobel(source, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(source, cv2.CV_32F, 0, 1, ksize=3)
        return np.minimum(255.0, np.sqrt(gx * gx + gy * gy) / 4.0)

    @staticmethod
    def _rectangle_evidence(edges: np.ndarray) -> float:
        height, width = edges.shape
        rows = edges[::max(1, height // 20), :]
        cols = edges[:, ::max(1, width // 20)]

        strong_rows = np.count_nonzero(rows.sum(axis=1) > width * 0.6)
        strong_cols = np.count_nonzero(cols.sum(axis=0) > height * 0.6)
        total_lines = rows.shape[0] + cols.shape[1]
        return _clamp((strong_rows + strong_cols) / total_lines)

    @staticmethod
    def _corner_evidence(edges: np.ndarray) -> float:
        height, width = edges.shape
        corner = min(max(20, min(height, width) // 10), height, width)
        windows = (
            edges[:corner, :corner],
            edges[:corner, width - corner:],
            edges[height - corner:, :corner],
            edges[height - corner:, width - corner:],
        )
        good = sum(1 for w in windows if 0.2 < w.mean() < 0.8)
        return good / 4.0

    # ------------------------------------------------------------------ #
    # 5. Square regions
    # ------------------------------------------------------------------ #

    def square_region_score(self, pixels: np.ndarray) -> float:
        """Grid of square windows; binary high-contrast windows look like QR modules."""
        height, width = pixels.shape
        short_side = min(height, width)
        sizes = [s for s in (int(round(short_side * f)) for f in SQUARE_SIZE_FRACTIONS)
                 if 10 <= s <= short_side // 3]

        excellent = good = total = 0
        for size in sizes:
            step_x = max(size // 2, width // 10)
            step_y = max(size // 2, height // 10)
            for y in range(0, height - size + 1, step_y):
                for x in range(0, width - size + 1, step_x):
                    total += 1
                    score = self._square_window_score(pixels[y:y + size, x:x + size])
                    if score > 0.8:
                        excellent += 1
                    elif score > 0.5:
                        good += 1

        if total == 0:
            return 0.0

        logger.debug(f"Squares - excellent: {excellent}, good: {good}, total: {total}")
        return _clamp(1.5 * (excellent * 2 + good) / (total * 2))

    @staticmethod
    def _square_window_score(window: np.ndarray) -> float:
        values = window.ravel()
        if values.size < 9:
            return 0.0

        low, high = int(values.min()), int(values.max())
        value_range = high - low
        if value_range < 80:
            return 0.0

        bimodal = bimodal_ratio(values, low, high, margin=40)
        if bimodal < 0.6:
            return 0.3
        if bimodal < 0.8:
            return 0.6

        contrast = min(1.0, value_range / 150.0)
        return _clamp(contrast * 0.4 + bimodal * 0.6)


def detect_qr_likelihood(image: ImageInput, settings: Optional[DetectorSettings] = None) -> DetectionResult:
    """Convenience wrapper around QRLikelihoodDetector.detect."""
    return QRLikelihoodDetector(settings).detect(image)
