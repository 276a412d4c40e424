"""
qrshield/core/pipeline.py

QRShield - QR Security Analysis Pipeline
----------------------------------------
• decode -> QR likelihood detection -> (if positive) preprocess -> classify
• Negative detections return early without touching the model
• Caller owns the classifier; the pipeline only borrows it
• Async wrapper runs the CPU-bound analysis in the default executor

Author: QRShield Team
License: Apache 2.0
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from qrshield.core.config_loader import QRShieldConfig, get_config
from qrshield.core.exceptions import ShapeMismatchError
from qrshield.detection.vision.preprocessor import ImagePreprocessor
from qrshield.detection.vision.qr_detector import DetectionResult, QRLikelihoodDetector
from qrshield.detection.vision.security_classifier import (
    ClassificationResult,
    RiskLevel,
    SecurityClassifier,
)
from qrshield.utils.image_processing import GrayscaleImage, decode_grayscale, load_image_bytes
from qrshield.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SecurityResult:
    """Outcome of one pipeline call. Classification exists exactly when a QR code was detected."""
    has_qr_code: bool
    detection: DetectionResult
    classification: Optional[ClassificationResult] = None
    qr_content: Optional[str] = None
    processing_time: float = field(default=0.0, compare=False)

    def __post_init__(self):
        if self.has_qr_code != self.detection.has_qr_code:
            raise ValueError("has_qr_code must agree with the detection result")
        if self.has_qr_code and self.classification is None:
            raise ValueError("a detected QR code requires a classification")
        if not self.has_qr_code and self.classification is not None:
            raise ValueError("classification is only allowed when a QR code was detected")

    @property
    def is_malicious(self) -> bool:
        return self.classification is not None and self.classification.is_malicious

    @property
    def risk_level(self) -> Optional[RiskLevel]:
        return self.classification.risk_level if self.classification else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_qr_code': self.has_qr_code,
            'detection': self.detection.to_dict(),
            'classification': self.classification.to_dict() if self.classification else None,
            'qr_content': self.qr_content,
            'processing_time_ms': int(self.processing_time * 1000),
        }

    @property
    def summary(self) -> str:
        if not self.has_qr_code:
            return f"No QR code detected ({self.detection.reason})"
        return self.classification.summary


class QRSecurityPipeline:
    """Runs detection and, for QR-like images, security classification."""

    def __init__(
        self,
        classifier: SecurityClassifier,
        detector: Optional[QRLikelihoodDetector] = None,
        preprocessor: Optional[ImagePreprocessor] = None,
        config: Optional[QRShieldConfig] = None,
    ):
        self.classifier = classifier
        self.detector = detector or QRLikelihoodDetector(config.detector if config else None)
        self.preprocessor = preprocessor or ImagePreprocessor(config.preprocessing if config else None)

        if tuple(self.preprocessor.output_shape) != tuple(classifier.input_shape):
            raise ShapeMismatchError(classifier.input_shape, self.preprocessor.output_shape,
                                     context="preprocessor output")
        logger.info("QR security pipeline initialized")

    @classmethod
    def from_config(cls, config: Optional[QRShieldConfig] = None) -> "QRSecurityPipeline":
        """Build the pipeline and load the classifier from configured paths."""
        config = config or get_config()
        configure_logging({'logger': config.logger.model_dump()})
        classifier = SecurityClassifier.from_settings(config.classifier, config.preprocessing.input_size)
        return cls(classifier, config=config)

    def analyze(self, image_bytes: bytes, qr_content: Optional[str] = None) -> SecurityResult:
        """
        Analyse encoded image bytes.

        Raises:
            DecodeError: bytes are not an image
            InferenceError: the forward pass failed
        """
        start = time.time()
        image = decode_grayscale(image_bytes)
        return self._analyze_image(image, qr_content, start)

    def analyze_image(self, image: GrayscaleImage, qr_content: Optional[str] = None) -> SecurityResult:
        """Analyse an already decoded image."""
        return self._analyze_image(image, qr_content, time.time())

    def analyze_file(self, path: Union[str, Path], qr_content: Optional[str] = None) -> SecurityResult:
        return self.analyze(load_image_bytes(path), qr_content)

    async def analyze_async(self, image_bytes: bytes, qr_content: Optional[str] = None) -> SecurityResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.analyze, image_bytes, qr_content)

    def _analyze_image(self, image: GrayscaleImage, qr_content: Optional[str], start: float) -> SecurityResult:
        detection = self.detector.detect(image)

        if not detection.has_qr_code:
            logger.info(f"No QR code detected: {detection.reason}")
            return SecurityResult(
                has_qr_code=False,
                detection=detection,
                classification=None,
                qr_content=qr_content,
                processing_time=time.time() - start,
            )

        tensor = self.preprocessor.preprocess(image)
        classification = self.classifier.classify(tensor)

        result = SecurityResult(
            has_qr_code=True,
            detection=detection,
            classification=classification,
            qr_content=qr_content,
            processing_time=time.time() - start,
        )
        logger.info(f"{result.summary} in {result.processing_time * 1000:.0f} ms")
        return result

    def close(self):
        self.classifier.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
