"""
qrshield

QRShield - QR Code Likelihood Detection & Security Classification
-----------------------------------------------------------------
• QRLikelihoodDetector: does this image contain a QR-code-like pattern?
• SecurityClassifier: does that QR code look benign or maliciously crafted?
• QRSecurityPipeline: decode -> detect -> preprocess -> classify -> SecurityResult

Author: QRShield Team
License: Apache 2.0
"""

__version__ = "1.0.0"

from qrshield.core.exceptions import (
    DecodeError,
    InferenceError,
    ModelLoadError,
    QRShieldError,
    ShapeMismatchError,
)
from qrshield.core.config_loader import QRShieldConfig, get_config, load_config
from qrshield.detection.vision.qr_detector import DetectionResult, QRLikelihoodDetector
from qrshield.detection.vision.preprocessor import ImagePreprocessor
from qrshield.detection.vision.security_classifier import (
    ClassificationResult,
    RiskLevel,
    SecurityClassifier,
    SecurityLabel,
)
from qrshield.core.pipeline import QRSecurityPipeline, SecurityResult
from qrshield.core.live_preview import LivePreviewAnalyzer

__all__ = [
    "__version__",
    "QRShieldError",
    "DecodeError",
    "ModelLoadError",
    "ShapeMismatchError",
    "InferenceError",
    "QRShieldConfig",
    "get_config",
    "load_config",
    "DetectionResult",
    "QRLikelihoodDetector",
    "ImagePreprocessor",
    "ClassificationResult",
    "RiskLevel",
    "SecurityClassifier",
    "SecurityLabel",
    "QRSecurityPipeline",
    "SecurityResult",
    "LivePreviewAnalyzer",
]
