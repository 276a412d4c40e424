"""
qrshield/core/exceptions.py

QRShield - Error Taxonomy
-------------------------
• Distinct, catchable failures so callers can tell "bad image" from "broken model"
• "No QR code present" is never an exception; it is a negative DetectionResult

Author: QRShield Team
License: Apache 2.0
"""


class QRShieldError(Exception):
    """Base error for every failure raised by QRShield."""
    pass


class DecodeError(QRShieldError):
    """Input bytes are not a readable image. Fatal to that call only."""
    pass


class ModelLoadError(QRShieldError):
    """Classifier weights or labels are missing or incompatible."""
    pass


class ShapeMismatchError(ModelLoadError):
    """Tensor shape disagrees with the model contract (packaging/version error)."""

    def __init__(self, expected, actual, context: str = "tensor"):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(f"{context} shape {self.actual} does not match expected {self.expected}")


class InferenceError(QRShieldError):
    """Runtime failure during a forward pass. The same image may be retried."""
    pass
