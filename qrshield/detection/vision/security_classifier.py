"""
qrshield/detection/vision/security_classifier.py

QRShield - QR Security Classifier
---------------------------------
• Owns one loaded TorchScript binary classifier (malicious vs benign QR appearance)
• Model contract validated at load: labels file, input shape, single finite scalar output
• Raw output -> probability -> decision -> confidence -> risk level, as one pure procedure
• Explicit lifecycle: load(), close(), context manager; no module-level model singleton

Author: QRShield Team
License: Apache 2.0
"""

import math
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from qrshield.core.config_loader import MODEL_INPUT_SIZE, MODEL_NUM_CHANNELS, ClassifierSettings
from qrshield.core.exceptions import InferenceError, ModelLoadError, ShapeMismatchError
from qrshield.utils.logger import get_logger

logger = get_logger(__name__)

VARIABILITY_MIN_SPREAD = 0.01
OUTPUT_ACTIVATIONS = ('logit', 'sigmoid')


class SecurityLabel(Enum):
    MALICIOUS = "malicious"
    BENIGN = "benign"


# Order of the model's labels file
EXPECTED_LABELS = (SecurityLabel.MALICIOUS, SecurityLabel.BENIGN)


class RiskLevel(IntEnum):
    """Risk levels ordered from safest to most dangerous."""
    VERY_SAFE = 0
    SAFE = 1
    LIKELY_SAFE = 2
    UNCERTAIN = 3
    MEDIUM_RISK = 4
    HIGH_RISK = 5
    VERY_HIGH_RISK = 6

    def description(self) -> str:
        descriptions = {
            self.VERY_SAFE: "QR code looks benign with very high confidence",
            self.SAFE: "QR code looks benign",
            self.LIKELY_SAFE: "QR code is probably benign",
            self.UNCERTAIN: "Model is not confident either way",
            self.MEDIUM_RISK: "QR code shows some signs of tampering",
            self.HIGH_RISK: "QR code is likely malicious",
            self.VERY_HIGH_RISK: "QR code is malicious with very high confidence",
        }
        return descriptions.get(self, "Unknown risk level")

    def color_code(self) -> str:
        colors = {
            self.VERY_SAFE: "#1e7e34",       # Dark green
            self.SAFE: "#28a745",            # Green
            self.LIKELY_SAFE: "#8bc34a",     # Light green
            self.UNCERTAIN: "#ffc107",       # Yellow
            self.MEDIUM_RISK: "#fd7e14",     # Orange
            self.HIGH_RISK: "#dc3545",       # Red
            self.VERY_HIGH_RISK: "#6f42c1",  # Purple
        }
        return colors.get(self, "#6c757d")


def sigmoid(value: float) -> float:
    """Numerically stable logistic function."""
    if value >= 0:
        return 1.0 / (1.0 + math.exp(-value))
    z = math.exp(value)
    return z / (1.0 + z)


def determine_risk_level(is_malicious: bool, confidence: float) -> RiskLevel:
    """Risk grows with confidence in the decided direction and never contradicts it."""
    if is_malicious:
        if confidence >= 0.90:
            return RiskLevel.VERY_HIGH_RISK
        if confidence >= 0.75:
            return RiskLevel.HIGH_RISK
        if confidence >= 0.60:
            return RiskLevel.MEDIUM_RISK
        return RiskLevel.UNCERTAIN

    if confidence >= 0.90:
        return RiskLevel.VERY_SAFE
    if confidence >= 0.75:
        return RiskLevel.SAFE
    if confidence >= 0.60:
        return RiskLevel.LIKELY_SAFE
    return RiskLevel.UNCERTAIN


@dataclass(frozen=True)
class ClassificationResult:
    is_malicious: bool
    raw_output: float
    probability: float
    threshold: float
    confidence: float

    def __post_init__(self):
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError(f"probability {self.probability} outside [0, 1]")
        if not 0.5 <= self.confidence <= 1.0:
            raise ValueError(f"confidence {self.confidence} outside [0.5, 1]")

    @property
    def risk_level(self) -> RiskLevel:
        return determine_risk_level(self.is_malicious, self.confidence)

    @property
    def label(self) -> SecurityLabel:
        return SecurityLabel.MALICIOUS if self.is_malicious else SecurityLabel.BENIGN

    @property
    def confidence_percentage(self) -> str:
        return f"{self.confidence * 100:.1f}%"

    @property
    def threshold_info(self) -> str:
        relation = ">=" if self.is_malicious else "<"
        return f"P(malicious) {self.probability:.4f} {relation} threshold {self.threshold:.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_malicious': self.is_malicious,
            'label': self.label.value,
            'raw_output': round(self.raw_output, 6),
            'probability': round(self.probability, 4),
            'threshold': self.threshold,
            'confidence': round(self.confidence, 4),
            'confidence_percentage': self.confidence_percentage,
            'risk_level': {
                'value': int(self.risk_level),
                'name': self.risk_level.name,
                'description': self.risk_level.description(),
                'color': self.risk_level.color_code(),
            },
        }

    @property
    def summary(self) -> str:
        if self.is_malicious:
            return f"🚨 MALICIOUS QR: {self.risk_level.description()} ({self.confidence_percentage})"
        return f"✅ Benign QR: {self.risk_level.description()} ({self.confidence_percentage})"


def interpret_output(raw_output: float, threshold: float = 0.5,
                     output_activation: str = 'logit') -> ClassificationResult:
    """
    Turn one raw model output into a classification.

    ``logit`` outputs go through a sigmoid; ``sigmoid`` outputs are already
    probabilities and are only clamped. A probability exactly at the threshold
    counts as malicious.
    """
    raw = float(raw_output)
    if not math.isfinite(raw):
        raise InferenceError(f"model produced a non-finite output: {raw}")
    if output_activation not in OUTPUT_ACTIVATIONS:
        raise ValueError(f"unsupported output activation '{output_activation}'")

    probability = sigmoid(raw) if output_activation == 'logit' else min(1.0, max(0.0, raw))
    is_malicious = probability >= threshold
    confidence = max(probability, 1.0 - probability)

    return ClassificationResult(
        is_malicious=is_malicious,
        raw_output=raw,
        probability=probability,
        threshold=threshold,
        confidence=confidence,
    )


def load_labels(labels_path: Union[str, Path]) -> Tuple[SecurityLabel, ...]:
    """Read the labels file and check it matches the fixed malicious/benign order."""
    path = Path(labels_path)
    try:
        lines = path.read_text(encoding='utf-8').splitlines()
    except OSError as e:
        raise ModelLoadError(f"Unable to read labels file {path}: {e}") from e

    names = [line.strip().lower() for line in lines if line.strip()]
    expected = [label.value for label in EXPECTED_LABELS]
    if names != expected:
        raise ModelLoadError(f"Labels file {path} must list {expected} in order, found {names}")
    return EXPECTED_LABELS


class TorchScriptEngine:
    """Thin wrapper running a TorchScript module on numpy NHWC tensors."""

    def __init__(self, model_path: Union[str, Path], device: str = "cpu", input_layout: str = "nhwc"):
        self.model_path = Path(model_path)
        self.device = torch.device(device)
        self.input_layout = input_layout

        if not self.model_path.is_file():
            raise ModelLoadError(f"Model file not found: {self.model_path}")
        try:
            self.module = torch.jit.load(str(self.model_path), map_location=self.device)
        except (RuntimeError, ValueError, OSError) as e:
            raise ModelLoadError(f"Unable to load TorchScript model {self.model_path}: {e}") from e
        self.module.eval()

    def run(self, tensor: np.ndarray) -> np.ndarray:
        x = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32))
        if self.input_layout == "nchw":
            x = x.permute(0, 3, 1, 2).contiguous()
        with torch.no_grad():
            output = self.module(x.to(self.device))
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output.detach().cpu().numpy()

    def close(self):
        self.module = None


class SecurityClassifier:
    """
    Binary QR security classifier around an inference engine.

    Any object with ``run(ndarray) -> ndarray`` and ``close()`` can act as the
    engine; ``load`` builds a TorchScriptEngine and validates the model contract.
    """

    def __init__(
        self,
        engine,
        labels: Sequence[SecurityLabel] = EXPECTED_LABELS,
        threshold: float = 0.5,
        output_activation: str = "logit",
        input_size: int = MODEL_INPUT_SIZE,
    ):
        if not 0.0 < threshold < 1.0:
            raise ValueError(f"threshold must be in (0, 1), got {threshold}")
        if output_activation not in OUTPUT_ACTIVATIONS:
            raise ValueError(f"unsupported output activation '{output_activation}'")
        if tuple(labels) != EXPECTED_LABELS:
            raise ModelLoadError(f"labels must be {[l.value for l in EXPECTED_LABELS]}")

        self._engine = engine
        self._labels = tuple(labels)
        self._lock = threading.Lock()
        self.threshold = threshold
        self.output_activation = output_activation
        self._input_shape = (1, input_size, input_size, MODEL_NUM_CHANNELS)

    @classmethod
    def load(
        cls,
        model_path: Union[str, Path],
        labels_path: Union[str, Path],
        threshold: float = 0.5,
        output_activation: str = "logit",
        input_layout: str = "nhwc",
        device: str = "cpu",
        variability_check: bool = True,
        input_size: int = MODEL_INPUT_SIZE,
    ) -> "SecurityClassifier":
        """
        Load and validate a TorchScript classifier.

        Raises:
            ModelLoadError: missing/corrupt model or labels, or a model that does
                not produce one finite scalar for a zero input
        """
        labels = load_labels(labels_path)
        engine = TorchScriptEngine(model_path, device=device, input_layout=input_layout)
        classifier = cls(engine, labels, threshold=threshold,
                         output_activation=output_activation, input_size=input_size)

        try:
            classifier.probe()
        except ModelLoadError:
            classifier.close()
            raise

        logger.info(f"Security classifier loaded from {model_path} "
                    f"(input {classifier.input_shape}, {output_activation} output, threshold {threshold})")

        if variability_check:
            classifier.run_variability_check()
        return classifier

    @classmethod
    def from_settings(cls, settings: ClassifierSettings,
                      input_size: int = MODEL_INPUT_SIZE) -> "SecurityClassifier":
        return cls.load(
            settings.model_path,
            settings.labels_path,
            threshold=settings.threshold,
            output_activation=settings.output_activation,
            input_layout=settings.input_layout,
            device=settings.device,
            variability_check=settings.variability_check,
            input_size=input_size,
        )

    # ------------------------------------------------------------------ #
    # Properties / lifecycle
    # ------------------------------------------------------------------ #

    @property
    def labels(self) -> Tuple[SecurityLabel, ...]:
        return self._labels

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return self._input_shape

    @property
    def is_loaded(self) -> bool:
        return self._engine is not None

    def close(self):
        """Release the engine. Waits for an in-flight forward pass to finish."""
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.close()
            logger.info("Security classifier closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ------------------------------------------------------------------ #
    # Inference
    # ------------------------------------------------------------------ #

    def infer(self, tensor: np.ndarray) -> float:
        """
        One forward pass returning the raw scalar output.

        Raises:
            ShapeMismatchError: tensor is not ``input_shape``
            InferenceError: engine failure or non-finite/non-scalar output
            ModelLoadError: classifier already closed
        """
        tensor = np.asarray(tensor)
        if tuple(tensor.shape) != self._input_shape:
            raise ShapeMismatchError(self._input_shape, tensor.shape, context="input tensor")

        with self._lock:
            if self._engine is None:
                raise ModelLoadError("Security classifier is closed")
            try:
                output = self._engine.run(tensor.astype(np.float32, copy=False))
            except (RuntimeError, ValueError, TypeError) as e:
                raise InferenceError(f"Forward pass failed: {e}") from e

        values = np.asarray(output, dtype=np.float64).ravel()
        if values.size != 1:
            raise InferenceError(f"Expected a single scalar output, got {values.size} values")
        raw = float(values[0])
        if not math.isfinite(raw):
            raise InferenceError(f"Model produced a non-finite output: {raw}")
        return raw

    def interpret(self, raw_output: float) -> ClassificationResult:
        return interpret_output(raw_output, self.threshold, self.output_activation)

    def classify(self, tensor: np.ndarray) -> ClassificationResult:
        raw = self.infer(tensor)
        result = self.interpret(raw)
        logger.debug(f"Classification raw={raw:.6f} p={result.probability:.4f} "
                     f"-> {result.label.value} ({result.risk_level.name})")
        return result

    # ------------------------------------------------------------------ #
    # Load-time checks
    # ------------------------------------------------------------------ #

    def probe(self) -> float:
        """Run a zero tensor through the model; any failure means an incompatible model."""
        try:
            return self.infer(np.zeros(self._input_shape, dtype=np.float32))
        except (InferenceError, ShapeMismatchError) as e:
            raise ModelLoadError(f"Model failed the load-time probe: {e}") from e

    def synthetic_inputs(self) -> Dict[str, np.ndarray]:
        _, height, width, channels = self._input_shape
        ys, xs = np.mgrid[0:height, 0:width]
        checkerboard = (((xs + ys) % 8) < 4).astype(np.float32)
        noise = np.random.default_rng(0).random((height, width), dtype=np.float32)
        inputs = {
            'black': np.zeros((height, width), dtype=np.float32),
            'white': np.ones((height, width), dtype=np.float32),
            'grey': np.full((height, width), 0.5, dtype=np.float32),
            'noise': noise,
            'checkerboard': checkerboard,
        }
        return {name: arr.reshape(1, height, width, channels) for name, arr in inputs.items()}

    def run_variability_check(self) -> float:
        """
        Feed distinct synthetic images and report the spread of raw outputs.

        A spread under 0.01 suggests a degenerate model (constant output) and is
        logged as a warning; it does not fail the load.
        """
        outputs = {name: self.infer(tensor) for name, tensor in self.synthetic_inputs().items()}
        spread = max(outputs.values()) - min(outputs.values())

        logger.debug("Variability outputs: " + ", ".join(f"{k}={v:.6f}" for k, v in outputs.items()))
        if spread < VARIABILITY_MIN_SPREAD:
            logger.warning(f"Model outputs barely vary across synthetic inputs (spread {spread:.6f}); "
                           "the model may be degenerate")
        return spread
