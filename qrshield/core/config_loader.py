"""
qrshield/core/config_loader.py

QRShield - Configuration Management
-----------------------------------
• YAML/JSON configuration loader with pydantic schema validation
• Environment-specific override files and QRSHIELD_* environment variable injection
• Detector weights, decision bars and preprocessing constants exposed as tunable settings
"""

from __future__ import annotations

import os
import json
from enum import Enum, auto
from pathlib import Path
from typing import Dict, Any, Optional, List, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from qrshield.utils.logger import get_logger

logger = get_logger(__name__)

# -------------------------------
# Enumerations and Constants
# -------------------------------

class ConfigEnvironment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class ConfigFormat(Enum):
    YAML = auto()
    JSON = auto()


ENV_PREFIX = "QRSHIELD_"

DEFAULT_CONFIG_PATHS = [
    "config/qrshield.yaml",
    "qrshield.yaml",
    "config.yaml",
]

DEFAULT_ENV_CONFIG_PATHS = {
    ConfigEnvironment.DEVELOPMENT: ["config/dev.yaml", "config/development.yaml"],
    ConfigEnvironment.TESTING: ["config/test.yaml", "config/testing.yaml"],
    ConfigEnvironment.PRODUCTION: ["config/prod.yaml", "config/production.yaml"],
}

# Model contract for the deployed classifier
MODEL_INPUT_SIZE = 69
MODEL_NUM_CHANNELS = 1

# -------------------------------
# Configuration Schema Models
# -------------------------------

class LoggerSettings(BaseModel):
    """Logging configuration schema."""
    level: str = Field(default="INFO", description="Log level")
    log_to_console: bool = Field(default=True, description="Log to stdout")
    log_to_file: bool = Field(default=False, description="Enable rotating file logging")
    log_file: str = Field(default="logs/qrshield.log", description="Log file path")
    max_bytes: int = Field(default=2 * 1024 * 1024, ge=1024, description="Rotate after this many bytes")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of rotated files to keep")


class DetectorWeights(BaseModel):
    """Weights of the five detector sub-scores in the combined score."""
    contrast: float = Field(default=0.20, ge=0.0)
    squares: float = Field(default=0.15, ge=0.0)
    patterns: float = Field(default=0.20, ge=0.0)
    finders: float = Field(default=0.35, ge=0.0)
    edges: float = Field(default=0.10, ge=0.0)

    @model_validator(mode="after")
    def _check_total(self) -> "DetectorWeights":
        if self.total() <= 0.0:
            raise ValueError("detector weights must sum to a positive value")
        return self

    def total(self) -> float:
        return self.contrast + self.squares + self.patterns + self.finders + self.edges


class DetectorThresholds(BaseModel):
    """Bars of the disjunctive QR verdict."""
    combined: float = Field(default=0.45, ge=0.0, le=1.0, description="Combined score bar")
    strong_finders: float = Field(default=0.3, ge=0.0, le=1.0, description="Finder bar paired with contrast")
    decent_contrast: float = Field(default=0.4, ge=0.0, le=1.0, description="Contrast bar paired with finders")
    very_strong_finders: float = Field(default=0.5, ge=0.0, le=1.0, description="Finder bar on its own")
    high_contrast: float = Field(default=0.7, ge=0.0, le=1.0, description="Contrast bar paired with structure")
    weak_structure: float = Field(default=0.2, ge=0.0, le=1.0, description="Modular pattern bar")


class DetectorSettings(BaseModel):
    """QR likelihood detector configuration schema."""
    weights: DetectorWeights = Field(default_factory=DetectorWeights)
    thresholds: DetectorThresholds = Field(default_factory=DetectorThresholds)
    max_analysis_size: int = Field(default=1024, ge=64, le=8192, description="Downscale long side above this")
    contrast_sample_cap: int = Field(default=1000, ge=100, le=10000, description="Pixels sampled for contrast")
    min_contrast_range: int = Field(default=100, ge=0, le=255, description="Range below which contrast is 0")
    min_finder_dimension: int = Field(default=50, ge=14, description="Short side needed for finder search")
    finder_acceptance: float = Field(default=0.6, ge=0.0, le=1.0, description="Per-region finder score bar")
    finder_bonus: float = Field(default=1.5, ge=1.0, le=3.0, description="Multiplier when 2+ finders qualify")


class PreprocessingSettings(BaseModel):
    """Classifier input preprocessing schema."""
    input_size: int = Field(default=MODEL_INPUT_SIZE, ge=8, le=1024, description="Model input side")
    interpolation: str = Field(default="cubic", description="cubic, linear, area or nearest")
    enhancement: str = Field(default="none", description="none, minmax or equalize")
    content_margin: int = Field(default=32, ge=0, le=127, description="Distance from Otsu for content pixels")
    padding_ratio: float = Field(default=0.10, ge=0.0, le=1.0, description="Crop padding relative to box side")
    min_padding: int = Field(default=4, ge=0, description="Minimum crop padding in pixels")
    min_region_size: int = Field(default=20, ge=1, description="Smaller boxes fall back to a centre crop")

    @field_validator("interpolation")
    @classmethod
    def _check_interpolation(cls, value: str) -> str:
        value = value.lower()
        if value not in ("cubic", "linear", "area", "nearest"):
            raise ValueError(f"unsupported interpolation '{value}'")
        return value

    @field_validator("enhancement")
    @classmethod
    def _check_enhancement(cls, value: str) -> str:
        value = value.lower()
        if value not in ("none", "minmax", "equalize"):
            raise ValueError(f"unsupported enhancement '{value}'")
        return value


class ClassifierSettings(BaseModel):
    """Security classifier configuration schema."""
    model_config = ConfigDict(protected_namespaces=())

    model_path: str = Field(default="models/qr_security_model.pt", description="TorchScript model file")
    labels_path: str = Field(default="models/labels.txt", description="Two-line labels file")
    threshold: float = Field(default=0.5, gt=0.0, lt=1.0, description="Malicious decision threshold")
    output_activation: str = Field(default="logit", description="logit or sigmoid")
    input_layout: str = Field(default="nhwc", description="nhwc or nchw")
    device: str = Field(default="cpu", description="Torch device")
    variability_check: bool = Field(default=True, description="Probe the model with synthetic inputs at load")

    @field_validator("output_activation")
    @classmethod
    def _check_activation(cls, value: str) -> str:
        value = value.lower()
        if value not in ("logit", "sigmoid"):
            raise ValueError(f"unsupported output activation '{value}'")
        return value

    @field_validator("input_layout")
    @classmethod
    def _check_layout(cls, value: str) -> str:
        value = value.lower()
        if value not in ("nhwc", "nchw"):
            raise ValueError(f"unsupported input layout '{value}'")
        return value


class LivePreviewSettings(BaseModel):
    """Frame throttling for live camera preview callers."""
    min_interval_ms: int = Field(default=1000, ge=800, le=3000, description="Minimum gap between analyses")


class QRShieldConfig(BaseSettings):
    """Main QRShield configuration schema with validation."""

    app_name: str = Field(default="QRShield", description="Application name")
    environment: ConfigEnvironment = Field(default=ConfigEnvironment.DEVELOPMENT, description="Environment")
    debug: bool = Field(default=False, description="Debug mode")

    logger: LoggerSettings = Field(default_factory=LoggerSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    preprocessing: PreprocessingSettings = Field(default_factory=PreprocessingSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    live_preview: LivePreviewSettings = Field(default_factory=LivePreviewSettings)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter='__',
        case_sensitive=False,
        validate_default=True,
        extra='ignore',
    )

# -------------------------------
# Configuration Exceptions
# -------------------------------

class ConfigError(Exception):
    """Base configuration error."""
    pass


class ConfigLoadError(ConfigError):
    """Configuration loading error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass

# -------------------------------
# Configuration Loader
# -------------------------------

class ConfigLoader:
    """
    Configuration loader with multi-source support and validation.

    Sources, lowest priority first:
    - first existing base file from ``config_paths``
    - first existing environment-specific file
    - ``QRSHIELD_SECTION__KEY`` environment variables
    """

    def __init__(
        self,
        config_paths: Optional[List[Union[str, Path]]] = None,
        environment: Optional[Union[str, ConfigEnvironment]] = None,
        enable_env_vars: bool = True,
    ):
        self.config_paths = [Path(p) for p in (config_paths or DEFAULT_CONFIG_PATHS)]
        self.environment = self._parse_environment(environment)
        self.enable_env_vars = enable_env_vars

        self._loaded_files: List[str] = []
        self._file_timestamps: Dict[str, float] = {}
        self._cached: Optional[QRShieldConfig] = None

        logger.debug(f"ConfigLoader initialized for environment: {self.environment.value}")

    @property
    def loaded_files(self) -> List[str]:
        return list(self._loaded_files)

    def _parse_environment(self, env: Optional[Union[str, ConfigEnvironment]]) -> ConfigEnvironment:
        """Parse environment from string or enum."""
        if env is None:
            env = os.getenv('QRSHIELD_ENV', 'development')

        if isinstance(env, str):
            try:
                return ConfigEnvironment(env.lower())
            except ValueError:
                logger.warning(f"Unknown environment '{env}', defaulting to development")
                return ConfigEnvironment.DEVELOPMENT

        return env

    def load_config(self, force_reload: bool = False) -> QRShieldConfig:
        """
        Load and validate configuration from every source.

        Args:
            force_reload: Ignore the cached result even if no file changed

        Returns:
            Validated configuration object

        Raises:
            ConfigLoadError: a config file exists but cannot be parsed
            ConfigValidationError: merged values violate the schema
        """
        if not force_reload and self._cached is not None and not self._needs_reload():
            logger.debug("Using cached configuration")
            return self._cached

        self._loaded_files = []
        self._file_timestamps = {}

        base_config = self._load_first(self.config_paths)
        env_config = self._load_first([Path(p) for p in DEFAULT_ENV_CONFIG_PATHS.get(self.environment, [])])
        merged = self._merge_configs(base_config, env_config)

        if self.enable_env_vars:
            merged = self._apply_env_vars(merged)

        merged.setdefault('environment', self.environment.value)
        config = self._validate_config(merged)
        self._cached = config

        if self._loaded_files:
            logger.info(f"Configuration loaded from {', '.join(self._loaded_files)}")
        else:
            logger.info("No configuration file found, using defaults")
        return config

    def _load_first(self, paths: List[Path]) -> Dict[str, Any]:
        """Load the first existing file in ``paths``."""
        for path in paths:
            if path.exists():
                data = self._load_config_file(path)
                self._loaded_files.append(str(path))
                self._file_timestamps[str(path)] = path.stat().st_mtime
                logger.debug(f"Loaded config from: {path}")
                return data
        return {}

    def _load_config_file(self, file_path: Path) -> Dict[str, Any]:
        """Load configuration from a single file."""
        file_format = self._detect_format(file_path)

        try:
            content = file_path.read_text(encoding='utf-8')
            if file_format == ConfigFormat.JSON:
                data = json.loads(content)
            else:
                data = yaml.safe_load(content)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse config file {file_path}: {e}")
            raise ConfigLoadError(f"Failed to parse config file {file_path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config file {file_path} must contain a mapping at top level")
        return data

    def _detect_format(self, file_path: Path) -> ConfigFormat:
        """Detect configuration file format from extension."""
        return ConfigFormat.JSON if file_path.suffix.lower() == '.json' else ConfigFormat.YAML

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge configuration dictionaries."""
        if not override:
            return dict(base)

        merged = dict(base)
        for key, value in override.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _apply_env_vars(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply QRSHIELD_* environment variable overrides."""
        env_overrides: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX) or key == 'QRSHIELD_ENV':
                continue
            config_key = key[len(ENV_PREFIX):].lower()
            # QRSHIELD_DETECTOR__WEIGHTS__FINDERS -> detector.weights.finders
            keys = config_key.split('__')
            self._set_nested_value(env_overrides, keys, self._parse_env_value(value))

        return self._merge_configs(config, env_overrides)

    def _set_nested_value(self, config: Dict[str, Any], keys: List[str], value: Any):
        """Set nested dictionary value from key path."""
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ('true', 'yes', 'on'):
            return True
        if value.lower() in ('false', 'no', 'off'):
            return False

        try:
            return float(value) if '.' in value else int(value)
        except ValueError:
            pass

        if value.startswith(('[', '{')):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _validate_config(self, config_data: Dict[str, Any]) -> QRShieldConfig:
        """Validate configuration using the pydantic schema."""
        try:
            return QRShieldConfig(**config_data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigValidationError(f"Invalid configuration: {e}") from e

    def _needs_reload(self) -> bool:
        """Check if configuration files have been modified."""
        for file_path, timestamp in self._file_timestamps.items():
            path = Path(file_path)
            if path.exists() and path.stat().st_mtime > timestamp:
                return True
        return False

    def save_config(self, config: QRShieldConfig, file_path: Optional[Path] = None) -> Path:
        """Save configuration to a YAML or JSON file."""
        file_path = Path(file_path or self.config_paths[0])
        config_dict = config.model_dump(mode='json')
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, 'w', encoding='utf-8') as f:
            if self._detect_format(file_path) == ConfigFormat.JSON:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)
            else:
                yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to: {file_path}")
        return file_path

# -------------------------------
# Convenience Functions
# -------------------------------

def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    environment: Optional[Union[str, ConfigEnvironment]] = None,
    force_reload: bool = False,
) -> QRShieldConfig:
    """
    Convenience function to load QRShield configuration.

    Args:
        config_paths: List of configuration file paths
        environment: Target environment
        force_reload: Force reload even if cached

    Returns:
        Validated configuration object
    """
    loader = ConfigLoader(config_paths=config_paths, environment=environment)
    return loader.load_config(force_reload=force_reload)


_global_config: Optional[QRShieldConfig] = None
_config_loader: Optional[ConfigLoader] = None


def get_config(force_reload: bool = False) -> QRShieldConfig:
    """Get global configuration instance."""
    global _global_config, _config_loader

    if _global_config is None or force_reload:
        if _config_loader is None:
            _config_loader = ConfigLoader()
        _global_config = _config_loader.load_config(force_reload=force_reload)

    return _global_config


def reload_config() -> QRShieldConfig:
    """Reload global configuration."""
    return get_config(force_reload=True)
