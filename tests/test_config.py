"""
tests/test_config.py

QRShield - Configuration Loader Tests
------------------------------------
• Defaults, YAML/JSON files, environment-specific overrides
• QRSHIELD_* environment variable injection and type parsing
• Validation and parse failures, save/reload round trip
• Global configuration caching and reload
"""

import json
import os

import pytest
import yaml

from qrshield.core.config_loader import (
    ConfigEnvironment,
    ConfigLoader,
    ConfigLoadError,
    ConfigValidationError,
    QRShieldConfig,
    get_config,
    load_config,
    reload_config,
)
from qrshield.core import config_loader


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("QRSHIELD_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "qrshield.yaml"
    path.write_text(yaml.safe_dump({
        'app_name': 'QRShield Test',
        'detector': {'weights': {'finders': 0.5}, 'max_analysis_size': 512},
        'classifier': {'threshold': 0.65, 'output_activation': 'sigmoid'},
    }), encoding='utf-8')
    return path


class TestDefaults:

    def test_defaults_without_files(self, tmp_path):
        config = ConfigLoader(config_paths=[tmp_path / "none.yaml"]).load_config()
        assert isinstance(config, QRShieldConfig)
        assert config.detector.weights.finders == 0.35
        assert config.detector.thresholds.combined == 0.45
        assert config.preprocessing.input_size == 69
        assert config.preprocessing.enhancement == 'none'
        assert config.classifier.threshold == 0.5
        assert config.classifier.output_activation == 'logit'
        assert config.live_preview.min_interval_ms == 1000
        assert config.logger.log_to_file is False

    def test_weights_sum_to_one(self):
        assert QRShieldConfig().detector.weights.total() == pytest.approx(1.0)


class TestFileLoading:

    def test_yaml_file(self, config_file):
        loader = ConfigLoader(config_paths=[config_file])
        config = loader.load_config()
        assert config.app_name == 'QRShield Test'
        assert config.detector.weights.finders == 0.5
        assert config.detector.weights.contrast == 0.20
        assert config.detector.max_analysis_size == 512
        assert config.classifier.threshold == 0.65
        assert loader.loaded_files == [str(config_file)]

    def test_json_file(self, tmp_path):
        path = tmp_path / "qrshield.json"
        path.write_text(json.dumps({'preprocessing': {'enhancement': 'equalize'}}), encoding='utf-8')
        config = ConfigLoader(config_paths=[path]).load_config()
        assert config.preprocessing.enhancement == 'equalize'

    def test_first_existing_file_wins(self, tmp_path, config_file):
        config = ConfigLoader(config_paths=[tmp_path / "missing.yaml", config_file]).load_config()
        assert config.app_name == 'QRShield Test'

    def test_environment_override_file(self, tmp_path, monkeypatch, config_file):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "test.yaml").write_text(
            yaml.safe_dump({'classifier': {'threshold': 0.8}}), encoding='utf-8')

        config = ConfigLoader(config_paths=[config_file], environment='testing').load_config()
        assert config.environment == ConfigEnvironment.TESTING
        assert config.classifier.threshold == 0.8
        assert config.classifier.output_activation == 'sigmoid'

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("detector: [unclosed", encoding='utf-8')
        with pytest.raises(ConfigLoadError):
            ConfigLoader(config_paths=[path]).load_config()

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding='utf-8')
        with pytest.raises(ConfigLoadError):
            ConfigLoader(config_paths=[path]).load_config()

    @pytest.mark.parametrize("section,values", [
        ('classifier', {'threshold': 1.5}),
        ('classifier', {'output_activation': 'softmax'}),
        ('classifier', {'input_layout': 'chwn'}),
        ('preprocessing', {'interpolation': 'lanczos9'}),
        ('live_preview', {'min_interval_ms': 100}),
        ('detector', {'weights': {'finders': -1.0}}),
    ])
    def test_invalid_values(self, tmp_path, section, values):
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump({section: values}), encoding='utf-8')
        with pytest.raises(ConfigValidationError):
            ConfigLoader(config_paths=[path]).load_config()


class TestEnvironmentVariables:

    def test_nested_override(self, monkeypatch, config_file):
        monkeypatch.setenv("QRSHIELD_DETECTOR__WEIGHTS__FINDERS", "0.4")
        monkeypatch.setenv("QRSHIELD_CLASSIFIER__VARIABILITY_CHECK", "false")
        config = ConfigLoader(config_paths=[config_file]).load_config()
        assert config.detector.weights.finders == 0.4
        assert config.classifier.variability_check is False

    def test_env_vars_can_be_disabled(self, monkeypatch, config_file):
        monkeypatch.setenv("QRSHIELD_APP_NAME", "FromEnv")
        loader = ConfigLoader(config_paths=[config_file], enable_env_vars=False)
        # values passed to the settings model take priority over the process environment
        assert loader.load_config().app_name == 'QRShield Test'

    def test_environment_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("QRSHIELD_ENV", "production")
        loader = ConfigLoader(config_paths=[tmp_path / "none.yaml"])
        assert loader.environment == ConfigEnvironment.PRODUCTION

    def test_unknown_environment_defaults_to_development(self):
        assert ConfigLoader(environment='staging').environment == ConfigEnvironment.DEVELOPMENT

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("off", False), ("42", 42), ("0.25", 0.25),
        ('["a", "b"]', ["a", "b"]), ("plain", "plain"),
    ])
    def test_parse_env_value(self, raw, expected):
        assert ConfigLoader()._parse_env_value(raw) == expected


class TestCachingAndSaving:

    def test_cached_until_forced(self, config_file):
        loader = ConfigLoader(config_paths=[config_file])
        first = loader.load_config()
        assert loader.load_config() is first
        assert loader.load_config(force_reload=True) is not first

    def test_save_and_reload(self, tmp_path):
        loader = ConfigLoader(config_paths=[tmp_path / "saved.yaml"])
        config = QRShieldConfig(app_name="Saved")
        path = loader.save_config(config)
        reloaded = ConfigLoader(config_paths=[path]).load_config()
        assert reloaded.app_name == "Saved"
        assert reloaded.detector == config.detector

    def test_load_config_helper(self, config_file):
        assert load_config(config_paths=[config_file]).classifier.threshold == 0.65


class TestGlobalConfig:

    @pytest.fixture
    def global_loader(self, monkeypatch, config_file):
        loader = ConfigLoader(config_paths=[config_file])
        monkeypatch.setattr(config_loader, '_config_loader', loader)
        monkeypatch.setattr(config_loader, '_global_config', None)
        return loader

    def test_get_config_is_cached(self, global_loader):
        first = get_config()
        assert first.classifier.threshold == 0.65
        assert get_config() is first

    def test_reload_picks_up_file_changes(self, global_loader, config_file):
        first = get_config()
        config_file.write_text(yaml.safe_dump({'classifier': {'threshold': 0.7}}), encoding='utf-8')

        reloaded = reload_config()
        assert reloaded is not first
        assert reloaded.classifier.threshold == 0.7
        assert get_config() is reloaded
