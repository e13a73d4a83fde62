"""Tests for configuration management."""

import os
from pathlib import Path

import pytest
import yaml

from levy.config import (
    Config,
    ConfigError,
    FeatureFlags,
    load_config,
    load_config_from_env,
    load_config_from_file,
    validate_config,
)
from levy.config.environment import Environment, get_config_file_path, get_environment


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep LEVY_* variables from the outer environment out of these tests."""
    for name in list(os.environ):
        if name.startswith("LEVY_"):
            monkeypatch.delenv(name)


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.dump(data))
    return path


class TestFeatureFlags:
    """Test feature flags functionality."""

    def test_default_features(self):
        """All features are on by default."""
        features = FeatureFlags()

        assert features.circuit_breakers is True
        assert features.auto_restart is True
        assert features.pii_redaction is True

    def test_from_env_empty(self):
        """An unset variable yields the defaults."""
        assert FeatureFlags.from_env("NONEXISTENT_VAR") == FeatureFlags()

    def test_from_env_with_features(self, monkeypatch):
        """Only listed features are enabled."""
        monkeypatch.setenv("TEST_FEATURES", "breakers, PII")

        features = FeatureFlags.from_env("TEST_FEATURES")

        assert features.circuit_breakers is True
        assert features.pii_redaction is True
        assert features.auto_restart is False
        assert features.telemetry is False

    def test_to_dict(self):
        feature_dict = FeatureFlags(auto_restart=False).to_dict()

        assert feature_dict["auto_restart"] is False
        assert feature_dict["circuit_breakers"] is True


class TestConfig:
    """Test configuration defaults and validation."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert config.environment == "development"
        assert config.debug is False
        assert config.logging.format == "json"
        assert config.metrics.enabled is False
        assert config.orchestrator.dispatch_policy == "skip_blocked"
        assert config.circuit_breaker.failure_threshold == 3
        assert config.lifecycle.max_retries == 3

    def test_features_from_mapping(self):
        config = Config(features={"auto_restart": False})

        assert isinstance(config.features, FeatureFlags)
        assert config.features.auto_restart is False

    def test_config_validation_success(self):
        validate_config(Config())

    @pytest.mark.parametrize(
        ("mutate", "message"),
        [
            (lambda c: setattr(c.metrics, "port", 70000), "metrics.port"),
            (lambda c: setattr(c.metrics, "tracing_enabled", True), "otlp_endpoint"),
            (
                lambda c: c.orchestrator.routing_table.update({"validate_property": ""}),
                "routing_table",
            ),
            (
                lambda c: setattr(c.orchestrator, "dispatch_poll_interval", 60.0),
                "dispatch_poll_interval",
            ),
            (
                lambda c: setattr(c.circuit_breaker, "timeout", 120.0),
                "monitor_interval",
            ),
            (
                lambda c: setattr(c.resilience, "recovery_poll_interval", 60.0),
                "recovery_poll_interval",
            ),
        ],
    )
    def test_config_validation_errors(self, mutate, message):
        """Inconsistent settings are rejected."""
        config = Config()
        mutate(config)

        with pytest.raises(ConfigError, match=message):
            validate_config(config)

    def test_production_rules(self):
        """Production forbids debug, DEBUG logging and disabled PII redaction."""
        config = Config(environment="production", debug=True)
        with pytest.raises(ConfigError, match="Debug mode"):
            validate_config(config)

        config = Config(environment="production", logging={"level": "DEBUG"})
        with pytest.raises(ConfigError, match="DEBUG logging"):
            validate_config(config)

        config = Config(environment="production", features={"pii_redaction": False})
        with pytest.raises(ConfigError, match="PII redaction"):
            validate_config(config)

        validate_config(Config(environment="production"))


class TestConfigLoading:
    """Test configuration loading from various sources."""

    def test_load_config_from_file(self, tmp_path):
        """Test loading configuration from YAML file."""
        config_path = write_yaml(
            tmp_path / "levy.yaml",
            {
                "environment": "staging",
                "logging": {"level": "DEBUG", "format": "text"},
                "orchestrator": {"dispatch_policy": "strict"},
                "circuit_breaker": {"failure_threshold": 5, "timeout": None},
            },
        )

        config = load_config_from_file(config_path)

        assert config.environment == "staging"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "text"
        assert config.orchestrator.dispatch_policy == "strict"
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.timeout is None

    def test_load_config_from_empty_file(self, tmp_path):
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")

        assert load_config_from_file(config_path) == Config()

    def test_load_config_file_errors(self, tmp_path):
        """Missing, malformed and invalid files raise ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config_from_file(tmp_path / "missing.yaml")

        bad_yaml = tmp_path / "bad.yaml"
        bad_yaml.write_text("logging: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config_from_file(bad_yaml)

        not_mapping = write_yaml(tmp_path / "list.yaml", ["a", "b"])
        with pytest.raises(ConfigError, match="mapping"):
            load_config_from_file(not_mapping)

        invalid = write_yaml(tmp_path / "invalid.yaml", {"logging": {"level": "LOUD"}})
        with pytest.raises(ConfigError, match="validation failed"):
            load_config_from_file(invalid)

    def test_load_config_from_env(self, monkeypatch):
        """Test loading configuration from environment variables."""
        monkeypatch.setenv("LEVY_ENVIRONMENT", "Testing")
        monkeypatch.setenv("LEVY_DEBUG", "yes")
        monkeypatch.setenv("LEVY_LOG_LEVEL", "warning")
        monkeypatch.setenv("LEVY_METRICS_PORT", "9100")
        monkeypatch.setenv("LEVY_OTLP_ENDPOINT", "http://collector:4317")
        monkeypatch.setenv("LEVY_CB_RESET_TIMEOUT", "2.5")
        monkeypatch.setenv("LEVY_DISPATCH_POLICY", "strict")
        monkeypatch.setenv("LEVY_MAX_RETRIES", "5")
        monkeypatch.setenv("LEVY_FEATURES", "breakers,logging")

        config = load_config_from_env()

        assert config.environment == "testing"
        assert config.debug is True
        assert config.logging.level == "WARNING"
        assert config.metrics.port == 9100
        assert config.metrics.tracing_enabled is True
        assert config.circuit_breaker.reset_timeout == 2.5
        assert config.orchestrator.dispatch_policy == "strict"
        assert config.lifecycle.max_retries == 5
        assert config.features.circuit_breakers is True
        assert config.features.auto_restart is False

    def test_invalid_env_values(self, monkeypatch):
        monkeypatch.setenv("LEVY_METRICS_PORT", "not-a-port")
        with pytest.raises(ConfigError, match="LEVY_METRICS_PORT"):
            load_config_from_env()

        monkeypatch.delenv("LEVY_METRICS_PORT")
        monkeypatch.setenv("LEVY_DISPATCH_POLICY", "random")
        with pytest.raises(ConfigError):
            load_config_from_env()

    def test_env_overrides_file_per_field(self, tmp_path, monkeypatch):
        """Environment values replace file values without dropping siblings."""
        config_path = write_yaml(
            tmp_path / "levy.yaml",
            {
                "logging": {"level": "DEBUG", "format": "text"},
                "lifecycle": {"retry_delay": 1.0, "max_retries": 2},
            },
        )
        monkeypatch.setenv("LEVY_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("LEVY_MAX_RETRIES", "7")

        config = load_config(config_path)

        assert config.logging.level == "ERROR"
        assert config.logging.format == "text"
        assert config.lifecycle.max_retries == 7
        assert config.lifecycle.retry_delay == 1.0

    def test_load_config_without_file(self, tmp_path):
        assert load_config(tmp_path / "absent.yaml") == Config()
        assert load_config() == Config()


class TestEnvironment:
    """Test environment detection and config file lookup."""

    def test_environment_from_variable(self, monkeypatch):
        monkeypatch.setenv("LEVY_ENVIRONMENT", "production")

        assert get_environment() == Environment.PRODUCTION

    def test_environment_from_marker_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env.staging").touch()

        assert get_environment() == Environment.STAGING

    def test_environment_default(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LEVY_ENVIRONMENT", "lunar")

        assert get_environment() == Environment.DEVELOPMENT

    def test_config_file_lookup(self, tmp_path, monkeypatch):
        """Environment-specific files win over the generic one."""
        monkeypatch.chdir(tmp_path)
        assert get_config_file_path(Environment.TESTING) is None

        (tmp_path / "levy.yaml").touch()
        assert get_config_file_path(Environment.TESTING) == Path("levy.yaml")

        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "testing.yaml").touch()
        assert get_config_file_path(Environment.TESTING) == Path("config/testing.yaml")
