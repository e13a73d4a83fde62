"""Tests for the levy command line interface."""

import json
import os

import pytest
import structlog
import yaml

from levy import __version__
from levy.cli.__main__ import main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Run each command from an empty directory without LEVY_* variables."""
    for name in list(os.environ):
        if name.startswith("LEVY_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    yield
    structlog.reset_defaults()


class TestMain:
    """Test top-level command dispatch."""

    def test_help(self, capsys):
        assert main([]) == 0
        assert "Commands:" in capsys.readouterr().out

    def test_version(self, capsys):
        assert main(["version"]) == 0
        assert capsys.readouterr().out.strip() == f"levy {__version__}"

    def test_unknown_command(self, capsys):
        assert main(["frobnicate"]) == 1
        assert "Unknown command: frobnicate" in capsys.readouterr().out


class TestConfigCommands:
    """Test `levy config` subcommands."""

    def test_validate_file(self, tmp_path, capsys):
        path = tmp_path / "levy.yaml"
        path.write_text(yaml.dump({"environment": "staging"}))

        assert main(["config", "validate", str(path)]) == 0
        assert "✓ Configuration is valid" in capsys.readouterr().out

    def test_validate_inconsistent_file(self, tmp_path, capsys):
        path = tmp_path / "levy.yaml"
        path.write_text(yaml.dump({"environment": "production", "debug": True}))

        assert main(["config", "validate", str(path)]) == 1
        assert "✗ Configuration validation failed" in capsys.readouterr().out

    def test_validate_missing_file(self, tmp_path, capsys):
        assert main(["config", "validate", str(tmp_path / "nope.yaml")]) == 1
        assert "not found" in capsys.readouterr().out

    def test_validate_environment(self, monkeypatch, capsys):
        monkeypatch.setenv("LEVY_DISPATCH_POLICY", "strict")

        assert main(["config", "validate"]) == 0
        assert "environment variables" in capsys.readouterr().out

    def test_show_json(self, capsys):
        assert main(["config", "show", "--format=json"]) == 0

        shown = json.loads(capsys.readouterr().out)
        assert shown["orchestrator"]["dispatch_policy"] == "skip_blocked"
        assert shown["features"]["circuit_breakers"] is True

    def test_show_yaml_from_file(self, tmp_path, capsys):
        path = tmp_path / "levy.yaml"
        path.write_text(yaml.dump({"bus": {"history_size": 50}}))

        assert main(["config", "show", str(path)]) == 0
        assert yaml.safe_load(capsys.readouterr().out)["bus"]["history_size"] == 50

    def test_show_bad_format(self, capsys):
        assert main(["config", "show", "--format", "toml"]) == 1
        assert "Invalid format" in capsys.readouterr().out

    def test_env(self, monkeypatch, capsys):
        monkeypatch.setenv("LEVY_MAX_RETRIES", "4")

        assert main(["config", "env"]) == 0
        out = capsys.readouterr().out
        assert "Environment: development" in out
        assert "LEVY_MAX_RETRIES=4" in out
        assert "LEVY_CB_TIMEOUT" not in out

        assert main(["config", "env", "--all"]) == 0
        assert "LEVY_CB_TIMEOUT=(not set)" in capsys.readouterr().out

    def test_unknown_config_command(self, capsys):
        assert main(["config", "explode"]) == 1
        assert "Unknown config command" in capsys.readouterr().out


class TestRunCommands:
    """Test the runtime-backed commands end to end."""

    def test_demo(self, capsys):
        assert main(["demo", "--tasks", "3", "--delay", "0"]) == 0

        out = capsys.readouterr().out
        assert out.count("✓") == 3
        assert "✗" not in out

    def test_demo_bad_arguments(self):
        assert main(["demo", "--tasks", "many"]) == 2

    @pytest.mark.slow
    def test_resilience_error_scenario(self, capsys):
        exit_code = main(
            [
                "resilience",
                "error",
                "--failure-count",
                "3",
                "--delay",
                "0",
                "--probe-timeout",
                "0.1",
                "--reset-timeout",
                "0.1",
                "--recovery-timeout",
                "5",
                "--seed",
                "1",
                "--json",
            ]
        )

        out = capsys.readouterr().out
        assert exit_code == 0
        assert '"circuit_tripped": true' in out
        assert "✓ error: recovered=True" in out

    def test_resilience_invalid_options(self, capsys):
        assert main(["resilience", "error", "--failure-rate", "3"]) == 1
        assert "Invalid test options" in capsys.readouterr().out
