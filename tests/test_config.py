from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

import carrier.config as config_module
from carrier.config import CarrierConfig, _StructuredFormatter, configure_logging, find_claude_cli


class TestDefaults:
    def test_defaults(self):
        config = CarrierConfig()
        assert config.carrier_path == Path(".carrier")
        assert config.provider == "claude"
        assert config.log_level == "warning"
        assert not config.reporting_enabled

    def test_reporting_needs_url_and_flag(self):
        assert not CarrierConfig(api_reporting=True).reporting_enabled
        assert not CarrierConfig(api_url="https://x.test").reporting_enabled
        assert CarrierConfig(api_url="https://x.test", api_reporting=True).reporting_enabled


class TestValidation:
    def test_log_level_normalized(self):
        assert CarrierConfig(log_level=" INFO ").log_level == "info"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            CarrierConfig(log_level="chatty")

    def test_invalid_component_level(self):
        with pytest.raises(ValidationError):
            CarrierConfig(log_levels={"carrier.process": "loud"})

    def test_empty_provider(self):
        with pytest.raises(ValidationError):
            CarrierConfig(provider="  ")

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            CarrierConfig(task_timeout=0)


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = CarrierConfig.load(tmp_path / "absent.toml", env={})
        assert config == CarrierConfig()

    def test_precedence(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('model = "from-file"\nprovider = "claude"\ntask_timeout = 100\nlog_level = "info"\n')
        env = {"CARRIER_MODEL": "from-env", "CARRIER_TASK_TIMEOUT": "30"}

        config = CarrierConfig.load(path, env=env, task_timeout=5, log_level=None)

        assert config.model == "from-env"
        assert config.task_timeout == 5
        assert config.log_level == "info"

    def test_env_fields(self, tmp_path):
        env = {
            "CARRIER_PATH": str(tmp_path / "state"),
            "CARRIER_API_URL": "https://api.example.test",
            "CARRIER_API_REPORTING": "yes",
            "CARRIER_LOG_LEVEL": "",
        }
        config = CarrierConfig.load(tmp_path / "absent.toml", env=env)
        assert config.carrier_path == tmp_path / "state"
        assert config.reporting_enabled
        assert config.log_level == "warning"

    def test_reporting_flag_false_values(self, tmp_path):
        config = CarrierConfig.load(
            tmp_path / "absent.toml", env={"CARRIER_API_REPORTING": "off", "CARRIER_API_URL": "https://x"}
        )
        assert not config.reporting_enabled


class TestFindClaudeCli:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CARRIER_CLAUDE_CLI", "/opt/claude")
        assert find_claude_cli() == "/opt/claude"

    def test_path_lookup(self, monkeypatch):
        monkeypatch.delenv("CARRIER_CLAUDE_CLI", raising=False)
        monkeypatch.setattr(config_module, "_CLAUDE_CLI_CACHE", config_module._UNSET)
        monkeypatch.setattr(config_module.shutil, "which", lambda name: f"/usr/bin/{name}")
        assert find_claude_cli() == "/usr/bin/claude"


class TestLogging:
    def test_structured_formatter(self):
        record = logging.LogRecord("carrier.process", logging.INFO, __file__, 1, "pid %s", (42,), None)
        record.deployed_id = "7"
        record.details = {"a": 1}
        payload = json.loads(_StructuredFormatter().format(record))
        assert payload["level"] == "info"
        assert payload["logger"] == "carrier.process"
        assert payload["message"] == "pid 42"
        assert payload["deployed_id"] == "7"
        assert payload["details"] == "{'a': 1}"

    def test_configure_logging_to_file(self, tmp_path):
        log_file = tmp_path / "carrier.log"
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        component = logging.getLogger("carrier.process")
        try:
            configure_logging(
                CarrierConfig(log_level="warning", log_file=str(log_file), log_levels={"carrier.process": "debug"})
            )
            assert root.level == logging.DEBUG
            assert component.level == logging.DEBUG
            component.debug("spawned")
            for handler in root.handlers:
                handler.flush()
            assert json.loads(log_file.read_text().splitlines()[-1])["message"] == "spawned"
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
            component.setLevel(logging.NOTSET)
