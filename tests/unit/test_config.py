"""
Unit tests for configuration management (config.py).
"""
from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from selfhost_migrate.config import Settings, _load_constants_config


class TestLoadConstantsConfig:
    def test_only_known_fields_are_loaded(self):
        config = _load_constants_config({"LOG_LEVEL", "NOT_A_SETTING"})
        assert config == {"LOG_LEVEL": "INFO"}


class TestSettings:
    def test_defaults_come_from_constants(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.load()
        assert settings.LOG_LEVEL == "INFO"
        assert settings.APP_SCHEMA == "public"
        assert settings.STEP_TIMEOUT_SECONDS == 1800
        assert settings.step_timeout == 1800.0

    def test_env_overrides_constants(self):
        with patch.dict(os.environ, {"MIGRATE_LOG_LEVEL": "debug", "MIGRATE_STEP_TIMEOUT_SECONDS": "60"}, clear=True):
            settings = Settings.load()
        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.STEP_TIMEOUT_SECONDS == 60

    def test_explicit_overrides_win_over_env(self):
        with patch.dict(os.environ, {"MIGRATE_BACKUP_ROOT": "/from/env"}, clear=True):
            settings = Settings.load(BACKUP_ROOT="/from/flag")
        assert settings.BACKUP_ROOT == "/from/flag"

    def test_zero_step_timeout_disables_timeout(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.load(STEP_TIMEOUT_SECONDS=0)
        assert settings.step_timeout is None

    @pytest.mark.parametrize("overrides", [
        {"LOG_LEVEL": "LOUD"},
        {"LOG_FORMAT": "xml"},
        {"STEP_TIMEOUT_SECONDS": -1},
        {"CONNECT_TIMEOUT_SECONDS": 0},
    ])
    def test_invalid_values_rejected(self, overrides):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValidationError):
                Settings.load(**overrides)

    def test_each_load_reads_the_environment(self):
        with patch.dict(os.environ, {"MIGRATE_APP_SCHEMA": "billing"}, clear=True):
            first = Settings.load()
        with patch.dict(os.environ, {"MIGRATE_APP_SCHEMA": "crm"}, clear=True):
            second = Settings.load()
        assert (first.APP_SCHEMA, second.APP_SCHEMA) == ("billing", "crm")
