"""
Unified configuration management: constants + environment variables with validation.
"""
from __future__ import annotations

from typing import Any

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from selfhost_migrate import constants

logger = structlog.get_logger(__name__)


def _load_constants_config(settings_fields: set[str]) -> dict[str, Any]:
    """Load defaults from the constants module.

    Only includes constants that are defined in the Settings model.
    """
    config = {
        key: value
        for key, value in constants.CONSTANTS.items()
        if key in settings_fields
    }
    logger.debug("loading_constants_config", keys=sorted(config))
    return config


class ConstantsConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from constants.py."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        return super().get_field_value(field, field_name)

    def __call__(self) -> dict[str, Any]:
        settings_fields = set(self.settings_cls.model_fields.keys())
        return _load_constants_config(settings_fields)


class Settings(BaseSettings):
    """Migration tool settings."""

    # Logging
    LOG_LEVEL: str
    LOG_FORMAT: str

    # Export / import
    APP_SCHEMA: str
    BACKUP_ROOT: str
    BACKUP_DIR_PREFIX: str
    ENV_FILE: str

    # Timeouts (seconds); STEP_TIMEOUT_SECONDS=0 means wait forever
    STEP_TIMEOUT_SECONDS: int = Field(ge=0)
    CONNECT_TIMEOUT_SECONDS: int = Field(ge=1)

    # Client binaries
    PG_DUMP_BIN: str
    PSQL_BIN: str

    # Next-steps guidance
    SELF_HOSTED_API_PORT: int

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        level = str(v).strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v!r}")
        return level

    @field_validator("LOG_FORMAT", mode="before")
    @classmethod
    def normalize_log_format(cls, v: Any) -> str:
        fmt = str(v).strip().lower()
        if fmt not in ("console", "json"):
            raise ValueError(f"LOG_FORMAT must be 'console' or 'json', got {v!r}")
        return fmt

    @property
    def step_timeout(self) -> float | None:
        """Per-step timeout for subprocess calls, None when disabled."""
        return float(self.STEP_TIMEOUT_SECONDS) if self.STEP_TIMEOUT_SECONDS else None

    model_config = SettingsConfigDict(
        env_prefix="MIGRATE_",
        case_sensitive=True,
        env_file=None,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources: init kwargs, then env vars, then constants."""
        return (
            init_settings,
            env_settings,  # Env vars override constants
            ConstantsConfigSettingsSource(settings_cls),  # Constants provide defaults
        )

    @classmethod
    def load(cls, **overrides: Any) -> "Settings":
        """Load settings from constants and MIGRATE_* environment variables.

        Keyword overrides (e.g. from CLI flags) win over both.
        """
        return cls(**overrides)

