"""
Connection Resolver: turns interactive or pre-supplied parameters into
validated source and target ConnectionProfiles.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import structlog
from dotenv import dotenv_values
from pydantic import ValidationError

from selfhost_migrate import constants
from selfhost_migrate.errors import ConfigurationError
from selfhost_migrate.models import ConnectionInput, ConnectionProfile
from selfhost_migrate.prompts import Prompter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PresetInput:
    """Fully pre-supplied parameters; never prompts."""
    source: ConnectionInput = field(default_factory=ConnectionInput)
    target: ConnectionInput = field(default_factory=ConnectionInput)


@dataclass(frozen=True)
class InteractiveInput:
    """Prompt for every field the seeds leave unset."""
    prompter: Prompter
    source: ConnectionInput = field(default_factory=ConnectionInput)
    target: ConnectionInput = field(default_factory=ConnectionInput)


ResolverInput = Union[PresetInput, InteractiveInput]


@dataclass(frozen=True)
class DeploymentSettings:
    """Advisory values read from the self-hosted deployment's .env file."""
    password: str | None = None
    port: str | None = None


def read_deployment_settings(env_file: Path | None) -> DeploymentSettings:
    """Read POSTGRES_PASSWORD / POSTGRES_PORT from the settings file, if present.

    Read-only: the file is never written.
    """
    if env_file is None or not env_file.is_file():
        return DeploymentSettings()
    values = dotenv_values(env_file)
    password = (values.get(constants.ENV_PASSWORD_KEY) or "").strip() or None
    port = (values.get(constants.ENV_PORT_KEY) or "").strip() or None
    logger.info(
        "deployment_settings_loaded",
        env_file=str(env_file),
        has_password=password is not None,
        has_port=port is not None,
    )
    return DeploymentSettings(password=password, port=port)


def _parse_port(side: str, value: int | str | None) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(f"{side} port must be a number, got {value!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"{side} port must be between 1 and 65535, got {port}")
    return port


def build_profile(
    side: str,
    host: str | None,
    port: int | str | None,
    user: str | None,
    password: str | None,
    database: str | None,
) -> ConnectionProfile:
    """Validate final values into a profile, mapping problems to ConfigurationError."""
    if not (host or "").strip():
        raise ConfigurationError(f"{side} host is required")
    if not password:
        raise ConfigurationError(f"{side} password is required")
    try:
        return ConnectionProfile(
            host=host,
            port=_parse_port(side, port),
            user=user or constants.DEFAULT_USER,
            password=password,
            database=database or constants.DEFAULT_DATABASE,
        )
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigurationError(f"Invalid {side} connection parameters: {fields}") from None


class ConnectionResolver:
    """Resolve source/target profiles, applying defaults only to unset fields."""

    def __init__(self, env_file: Path | None = None):
        self.env_file = env_file

    def resolve_source(self, inp: ResolverInput) -> ConnectionProfile:
        seed = inp.source
        if isinstance(inp, InteractiveInput):
            p = inp.prompter
            host = seed.host if seed.provided("host") else p.ask_with_default(
                "Cloud DB Host (e.g., db.xxxxx.supabase.co)")
            port = seed.port if seed.provided("port") else p.ask_with_default(
                "Cloud DB Port", str(constants.DEFAULT_PORT))
            user = seed.user if seed.provided("user") else p.ask_with_default(
                "Cloud DB User", constants.DEFAULT_USER)
            password = seed.password if seed.provided("password") else p.ask_with_default(
                "Cloud DB Password", secret=True)
            database = seed.database if seed.provided("database") else p.ask_with_default(
                "Cloud DB Name", constants.DEFAULT_DATABASE)
        else:
            host = seed.host
            port = seed.port if seed.provided("port") else constants.DEFAULT_PORT
            user = seed.user or constants.DEFAULT_USER
            password = seed.password
            database = seed.database or constants.DEFAULT_DATABASE

        profile = build_profile("source", host, port, user, password, database)
        logger.info("source_resolved", **profile.log_fields())
        return profile

    def resolve_target(self, inp: ResolverInput) -> ConnectionProfile:
        seed = inp.target
        deployment = read_deployment_settings(self.env_file)
        default_port = deployment.port or str(constants.DEFAULT_PORT)

        if isinstance(inp, InteractiveInput):
            p = inp.prompter
            host = seed.host if seed.provided("host") else p.ask_with_default(
                "Self-Hosted DB Host", constants.DEFAULT_TARGET_HOST)
            port = seed.port if seed.provided("port") else p.ask_with_default(
                "Self-Hosted DB Port", default_port)
            if seed.provided("password"):
                password = seed.password
            elif deployment.password and p.ask_yes_no("Use password from .env?", default=True):
                password = deployment.password
            else:
                password = p.ask_with_default("Self-Hosted DB Password", secret=True)
        else:
            host = seed.host or constants.DEFAULT_TARGET_HOST
            port = seed.port if seed.provided("port") else default_port
            password = seed.password if seed.provided("password") else deployment.password

        profile = build_profile(
            "target",
            host,
            port,
            seed.user or constants.DEFAULT_USER,
            password,
            seed.database or constants.DEFAULT_DATABASE,
        )
        logger.info("target_resolved", **profile.log_fields())
        return profile
