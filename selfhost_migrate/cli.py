"""
Command-line entry point.

Usage:
    # Interactive: prompts for source/target connection details
    selfhost-migrate migrate

    # Pre-supplied: YAML run file, no prompts
    selfhost-migrate migrate --config migration.yaml --yes

    # Import an existing backup directory again
    selfhost-migrate migrate --resume ./migration_20260101_120000

    # Write volumes/pgbouncer/userlist.txt from the running database
    selfhost-migrate pgbouncer-userlist

Exit status: 1 when the run aborted (pre-flight failure, fatal export
failure, interrupt), 0 otherwise. A PARTIAL SUCCESS also exits 0 and is
flagged in the output and in report.json.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ValidationError

from selfhost_migrate import __version__, constants
from selfhost_migrate.config import Settings
from selfhost_migrate.errors import ConfigurationError, MigrationError
from selfhost_migrate.executor import PgToolsExecutor
from selfhost_migrate.logging import configure_structlog, setup_logging
from selfhost_migrate.models import ConnectionInput
from selfhost_migrate.orchestrator import MigrationOptions, MigrationOrchestrator
from selfhost_migrate.pgbouncer import write_userlist
from selfhost_migrate.prompts import (
    ConfirmationGate,
    ConsolePrompter,
    PresetConfirmation,
    PromptConfirmation,
)
from selfhost_migrate.report import exit_code_for, render_summary
from selfhost_migrate.resolver import ConnectionResolver, InteractiveInput, PresetInput, ResolverInput

logger = structlog.get_logger(__name__)

BANNER = """
╔═══════════════════════════════════════════════════════════════╗
║     Supabase Cloud → Self-Hosted Migration                    ║
╠═══════════════════════════════════════════════════════════════╣
║  • Database schema (tables, views, functions, RLS)            ║
║  • All table data                                             ║
║  • Auth users (with password hashes)                          ║
╚═══════════════════════════════════════════════════════════════╝
"""


class RunFile(BaseModel):
    """Pre-supplied run parameters (YAML)."""
    source: ConnectionInput = ConnectionInput()
    target: ConnectionInput = ConnectionInput()
    confirm: bool = False


def load_run_file(path: Path) -> RunFile:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read run file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    try:
        return RunFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run file {path}: {e}") from e


def _merge(base: ConnectionInput, overrides: dict[str, Any]) -> ConnectionInput:
    """Explicit flags win over run-file values."""
    values = base.model_dump()
    values.update({k: v for k, v in overrides.items() if v not in (None, "")})
    return ConnectionInput(**values)


def _side_flags(args: argparse.Namespace, side: str) -> dict[str, Any]:
    return {
        "host": getattr(args, f"{side}_host", None),
        "port": getattr(args, f"{side}_port", None),
        "user": getattr(args, f"{side}_user", None),
        "password": getattr(args, f"{side}_password", None) or os.getenv(f"MIGRATE_{side.upper()}_PASSWORD"),
        "database": getattr(args, f"{side}_database", None),
    }


def build_inputs(args: argparse.Namespace) -> tuple[ResolverInput, ConfirmationGate]:
    """Pick the input variant and confirmation gate from the CLI arguments."""
    run_file = load_run_file(Path(args.config)) if args.config else RunFile()
    source = _merge(run_file.source, _side_flags(args, "source"))
    target = _merge(run_file.target, _side_flags(args, "target"))

    interactive = not (args.non_interactive or args.config) and sys.stdin.isatty()
    if interactive:
        prompter = ConsolePrompter()
        inp: ResolverInput = InteractiveInput(prompter=prompter, source=source, target=target)
        gate: ConfirmationGate = PresetConfirmation(True) if args.yes else PromptConfirmation(prompter)
    else:
        inp = PresetInput(source=source, target=target)
        gate = PresetConfirmation(args.yes or run_file.confirm)
    return inp, gate


def _settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if getattr(args, "verbose", False):
        overrides["LOG_LEVEL"] = "DEBUG"
    for flag, field in (
        ("log_format", "LOG_FORMAT"),
        ("env_file", "ENV_FILE"),
        ("backup_root", "BACKUP_ROOT"),
        ("step_timeout", "STEP_TIMEOUT_SECONDS"),
        ("schema", "APP_SCHEMA"),
    ):
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field] = value
    return overrides


def _add_side_arguments(parser: argparse.ArgumentParser, side: str, label: str) -> None:
    group = parser.add_argument_group(f"{side} connection ({label})")
    group.add_argument(f"--{side}-host")
    group.add_argument(f"--{side}-port")
    group.add_argument(f"--{side}-user")
    group.add_argument(
        f"--{side}-password",
        help=f"Visible in the process list; prefer MIGRATE_{side.upper()}_PASSWORD or the prompt",
    )
    group.add_argument(f"--{side}-database")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="selfhost-migrate",
        description="Migrate a Supabase Cloud database to a self-hosted deployment",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-format", choices=["console", "json"], help="Log renderer (logs go to stderr)")
    parser.add_argument("--env-file", help="Self-hosted .env file to read POSTGRES_PASSWORD/POSTGRES_PORT from")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    migrate = subparsers.add_parser(
        "migrate",
        help="Export from the cloud database and import into the self-hosted one",
        description="Exit status 1 only when the run aborted. Partial success exits 0 "
                    "and is flagged as PARTIAL SUCCESS in the summary and report.json.",
    )
    migrate.add_argument("--config", help="YAML run file with source/target mappings and optional confirm: true")
    migrate.add_argument("--yes", "-y", action="store_true", help="Confirm the import without prompting")
    migrate.add_argument("--non-interactive", action="store_true", help="Never prompt; missing values are errors")
    migrate.add_argument("--resume", metavar="DIR", help="Skip export and import this existing backup directory")
    migrate.add_argument("--backup-root", help="Where per-run backup directories are created")
    migrate.add_argument("--step-timeout", type=int, help="Per-step timeout in seconds (0 disables)")
    migrate.add_argument("--schema", help="Application schema to migrate (default: public)")
    _add_side_arguments(migrate, "source", "Supabase Cloud")
    _add_side_arguments(migrate, "target", "self-hosted")

    userlist = subparsers.add_parser(
        "pgbouncer-userlist",
        help="Write PgBouncer's userlist.txt from the self-hosted database's pg_shadow",
    )
    userlist.add_argument("--output", default=constants.PGBOUNCER_USERLIST_PATH)
    _add_side_arguments(userlist, "target", "self-hosted")

    return parser


def run_migrate(args: argparse.Namespace, settings: Settings) -> int:
    print(BANNER)
    try:
        inp, gate = build_inputs(args)
    except ConfigurationError as e:
        print(f"✗ {e}")
        return 1

    orchestrator = MigrationOrchestrator(
        executor=PgToolsExecutor(settings.PG_DUMP_BIN, settings.PSQL_BIN),
        resolver=ConnectionResolver(Path(settings.ENV_FILE)),
        gate=gate,
        options=MigrationOptions(
            schema=settings.APP_SCHEMA,
            backup_root=Path(settings.BACKUP_ROOT),
            backup_prefix=settings.BACKUP_DIR_PREFIX,
            step_timeout=settings.step_timeout,
            connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
            resume_from=Path(args.resume) if args.resume else None,
        ),
    )
    run = orchestrator.run(inp)
    print()
    print(render_summary(run, orchestrator.target, settings.SELF_HOSTED_API_PORT))
    return exit_code_for(run)


def run_pgbouncer_userlist(args: argparse.Namespace, settings: Settings) -> int:
    print("Setting up PgBouncer authentication...")
    resolver = ConnectionResolver(Path(settings.ENV_FILE))
    try:
        target = resolver.resolve_target(PresetInput(target=ConnectionInput(**_side_flags(args, "target"))))
        roles = write_userlist(target, Path(args.output), connect_timeout=settings.CONNECT_TIMEOUT_SECONDS)
    except MigrationError as e:
        print(f"✗ {e}")
        return 1
    print(f"✓ PgBouncer userlist.txt created at {args.output} ({len(roles)} roles)")
    print("\nRestart PgBouncer to apply changes:\n  docker compose restart pgbouncer")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    configure_structlog()
    try:
        settings = Settings.load(**_settings_overrides(args))
    except ValidationError as e:
        print(f"✗ Invalid settings: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.debug("cli_started", command=args.command, version=__version__)

    if args.command == "migrate":
        return run_migrate(args, settings)
    return run_pgbouncer_userlist(args, settings)


if __name__ == "__main__":
    sys.exit(main())
