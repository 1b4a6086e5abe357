"""
Test configuration and fixtures.
"""
from __future__ import annotations

import csv
import io
import os
from pathlib import Path

import pytest

# Keep developer MIGRATE_* settings out of the tests
for _key in [k for k in os.environ if k.startswith("MIGRATE_")]:
    if _key != "MIGRATE_TEST_DATABASE_URL":
        os.environ.pop(_key)

from selfhost_migrate.errors import ConfigurationError, ConnectivityError
from selfhost_migrate.executor import (
    CommandResult,
    CsvUpsert,
    DatabaseExecutor,
    DataDump,
    SchemaDump,
    SqlScript,
    TableExport,
)
from selfhost_migrate.models import ConnectionInput
from selfhost_migrate.orchestrator import MigrationOptions, MigrationOrchestrator
from selfhost_migrate.prompts import PresetConfirmation, Prompter
from selfhost_migrate.report import ConsoleProgress
from selfhost_migrate.resolver import ConnectionResolver, PresetInput
from selfhost_migrate.sql import render_upsert_script

SOURCE_HOST = "db.abcdefgh.supabase.co"
TARGET_HOST = "localhost"
SOURCE_PASSWORD = "cloud-secret-pw"
TARGET_PASSWORD = "selfhost-secret-pw"

AUTH_FIELDS = ["id", "email", "encrypted_password", "raw_user_meta_data", "updated_at"]


def command_label(command) -> str:
    """Stable key for scripting FakeExecutor outcomes."""
    if isinstance(command, SchemaDump):
        return "schema-dump"
    if isinstance(command, DataDump):
        return "data-dump"
    if isinstance(command, TableExport):
        return f"export:{command.table}"
    if isinstance(command, SqlScript):
        return f"script:{command.path.name}"
    if isinstance(command, CsvUpsert):
        return f"upsert:{command.table}"
    raise TypeError(type(command).__name__)


class FakeExecutor(DatabaseExecutor):
    """In-memory executor: writes export artifacts and upserts auth users by id."""

    def __init__(self, source_users: list[dict[str, str]] | None = None):
        self.source_users = source_users if source_users is not None else [
            {
                "id": f"00000000-0000-0000-0000-00000000000{i}",
                "email": f"user{i}@example.com",
                "encrypted_password": f"$2a$10$hash{i}",
                "raw_user_meta_data": "{}",
                "updated_at": "2026-01-01 00:00:00+00",
            }
            for i in range(1, 4)
        ]
        self.target_users: dict[str, dict[str, str]] = {}
        self.applied_scripts: list[str] = []
        self.commands: list[tuple[str, str]] = []
        self.outcomes: dict[str, CommandResult] = {}
        self.raises: dict[str, BaseException] = {}
        self.unreachable: set[str] = set()
        self.missing_tools = False
        self.connection_checks: list[str] = []
        self.timeouts: list[float | None] = []

    @property
    def target_commands(self) -> list[str]:
        return [label for host, label in self.commands if host == TARGET_HOST]

    def check_prerequisites(self) -> None:
        if self.missing_tools:
            raise ConfigurationError("pg_dump, psql not found. Install with: sudo apt install postgresql-client")

    def check_connection(self, profile, timeout):
        self.connection_checks.append(profile.host)
        if profile.host in self.unreachable:
            raise ConnectivityError(f"Cannot connect to {profile.host}:{profile.port}/{profile.database}")

    def execute(self, profile, command, timeout=None):
        label = command_label(command)
        self.commands.append((profile.host, label))
        self.timeouts.append(timeout)
        if label in self.raises:
            raise self.raises[label]
        if label in self.outcomes:
            return self.outcomes[label]

        if isinstance(command, SchemaDump):
            command.dest.write_text(f"CREATE TABLE {command.schema}.todos (id int primary key);\n")
        elif isinstance(command, DataDump):
            command.dest.write_text(f"COPY {command.schema}.todos (id) FROM stdin;\n1\n\\.\n")
        elif isinstance(command, TableExport):
            self._write_users_csv(command.dest)
        elif isinstance(command, SqlScript):
            self.applied_scripts.append(command.path.name)
        elif isinstance(command, CsvUpsert):
            command.script_path.write_text(render_upsert_script(
                command.table, command.csv_path, command.conflict_key, command.update_columns))
            self._upsert(command)
        return CommandResult(ok=True)

    def _write_users_csv(self, dest: Path) -> None:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=AUTH_FIELDS, quoting=csv.QUOTE_ALL)
        writer.writeheader()
        writer.writerows(self.source_users)
        dest.write_text(buf.getvalue(), encoding="utf-8")

    def _upsert(self, command: CsvUpsert) -> None:
        with open(command.csv_path, encoding="utf-8", newline="") as fh:
            for row in csv.DictReader(fh):
                key = row[command.conflict_key]
                if key in self.target_users:
                    for column in command.update_columns:
                        if column in row:
                            self.target_users[key][column] = row[column]
                else:
                    self.target_users[key] = dict(row)


class ScriptedPrompter(Prompter):
    """Answers prompts from a list, recording every question asked."""

    def __init__(self, answers: list[str] | None = None):
        self.answers = list(answers or [])
        self.questions: list[tuple[str, bool]] = []

    def ask(self, question: str, secret: bool = False) -> str:
        self.questions.append((question, secret))
        return self.answers.pop(0).strip() if self.answers else ""


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def preset_input() -> PresetInput:
    return PresetInput(
        source=ConnectionInput(host=SOURCE_HOST, password=SOURCE_PASSWORD),
        target=ConnectionInput(host=TARGET_HOST, password=TARGET_PASSWORD),
    )


@pytest.fixture
def progress_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_orchestrator(tmp_path, fake_executor, progress_stream):
    """Factory for an orchestrator over the fake executor, writing backups under tmp_path."""

    def _make(confirm: bool = True, gate=None, **option_overrides) -> MigrationOrchestrator:
        options = MigrationOptions(backup_root=tmp_path, step_timeout=30, **option_overrides)
        return MigrationOrchestrator(
            executor=fake_executor,
            resolver=ConnectionResolver(env_file=None),
            gate=gate or PresetConfirmation(confirm),
            options=options,
            progress=ConsoleProgress(progress_stream),
        )

    return _make
