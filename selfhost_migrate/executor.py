"""
Database executor: typed command descriptors and the pg_dump/psql backed
implementation.

Credentials never appear in a command string. Host, port, user and
database go into the argument vector; the password goes into a child-only
PGPASSWORD environment variable (or psycopg keyword parameters for the
connectivity probe). No shell is involved.
"""
from __future__ import annotations

import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import psycopg
import structlog

from selfhost_migrate import constants
from selfhost_migrate.errors import ConfigurationError, ConnectivityError
from selfhost_migrate.models import ConnectionProfile
from selfhost_migrate.sql import export_query, render_upsert_script

logger = structlog.get_logger(__name__)

# Output kept in results/logs is truncated to this many characters
MAX_CAPTURED_OUTPUT = 2000


@dataclass(frozen=True)
class SchemaDump:
    """Structure-only dump of one schema."""
    schema: str
    dest: Path


@dataclass(frozen=True)
class DataDump:
    """Data-only dump of one schema, with triggers disabled during reload."""
    schema: str
    dest: Path


@dataclass(frozen=True)
class TableExport:
    """CSV export (with header row) of selected columns of one table."""
    table: str
    dest: Path
    columns: tuple[str, ...] | None = None
    """None exports every column."""


@dataclass(frozen=True)
class SqlScript:
    """Run a SQL script file."""
    path: Path
    single_transaction: bool = False
    stop_on_error: bool = False


@dataclass(frozen=True)
class CsvUpsert:
    """Bulk-load a CSV (with header) into a table, merging on a key column.

    The executor renders the load script to `script_path` so the operator
    can inspect or rerun it offline.
    """
    table: str
    csv_path: Path
    script_path: Path
    conflict_key: str
    update_columns: tuple[str, ...]


Command = Union[SchemaDump, DataDump, TableExport, SqlScript, CsvUpsert]


@dataclass
class CommandResult:
    """Result of executing a command against a database."""

    ok: bool
    output: str = ""
    error: str = ""
    returncode: int | None = None
    timed_out: bool = False
    error_count: int = 0

    @property
    def summary(self) -> str:
        """Human-readable one-line failure description."""
        if self.ok:
            return "ok"
        if self.timed_out:
            return "timed out"
        first_error = next(
            (line.strip() for line in self.error.splitlines() if "ERROR:" in line),
            "",
        )
        if not first_error:
            first_error = next((line.strip() for line in self.error.splitlines() if line.strip()), "")
        if self.error_count:
            text = f"{self.error_count} statement(s) failed"
            return f"{text}; first: {first_error}" if first_error else text
        if first_error:
            return first_error
        return f"exited with status {self.returncode}"


class DatabaseExecutor(ABC):
    """Capability-typed interface to the external database tools."""

    def check_prerequisites(self) -> None:
        """Raise ConfigurationError if the executor cannot run at all."""

    @abstractmethod
    def check_connection(self, profile: ConnectionProfile, timeout: int) -> None:
        """Raise ConnectivityError if `profile` cannot be reached."""

    @abstractmethod
    def execute(
        self,
        profile: ConnectionProfile,
        command: Command,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run `command` against `profile`. Never raises for command failures."""


def _count_sql_errors(stderr: str) -> int:
    return sum(1 for line in stderr.splitlines() if "ERROR:" in line)


def _truncate(text: str) -> str:
    if len(text) <= MAX_CAPTURED_OUTPUT:
        return text
    return text[:MAX_CAPTURED_OUTPUT] + "\n... (truncated)"


class PgToolsExecutor(DatabaseExecutor):
    """Executor backed by the PostgreSQL client binaries."""

    def __init__(self, pg_dump_bin: str = "pg_dump", psql_bin: str = "psql"):
        self.pg_dump_bin = pg_dump_bin
        self.psql_bin = psql_bin

    def check_prerequisites(self) -> None:
        missing = [b for b in (self.pg_dump_bin, self.psql_bin) if shutil.which(b) is None]
        if missing:
            raise ConfigurationError(
                f"{', '.join(missing)} not found. Install with: {constants.POSTGRES_CLIENT_INSTALL_HINT}"
            )

    def check_connection(self, profile: ConnectionProfile, timeout: int) -> None:
        logger.debug("checking_connection", **profile.log_fields())
        try:
            with psycopg.connect(
                host=profile.host,
                port=profile.port,
                user=profile.user,
                password=profile.password.get_secret_value(),
                dbname=profile.database,
                connect_timeout=timeout,
            ) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except psycopg.Error as e:
            raise ConnectivityError(
                f"Cannot connect to {profile.host}:{profile.port}/{profile.database} "
                f"as {profile.user}: {str(e).strip()}"
            ) from e

    def execute(
        self,
        profile: ConnectionProfile,
        command: Command,
        timeout: float | None = None,
    ) -> CommandResult:
        if isinstance(command, SchemaDump):
            return self._pg_dump(profile, command.schema, command.dest, timeout, [
                "--schema-only",
                "--no-owner",
                "--no-privileges",
                "--no-comments",
            ])
        if isinstance(command, DataDump):
            return self._pg_dump(profile, command.schema, command.dest, timeout, [
                "--data-only",
                "--no-owner",
                "--no-privileges",
                "--disable-triggers",
            ])
        if isinstance(command, TableExport):
            return self._export_csv(profile, command, timeout)
        if isinstance(command, SqlScript):
            return self._run_script(profile, command, timeout)
        if isinstance(command, CsvUpsert):
            return self._csv_upsert(profile, command, timeout)
        raise TypeError(f"Unsupported command: {type(command).__name__}")

    def _env(self, profile: ConnectionProfile) -> dict[str, str]:
        env = os.environ.copy()
        env["PGPASSWORD"] = profile.password.get_secret_value()
        return env

    @staticmethod
    def _conn_args(profile: ConnectionProfile) -> list[str]:
        return [
            "--host", profile.host,
            "--port", str(profile.port),
            "--username", profile.user,
            "--dbname", profile.database,
        ]

    def _run(
        self,
        cmd: list[str],
        profile: ConnectionProfile,
        timeout: float | None,
        stdout=subprocess.PIPE,
    ) -> CommandResult:
        logger.info("running_command", command=cmd[0], args=cmd[1:], **profile.log_fields())
        try:
            completed = subprocess.run(
                cmd,
                env=self._env(profile),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.error("command_timed_out", command=cmd[0], timeout=timeout)
            return CommandResult(ok=False, timed_out=True, error=f"timed out after {timeout}s")
        except OSError as e:
            logger.error("command_not_runnable", command=cmd[0], error=str(e))
            return CommandResult(ok=False, error=str(e))

        stderr = completed.stderr or ""
        error_count = _count_sql_errors(stderr)
        result = CommandResult(
            ok=completed.returncode == 0,
            output=_truncate(completed.stdout or "") if stdout is subprocess.PIPE else "",
            error=_truncate(stderr),
            returncode=completed.returncode,
            error_count=error_count,
        )
        if not result.ok:
            logger.error(
                "command_failed",
                command=cmd[0],
                returncode=completed.returncode,
                error=result.summary,
            )
        return result

    def _pg_dump(
        self,
        profile: ConnectionProfile,
        schema: str,
        dest: Path,
        timeout: float | None,
        flags: list[str],
    ) -> CommandResult:
        cmd = [
            self.pg_dump_bin,
            *self._conn_args(profile),
            "--schema", schema,
            *flags,
            "--file", str(dest),
        ]
        return self._run(cmd, profile, timeout)

    def _export_csv(
        self,
        profile: ConnectionProfile,
        command: TableExport,
        timeout: float | None,
    ) -> CommandResult:
        query = export_query(command.table, command.columns)
        cmd = [self.psql_bin, "-X", "--quiet", *self._conn_args(profile), "--command", query]

        # Stream into a side file so a failed export never leaves a half artifact
        partial = command.dest.with_name(command.dest.name + ".partial")
        try:
            with open(partial, "w", encoding="utf-8", newline="") as fh:
                result = self._run(cmd, profile, timeout, stdout=fh)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        if result.ok and result.error_count == 0:
            partial.replace(command.dest)
        else:
            result.ok = False
            partial.unlink(missing_ok=True)
        return result

    def _run_script(
        self,
        profile: ConnectionProfile,
        command: SqlScript,
        timeout: float | None,
    ) -> CommandResult:
        cmd = [self.psql_bin, "-X", "--quiet", *self._conn_args(profile)]
        if command.stop_on_error:
            cmd += ["--set", "ON_ERROR_STOP=1"]
        if command.single_transaction:
            cmd.append("--single-transaction")
        cmd += ["--file", str(command.path)]

        result = self._run(cmd, profile, timeout)
        # psql keeps going past failed statements without ON_ERROR_STOP and
        # still exits 0, so stderr is the only evidence of a partial apply.
        if result.error_count:
            result.ok = False
        return result

    def _csv_upsert(
        self,
        profile: ConnectionProfile,
        command: CsvUpsert,
        timeout: float | None,
    ) -> CommandResult:
        try:
            script = render_upsert_script(
                table=command.table,
                csv_path=command.csv_path,
                conflict_key=command.conflict_key,
                update_columns=command.update_columns,
            )
        except (OSError, ValueError) as e:
            logger.error("upsert_script_render_failed", table=command.table, error=str(e))
            return CommandResult(ok=False, error=str(e))
        command.script_path.write_text(script, encoding="utf-8")
        logger.info("upsert_script_written", path=str(command.script_path), table=command.table)
        return self._run_script(
            profile,
            SqlScript(path=command.script_path, single_transaction=True, stop_on_error=True),
            timeout,
        )
