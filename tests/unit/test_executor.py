"""
Unit tests for the pg_dump/psql executor (executor.py).
"""
from __future__ import annotations

import subprocess
from unittest.mock import patch

import psycopg
import pytest

from selfhost_migrate.errors import ConfigurationError, ConnectivityError
from selfhost_migrate.executor import (
    CommandResult,
    CsvUpsert,
    DataDump,
    PgToolsExecutor,
    SchemaDump,
    SqlScript,
    TableExport,
)
from selfhost_migrate.models import ConnectionProfile

PASSWORD = "s3cret-password"


@pytest.fixture
def profile():
    return ConnectionProfile(host="db.abc.supabase.co", port=5432, user="postgres",
                             password=PASSWORD, database="postgres")


@pytest.fixture
def executor():
    return PgToolsExecutor()


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPrerequisites:
    def test_missing_binaries(self, executor):
        with patch("selfhost_migrate.executor.shutil.which", return_value=None):
            with pytest.raises(ConfigurationError, match="postgresql-client"):
                executor.check_prerequisites()

    def test_present_binaries(self, executor):
        with patch("selfhost_migrate.executor.shutil.which", return_value="/usr/bin/x"):
            executor.check_prerequisites()


class TestCheckConnection:
    def test_success_runs_select_one(self, executor, profile):
        with patch("selfhost_migrate.executor.psycopg.connect") as mock_connect:
            executor.check_connection(profile, timeout=5)
        kwargs = mock_connect.call_args.kwargs
        assert kwargs["password"] == PASSWORD
        assert kwargs["connect_timeout"] == 5
        cursor = mock_connect.return_value.__enter__.return_value.cursor.return_value.__enter__.return_value
        cursor.execute.assert_called_once_with("SELECT 1")

    def test_failure_maps_to_connectivity_error(self, executor, profile):
        with patch("selfhost_migrate.executor.psycopg.connect",
                   side_effect=psycopg.OperationalError("connection refused")):
            with pytest.raises(ConnectivityError, match="connection refused") as exc_info:
                executor.check_connection(profile, timeout=5)
        assert PASSWORD not in str(exc_info.value)


class TestExecute:
    def test_password_only_in_child_environment(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed()) as mock_run:
            result = executor.execute(profile, SchemaDump(schema="public", dest=tmp_path / "schema.sql"))

        assert result.ok
        cmd = mock_run.call_args.args[0]
        kwargs = mock_run.call_args.kwargs
        assert PASSWORD not in " ".join(cmd)
        assert kwargs["env"]["PGPASSWORD"] == PASSWORD
        assert "shell" not in kwargs
        assert cmd[0] == "pg_dump"
        assert "--schema-only" in cmd
        assert cmd[cmd.index("--schema") + 1] == "public"
        assert cmd[cmd.index("--file") + 1] == str(tmp_path / "schema.sql")

    def test_data_dump_disables_triggers(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed()) as mock_run:
            executor.execute(profile, DataDump(schema="public", dest=tmp_path / "data.sql"))
        cmd = mock_run.call_args.args[0]
        assert "--data-only" in cmd
        assert "--disable-triggers" in cmd

    def test_timeout_is_reported(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="pg_dump", timeout=3)) as mock_run:
            result = executor.execute(profile, SchemaDump(schema="public", dest=tmp_path / "s.sql"), timeout=3)
        assert mock_run.call_args.kwargs["timeout"] == 3
        assert not result.ok
        assert result.timed_out

    def test_missing_binary_is_a_failed_result(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run", side_effect=FileNotFoundError("pg_dump")):
            result = executor.execute(profile, SchemaDump(schema="public", dest=tmp_path / "s.sql"))
        assert not result.ok

    def test_unsupported_command(self, executor, profile):
        with pytest.raises(TypeError):
            executor.execute(profile, object())


class TestSqlScript:
    def test_error_lines_fail_despite_zero_exit(self, executor, profile, tmp_path):
        stderr = (
            'psql:schema.sql:10: ERROR:  relation "todos" already exists\n'
            "psql:schema.sql:22: ERROR:  permission denied for schema auth\n"
        )
        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed(stderr=stderr)):
            result = executor.execute(profile, SqlScript(path=tmp_path / "schema.sql"))
        assert not result.ok
        assert result.error_count == 2
        assert result.summary.startswith("2 statement(s) failed")

    def test_notices_do_not_fail(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run",
                   return_value=_completed(stderr="NOTICE:  extension exists, skipping\n")):
            result = executor.execute(profile, SqlScript(path=tmp_path / "schema.sql"))
        assert result.ok

    def test_single_transaction_flags(self, executor, profile, tmp_path):
        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed()) as mock_run:
            executor.execute(profile, SqlScript(path=tmp_path / "x.sql", single_transaction=True,
                                                stop_on_error=True))
        cmd = mock_run.call_args.args[0]
        assert "--single-transaction" in cmd
        assert cmd[cmd.index("--set") + 1] == "ON_ERROR_STOP=1"


class TestTableExport:
    def test_success_renames_partial_file(self, executor, profile, tmp_path):
        dest = tmp_path / "auth_users.csv"

        def fake_run(cmd, **kwargs):
            kwargs["stdout"].write('"id","email"\n"1","a@example.com"\n')
            return _completed()

        with patch("selfhost_migrate.executor.subprocess.run", side_effect=fake_run) as mock_run:
            result = executor.execute(profile, TableExport(table="auth.users", dest=dest, columns=("id", "email")))

        assert result.ok
        assert dest.read_text().startswith('"id","email"')
        assert not (tmp_path / "auth_users.csv.partial").exists()
        query = mock_run.call_args.args[0][-1]
        assert 'SELECT "id", "email" FROM "auth"."users"' in query
        assert "HEADER true" in query

    def test_failure_leaves_no_artifact(self, executor, profile, tmp_path):
        dest = tmp_path / "auth_users.csv"
        stderr = "ERROR:  permission denied for table users\n"
        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed(1, stderr=stderr)):
            result = executor.execute(profile, TableExport(table="auth.users", dest=dest))
        assert not result.ok
        assert "permission denied" in result.summary
        assert not dest.exists()
        assert not (tmp_path / "auth_users.csv.partial").exists()

    def test_interrupt_removes_partial_file(self, executor, profile, tmp_path):
        dest = tmp_path / "auth_users.csv"
        with patch("selfhost_migrate.executor.subprocess.run", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                executor.execute(profile, TableExport(table="auth.users", dest=dest))
        assert list(tmp_path.iterdir()) == []


class TestCsvUpsert:
    def test_writes_script_and_runs_it_transactionally(self, executor, profile, tmp_path):
        csv_path = tmp_path / "auth_users.csv"
        csv_path.write_text('"id","email"\n"1","a@example.com"\n')
        script_path = tmp_path / "import_auth.sql"
        command = CsvUpsert(table="auth.users", csv_path=csv_path, script_path=script_path,
                            conflict_key="id", update_columns=("email",))

        with patch("selfhost_migrate.executor.subprocess.run", return_value=_completed()) as mock_run:
            result = executor.execute(profile, command)

        assert result.ok
        assert 'ON CONFLICT ("id") DO UPDATE SET' in script_path.read_text()
        cmd = mock_run.call_args.args[0]
        assert "--single-transaction" in cmd
        assert cmd[cmd.index("--file") + 1] == str(script_path)

    def test_unusable_csv_fails_without_running_psql(self, executor, profile, tmp_path):
        csv_path = tmp_path / "auth_users.csv"
        csv_path.write_text('"email"\n"a@example.com"\n')
        command = CsvUpsert(table="auth.users", csv_path=csv_path, script_path=tmp_path / "import_auth.sql",
                            conflict_key="id", update_columns=("email",))
        with patch("selfhost_migrate.executor.subprocess.run") as mock_run:
            result = executor.execute(profile, command)
        assert not result.ok
        mock_run.assert_not_called()


@pytest.mark.parametrize("result,expected", [
    (CommandResult(ok=True), "ok"),
    (CommandResult(ok=False, timed_out=True), "timed out"),
    (CommandResult(ok=False, returncode=2), "exited with status 2"),
    (CommandResult(ok=False, error="pg_dump: error: connection failed\n", returncode=1),
     "pg_dump: error: connection failed"),
])
def test_command_result_summary(result, expected):
    assert result.summary == expected
