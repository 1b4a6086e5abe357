"""
Migration Orchestrator - drives a MigrationRun through its states:

    initialized -> resolving -> exporting -> awaiting_confirmation -> importing -> finalized

with `aborted` reachable on a fatal failure, a declined confirmation or an
operator interrupt. Execution is single-threaded and strictly sequential;
the backup directory is kept in every case.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import structlog

from selfhost_migrate.backup import BackupDirectory
from selfhost_migrate.errors import ConfirmationDeclined, MigrationError
from selfhost_migrate.executor import DatabaseExecutor
from selfhost_migrate.models import (
    ConnectionProfile,
    FailurePolicy,
    MigrationRun,
    Phase,
    RunState,
    StepResult,
    StepStatus,
    utcnow,
)
from selfhost_migrate.phases import ExportPhaseRunner, ImportPhaseRunner, export_steps, import_steps
from selfhost_migrate.prompts import ConfirmationGate
from selfhost_migrate.report import ConsoleProgress, build_report, outcome_of
from selfhost_migrate.resolver import ConnectionResolver, ResolverInput

logger = structlog.get_logger(__name__)


@dataclass
class MigrationOptions:
    """Run options; CLI flags and Settings are folded into this."""
    schema: str = "public"
    backup_root: Path = Path(".")
    backup_prefix: str = "migration_"
    step_timeout: float | None = 1800
    connect_timeout: int = 10
    resume_from: Path | None = None


class MigrationOrchestrator:
    """Sequences pre-flight, export, the confirmation gate, import and reporting."""

    def __init__(
        self,
        executor: DatabaseExecutor,
        resolver: ConnectionResolver,
        gate: ConfirmationGate,
        options: MigrationOptions | None = None,
        progress: ConsoleProgress | None = None,
    ):
        self.executor = executor
        self.resolver = resolver
        self.gate = gate
        self.options = options or MigrationOptions()
        self.progress = progress or ConsoleProgress()
        self.source: ConnectionProfile | None = None
        self.target: ConnectionProfile | None = None
        self.backup: BackupDirectory | None = None

    def run(self, inp: ResolverInput) -> MigrationRun:
        """Execute one migration run and return its finalized (or aborted) record.

        Fatal failures, a declined confirmation and operator interrupts all end
        in `aborted` and are reported through the run, not raised.
        """
        run = MigrationRun()
        log = logger.bind(run_id=run.id)
        log.info("migration_started", resume_from=str(self.options.resume_from) if self.options.resume_from else None)

        importer: ImportPhaseRunner | None = None
        try:
            run.transition(RunState.RESOLVING)
            self._preflight(run, inp)

            if self.options.resume_from is not None:
                self._reuse_backup(run)
            else:
                run.transition(RunState.EXPORTING)
                self.backup = self._checked_step(
                    run, "create-backup-dir",
                    lambda: BackupDirectory.create(self.options.backup_root, self.options.backup_prefix),
                    "Created backup directory", phase=Phase.EXPORT)
                run.backup_dir = self.backup.path
                self.progress.info(str(self.backup))
                self.progress.section("3/4", "Exporting database schema and data from source...")
                exporter = ExportPhaseRunner(
                    self.executor, run, self.backup, self.progress, self.options.step_timeout
                )
                try:
                    exporter.run(self.source, self.options.schema)
                except MigrationError:
                    exporter.skip_steps(import_steps(self.backup), "not run: export aborted")
                    raise

            run.transition(RunState.AWAITING_CONFIRMATION)
            self.progress.section("4/4", "Importing to self-hosted database...")
            importer = ImportPhaseRunner(self.executor, run, self.backup, self.progress, self.options.step_timeout)
            importer.confirm(self.gate)

            run.transition(RunState.IMPORTING)
            importer.run(self.target)
            run.finalize()

        except ConfirmationDeclined as e:
            run.declined = True
            importer.skip_steps(import_steps(self.backup), "not run: import declined")
            self.progress.warning(str(e))
            run.abort(str(e))
        except MigrationError as e:
            log.error("migration_aborted", error=str(e), error_type=type(e).__name__, state=run.state.value)
            run.abort(str(e))
        except KeyboardInterrupt:
            log.warning("migration_interrupted", state=run.state.value)
            self._skip_pending_imports(run, "not run: interrupted by operator")
            run.abort("interrupted by operator")
        finally:
            if run.is_terminal:
                self._write_report(run)

        log.info("migration_finished", outcome=outcome_of(run).value, steps=len(run.results))
        return run

    def _preflight(self, run: MigrationRun, inp: ResolverInput) -> None:
        resume = self.options.resume_from is not None
        self.progress.section("1/4", "Checking prerequisites...")
        self._checked_step(
            run, "check-prerequisites", self.executor.check_prerequisites, "pg_dump and psql found")

        self.progress.section("2/4", "Configuring and testing connections...")
        if not resume:
            self.source = self._checked_step(
                run, "resolve-source", lambda: self.resolver.resolve_source(inp), "source parameters resolved")
        self.target = self._checked_step(
            run, "resolve-target", lambda: self.resolver.resolve_target(inp), "target parameters resolved")

        timeout = self.options.connect_timeout
        if not resume:
            self._checked_step(
                run, "connect-source",
                lambda: self.executor.check_connection(self.source, timeout),
                f"Connected to source database {self.source.host}")
        self._checked_step(
            run, "connect-target",
            lambda: self.executor.check_connection(self.target, timeout),
            f"Connected to self-hosted database {self.target.host}")

    def _checked_step(
        self,
        run: MigrationRun,
        name: str,
        fn: Callable,
        success: str,
        phase: Phase = Phase.PREFLIGHT,
    ):
        started = utcnow()
        try:
            value = fn()
        except MigrationError as e:
            run.record(StepResult(
                step=name,
                status=StepStatus.FAILED,
                message=str(e),
                phase=phase,
                policy=FailurePolicy.FATAL,
                started_at=started,
            ))
            self.progress.failure(str(e))
            raise
        run.record(StepResult(
            step=name,
            status=StepStatus.SUCCESS,
            message=success,
            phase=phase,
            policy=FailurePolicy.FATAL,
            started_at=started,
        ))
        self.progress.success(success)
        return value

    def _reuse_backup(self, run: MigrationRun) -> None:
        """Resume: take artifacts from an existing backup directory instead of exporting."""
        self.backup = self._checked_step(
            run, "open-backup-dir",
            lambda: BackupDirectory.open(self.options.resume_from),
            f"Resuming from backup directory: {self.options.resume_from}")
        run.backup_dir = self.backup.path
        run.resumed = True
        for step in export_steps(self.backup, self.options.schema):
            if step.produces and not self.backup.has(step.produces):
                self.progress.warning(f"{step.produces} not in backup; dependent import steps will be skipped")

    def _skip_pending_imports(self, run: MigrationRun, reason: str) -> None:
        """Record import steps that have no result yet as skipped."""
        if self.backup is None:
            return
        pending = [s for s in import_steps(self.backup) if run.result_for(s.name) is None]
        ImportPhaseRunner(self.executor, run, self.backup, self.progress).skip_steps(pending, reason)

    def _write_report(self, run: MigrationRun) -> None:
        if self.backup is None:
            return
        report = build_report(run, self.source, self.target)
        try:
            path = self.backup.write_report(report)
        except OSError as e:
            logger.error("report_write_failed", backup_dir=str(self.backup), error=str(e))
            return
        logger.info("report_written", path=str(path))

