"""
Export and import phases: the static step plans and the runners that execute
them one at a time, recording a StepResult for every step.
"""
from __future__ import annotations

from typing import ClassVar

import structlog

from selfhost_migrate import constants
from selfhost_migrate.backup import BackupDirectory
from selfhost_migrate.errors import ConfirmationDeclined, ExportStepError, ImportStepError, StepError
from selfhost_migrate.executor import (
    CsvUpsert,
    DatabaseExecutor,
    DataDump,
    SchemaDump,
    SqlScript,
    TableExport,
)
from selfhost_migrate.models import (
    ConnectionProfile,
    FailurePolicy,
    MigrationRun,
    MigrationStep,
    Phase,
    StepResult,
    StepStatus,
    utcnow,
)
from selfhost_migrate.prompts import ConfirmationGate
from selfhost_migrate.report import ConsoleProgress

logger = structlog.get_logger(__name__)

CONFIRMATION_MESSAGE = "Ready to import to self-hosted? This may overwrite existing data. Continue?"


def export_steps(backup: BackupDirectory, schema: str = "public") -> list[MigrationStep]:
    """Export plan. Order matters: schema, data, then auth records."""
    return [
        MigrationStep(
            name="export-schema",
            phase=Phase.EXPORT,
            command=SchemaDump(schema=schema, dest=backup.path_for(constants.SCHEMA_FILE)),
            policy=FailurePolicy.FATAL,
            description=f"Export {schema} schema structure",
            produces=constants.SCHEMA_FILE,
        ),
        MigrationStep(
            name="export-data",
            phase=Phase.EXPORT,
            command=DataDump(schema=schema, dest=backup.path_for(constants.DATA_FILE)),
            policy=FailurePolicy.FATAL,
            description=f"Export {schema} schema data",
            produces=constants.DATA_FILE,
        ),
        MigrationStep(
            name="export-auth-users",
            phase=Phase.EXPORT,
            command=TableExport(
                table=constants.AUTH_USERS_TABLE,
                dest=backup.path_for(constants.AUTH_USERS_FILE),
                columns=constants.AUTH_USER_COLUMNS,
            ),
            policy=FailurePolicy.WARN_AND_CONTINUE,
            description="Export auth users",
            produces=constants.AUTH_USERS_FILE,
        ),
        MigrationStep(
            name="export-auth-identities",
            phase=Phase.EXPORT,
            command=TableExport(
                table=constants.AUTH_IDENTITIES_TABLE,
                dest=backup.path_for(constants.AUTH_IDENTITIES_FILE),
            ),
            policy=FailurePolicy.WARN_AND_CONTINUE,
            description="Export auth identities",
            produces=constants.AUTH_IDENTITIES_FILE,
        ),
    ]


def import_steps(backup: BackupDirectory) -> list[MigrationStep]:
    """Import plan. Every step warns and continues."""
    return [
        MigrationStep(
            name="import-schema",
            phase=Phase.IMPORT,
            command=SqlScript(path=backup.path_for(constants.SCHEMA_FILE)),
            policy=FailurePolicy.WARN_AND_CONTINUE,
            description="Import schema",
            requires=(constants.SCHEMA_FILE,),
        ),
        MigrationStep(
            name="import-data",
            phase=Phase.IMPORT,
            command=SqlScript(path=backup.path_for(constants.DATA_FILE)),
            policy=FailurePolicy.WARN_AND_CONTINUE,
            description="Import data",
            requires=(constants.DATA_FILE,),
        ),
        MigrationStep(
            name="import-auth-users",
            phase=Phase.IMPORT,
            command=CsvUpsert(
                table=constants.AUTH_USERS_TABLE,
                csv_path=backup.path_for(constants.AUTH_USERS_FILE),
                script_path=backup.path_for(constants.AUTH_IMPORT_SCRIPT),
                conflict_key=constants.AUTH_USER_CONFLICT_KEY,
                update_columns=constants.AUTH_USER_UPDATE_COLUMNS,
            ),
            policy=FailurePolicy.WARN_AND_CONTINUE,
            description="Import auth users (upsert on id)",
            requires=(constants.AUTH_USERS_FILE,),
        ),
    ]


class PhaseRunner:
    """Runs steps strictly in order against one database."""

    phase: ClassVar[Phase]
    error_cls: ClassVar[type[StepError]] = StepError

    def __init__(
        self,
        executor: DatabaseExecutor,
        run: MigrationRun,
        backup: BackupDirectory,
        progress: ConsoleProgress,
        timeout: float | None = None,
    ):
        self.executor = executor
        self.migration_run = run
        self.backup = backup
        self.progress = progress
        self.timeout = timeout

    def run_steps(self, profile: ConnectionProfile, steps: list[MigrationStep]) -> list[StepResult]:
        """Run `steps` in order.

        A warn-and-continue failure is recorded and the next step runs. A
        fatal failure is recorded, the remaining steps are recorded as
        skipped, and the phase's StepError is raised.
        """
        results = []
        for index, step in enumerate(steps):
            try:
                results.append(self.run_step(profile, step))
            except StepError:
                self.skip_steps(steps[index + 1:], "not run: a fatal step failed")
                raise
            except KeyboardInterrupt:
                self.skip_steps(steps[index + 1:], "not run: interrupted by operator")
                raise
        return results

    def run_step(self, profile: ConnectionProfile, step: MigrationStep) -> StepResult:
        missing = [a for a in step.requires if not self.backup.has(a)]
        if missing:
            return self._missing_artifacts(step, missing)

        self.progress.info(f"{step.description}...")
        log = logger.bind(step=step.name, phase=step.phase.value, policy=step.policy.value)
        log.info("step_started", **profile.log_fields())
        started = utcnow()
        try:
            outcome = self.executor.execute(profile, step.command, timeout=self.timeout)
        except KeyboardInterrupt:
            self.migration_run.record(StepResult(
                step=step.name,
                status=StepStatus.CANCELLED,
                message="interrupted by operator",
                phase=step.phase,
                policy=step.policy,
                started_at=started,
            ))
            log.warning("step_cancelled")
            self.progress.failure(f"{step.description} interrupted")
            raise

        if outcome.ok:
            status, message = StepStatus.SUCCESS, self._success_message(step)
        elif outcome.timed_out:
            status, message = StepStatus.TIMEOUT, (f"timed out after {self.timeout:g}s" if self.timeout else "timed out")
        else:
            status, message = StepStatus.FAILED, outcome.summary

        result = self.migration_run.record(StepResult(
            step=step.name,
            status=status,
            message=message,
            phase=step.phase,
            policy=step.policy,
            started_at=started,
        ))
        log.info("step_finished", status=status.value, duration_seconds=round(result.duration_seconds, 3))

        if result.ok:
            self.progress.success(message)
        elif step.policy == FailurePolicy.FATAL:
            log.error("step_failed_fatal", error=message)
            self.progress.failure(f"{step.description} failed: {message}")
            raise self.error_cls(step.name, step.policy, message)
        else:
            log.warning("step_failed_continuing", error=message)
            self.progress.warning(f"{step.description} failed ({message}). Continuing...")
        return result

    def skip_steps(self, steps: list[MigrationStep], reason: str) -> None:
        for step in steps:
            self.migration_run.record(StepResult(
                step=step.name,
                status=StepStatus.SKIPPED,
                message=reason,
                phase=step.phase,
                policy=step.policy,
            ))

    def _missing_artifacts(self, step: MigrationStep, missing: list[str]) -> StepResult:
        names = ", ".join(missing)
        if step.policy == FailurePolicy.FATAL:
            message = f"required artifact missing or empty: {names}"
            self.migration_run.record(StepResult(
                step=step.name,
                status=StepStatus.FAILED,
                message=message,
                phase=step.phase,
                policy=step.policy,
            ))
            self.progress.failure(f"{step.description} failed: {message}")
            raise self.error_cls(step.name, step.policy, message)

        message = f"skipped: {names} missing or empty"
        logger.warning("step_skipped_missing_artifact", step=step.name, artifacts=missing)
        self.progress.warning(f"{step.description} {message}")
        return self.migration_run.record(StepResult(
            step=step.name,
            status=StepStatus.SKIPPED,
            message=message,
            phase=step.phase,
            policy=step.policy,
        ))

    def _success_message(self, step: MigrationStep) -> str:
        if step.produces:
            return f"{step.name} wrote {self.backup.path_for(step.produces)}"
        return f"{step.name} succeeded"


class ExportPhaseRunner(PhaseRunner):
    phase = Phase.EXPORT
    error_cls = ExportStepError

    def run(self, source: ConnectionProfile, schema: str = "public") -> list[StepResult]:
        return self.run_steps(source, export_steps(self.backup, schema))


class ImportPhaseRunner(PhaseRunner):
    phase = Phase.IMPORT
    error_cls = ImportStepError

    def confirm(self, gate: ConfirmationGate) -> None:
        """The safety gate: raise ConfirmationDeclined unless explicitly approved."""
        if not gate.confirm(CONFIRMATION_MESSAGE):
            logger.info("import_declined", backup_dir=str(self.backup))
            raise ConfirmationDeclined(f"Import cancelled. Backup files are saved in: {self.backup}")
        logger.info("import_confirmed", backup_dir=str(self.backup))

    def run(self, target: ConnectionProfile) -> list[StepResult]:
        return self.run_steps(target, import_steps(self.backup))
