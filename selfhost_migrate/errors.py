"""
Error kinds raised while resolving, exporting and importing.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from selfhost_migrate.models import FailurePolicy


class MigrationError(Exception):
    """Base class for failures that abort or degrade a migration run."""


class ConfigurationError(MigrationError):
    """Missing or invalid connection parameter or tooling (pre-flight, fatal)."""


class ConnectivityError(MigrationError):
    """A database could not be reached (pre-flight, fatal)."""


class StepError(MigrationError):
    """A migration step failed.

    Carries the step name and the step's failure policy so callers can tell
    an abort from a degraded-but-continuing run.
    """

    def __init__(self, step: str, policy: FailurePolicy, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.policy = policy
        self.message = message


class ExportStepError(StepError):
    """An export step failed against the source database."""


class ImportStepError(StepError):
    """An import step failed against the target database."""


class InvalidTransition(RuntimeError):
    """A MigrationRun was asked to move to a state it cannot reach."""


class ConfirmationDeclined(Exception):
    """The operator declined the import confirmation gate.

    Not a failure: the run stops before touching the target and keeps its
    backup directory.
    """
