"""
Data model for a migration run: connection profiles, steps, results and the
run aggregate with its state machine.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from selfhost_migrate.errors import InvalidTransition

if TYPE_CHECKING:
    from selfhost_migrate.executor import Command


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionProfile(BaseModel):
    """Validated, immutable connection parameters for one database."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    user: str = Field(..., min_length=1)
    password: SecretStr
    database: str = Field(..., min_length=1)

    @field_validator("host", "user", "database")
    @classmethod
    def strip_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty or only whitespace")
        return v.strip()

    @field_validator("password")
    @classmethod
    def password_not_blank(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("must not be empty")
        return v

    def log_fields(self) -> dict[str, Any]:
        """Password-free fields for structured logs and reports."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
        }


class ConnectionInput(BaseModel):
    """Partially supplied connection parameters; unset fields get defaults or prompts."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    host: str | None = None
    port: int | str | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None

    def provided(self, name: str) -> bool:
        value = getattr(self, name)
        return value is not None and str(value) != ""


class Phase(str, Enum):
    PREFLIGHT = "preflight"
    EXPORT = "export"
    IMPORT = "import"


class FailurePolicy(str, Enum):
    """What a step failure does to the rest of the run."""

    FATAL = "fatal"
    WARN_AND_CONTINUE = "warn-and-continue"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class RunState(str, Enum):
    INITIALIZED = "initialized"
    RESOLVING = "resolving"
    EXPORTING = "exporting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    IMPORTING = "importing"
    FINALIZED = "finalized"
    ABORTED = "aborted"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.INITIALIZED: frozenset({RunState.RESOLVING}),
    RunState.RESOLVING: frozenset({
        RunState.EXPORTING,
        RunState.AWAITING_CONFIRMATION,  # resume from an existing backup
        RunState.ABORTED,
    }),
    RunState.EXPORTING: frozenset({RunState.AWAITING_CONFIRMATION, RunState.ABORTED}),
    RunState.AWAITING_CONFIRMATION: frozenset({RunState.IMPORTING, RunState.ABORTED}),
    RunState.IMPORTING: frozenset({RunState.FINALIZED, RunState.ABORTED}),
    RunState.FINALIZED: frozenset(),
    RunState.ABORTED: frozenset(),
}

TERMINAL_STATES = frozenset({RunState.FINALIZED, RunState.ABORTED})


@dataclass(frozen=True)
class MigrationStep:
    """One statically defined unit of work with a fixed failure policy."""

    name: str
    phase: Phase
    command: Command
    policy: FailurePolicy
    description: str = ""
    produces: str | None = None
    """Artifact file name written by this step."""
    requires: tuple[str, ...] = ()
    """Artifact file names that must exist (and be non-empty) before this step runs."""


@dataclass(frozen=True)
class StepResult:
    """Outcome of executing (or not executing) one step."""

    step: str
    status: StepStatus
    message: str
    phase: Phase
    policy: FailurePolicy
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status.value,
            "message": self.message,
            "phase": self.phase.value,
            "policy": self.policy.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass
class MigrationRun:
    """Ordered step results of a single run plus its backup directory.

    Owned by the orchestrator for the run's duration; there is no concurrent
    writer.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    state: RunState = RunState.INITIALIZED
    results: list[StepResult] = field(default_factory=list)
    backup_dir: Path | None = None
    abort_reason: str | None = None
    declined: bool = False
    resumed: bool = False

    def transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move run from {self.state.value} to {new_state.value}")
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = utcnow()

    def record(self, result: StepResult) -> StepResult:
        if self.state in TERMINAL_STATES:
            raise InvalidTransition(f"Run is {self.state.value}; cannot record {result.step}")
        self.results.append(result)
        return result

    def abort(self, reason: str) -> None:
        self.abort_reason = reason
        self.transition(RunState.ABORTED)

    def finalize(self) -> None:
        self.transition(RunState.FINALIZED)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def result_for(self, step: str) -> StepResult | None:
        for result in self.results:
            if result.step == step:
                return result
        return None

    def degraded(self) -> list[StepResult]:
        """Results that were not a success."""
        return [r for r in self.results if not r.ok]
