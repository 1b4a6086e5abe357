"""
Step Result Aggregator / Reporter.

Exit status is deliberately asymmetric: only an aborted run (a fatal step
failed, pre-flight failed, or the operator interrupted) exits non-zero. A
partial run exits 0 but is always labelled PARTIAL SUCCESS with its degraded
steps listed, so automation must read the outcome rather than rely on the
exit code alone. A declined confirmation also exits 0.
"""
from __future__ import annotations

import sys
from enum import Enum
from typing import Any, TextIO

from selfhost_migrate import constants
from selfhost_migrate.models import ConnectionProfile, MigrationRun, RunState, StepStatus

_STATUS_MARKS = {
    StepStatus.SUCCESS: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.TIMEOUT: "✗",
    StepStatus.CANCELLED: "✗",
    StepStatus.SKIPPED: "-",
}


class Outcome(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    DECLINED = "declined"
    ABORTED = "aborted"


EXIT_CODES: dict[Outcome, int] = {
    Outcome.COMPLETE: 0,
    Outcome.PARTIAL: 0,
    Outcome.DECLINED: 0,
    Outcome.ABORTED: 1,
}


class ConsoleProgress:
    """Operator-facing progress lines, kept apart from structured logs."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdout

    def _write(self, line: str) -> None:
        print(line, file=self.stream, flush=True)

    def section(self, label: str, title: str) -> None:
        self._write(f"\n[{label}] {title}")

    def info(self, message: str) -> None:
        self._write(f"  {message}")

    def success(self, message: str) -> None:
        self._write(f"✓ {message}")

    def warning(self, message: str) -> None:
        self._write(f"⚠ {message}")

    def failure(self, message: str) -> None:
        self._write(f"✗ {message}")


def outcome_of(run: MigrationRun) -> Outcome:
    if not run.is_terminal:
        raise ValueError(f"Run is still {run.state.value}")
    if run.state == RunState.ABORTED:
        return Outcome.DECLINED if run.declined else Outcome.ABORTED
    return Outcome.PARTIAL if run.degraded() else Outcome.COMPLETE


def exit_code_for(run: MigrationRun) -> int:
    return EXIT_CODES[outcome_of(run)]


def build_report(
    run: MigrationRun,
    source: ConnectionProfile | None = None,
    target: ConnectionProfile | None = None,
) -> dict[str, Any]:
    """Machine-readable summary; contains no credentials."""
    outcome = outcome_of(run)
    return {
        "run_id": run.id,
        "outcome": outcome.value,
        "exit_code": EXIT_CODES[outcome],
        "state": run.state.value,
        "abort_reason": run.abort_reason,
        "resumed": run.resumed,
        "backup_dir": str(run.backup_dir) if run.backup_dir else None,
        "created_at": run.created_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "source": source.log_fields() if source else None,
        "target": target.log_fields() if target else None,
        "steps": [r.to_dict() for r in run.results],
        "degraded_steps": [r.step for r in run.degraded()],
    }


def render_summary(
    run: MigrationRun,
    target: ConnectionProfile | None = None,
    api_port: int = 8000,
) -> str:
    """Human-readable final report enumerating every step and its outcome."""
    outcome = outcome_of(run)
    rule = "═" * 64
    lines = [rule]
    if outcome == Outcome.COMPLETE:
        lines.append("  Migration complete")
    elif outcome == Outcome.PARTIAL:
        lines.append("  PARTIAL SUCCESS: migration finished with degraded steps")
    elif outcome == Outcome.DECLINED:
        lines.append("  Import cancelled: target was not modified")
    else:
        lines.append("  Migration ABORTED")
    lines.append(rule)
    if run.abort_reason and outcome == Outcome.ABORTED:
        lines.append(f"  Reason: {run.abort_reason}")

    lines.append("")
    for result in run.results:
        mark = _STATUS_MARKS[result.status]
        lines.append(f"  {mark} {result.step:<24} {result.status.value:<9} {result.message}")

    degraded = run.degraded()
    if outcome == Outcome.PARTIAL:
        lines.append("")
        lines.append(f"  Degraded steps ({len(degraded)}): {', '.join(r.step for r in degraded)}")
        lines.append("  Exit status is 0 for partial success; review the steps above.")

    if run.backup_dir:
        lines.append("")
        lines.append(f"  Backup files saved in: {run.backup_dir}")

    if outcome in (Outcome.COMPLETE, Outcome.PARTIAL):
        host = target.host if target else "<self-hosted host>"
        lines += [
            "",
            "Next steps:",
            "  1. Test your application with the self-hosted instance",
            "  2. Update your app's Supabase URL and keys:",
            f"     - URL: http://{host}:{api_port}",
            "     - Anon Key: (from your .env file)",
            "  3. For Edge Functions, copy them to: ./volumes/functions/",
            "",
            "Important:",
            "  - User passwords keep working (hashes are preserved)",
            "  - OAuth providers need to be reconfigured; identity links are in "
            f"{constants.AUTH_IDENTITIES_FILE} and are not imported",
            "  - Storage files need a separate migration with the Supabase CLI:",
            "    supabase storage cp -r sb://bucket-name ./local-backup --project-ref YOUR_PROJECT",
            "    then copy them to ./volumes/storage/",
        ]
    return "\n".join(lines)
