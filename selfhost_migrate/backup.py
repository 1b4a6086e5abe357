"""
Per-run backup directory: the durable hand-off between export and import.
"""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from selfhost_migrate import constants
from selfhost_migrate.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class BackupDirectory:
    """A run's artifact directory. Never deleted by this tool."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def create(cls, root: Path, prefix: str = "migration_", now: datetime | None = None) -> "BackupDirectory":
        """Create `<root>/<prefix><timestamp>`; a same-second collision gets a numeric suffix."""
        stamp = (now or datetime.now()).strftime(constants.BACKUP_TIMESTAMP_FORMAT)
        path = root / f"{prefix}{stamp}"
        suffix = 1
        while path.exists():
            path = root / f"{prefix}{stamp}_{suffix}"
            suffix += 1
        try:
            path.mkdir(parents=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create backup directory {path}: {e}") from e
        logger.info("backup_directory_created", path=str(path))
        return cls(path)

    @classmethod
    def open(cls, path: Path) -> "BackupDirectory":
        """Open an existing backup directory, e.g. to resume an import."""
        if not path.is_dir():
            raise ConfigurationError(f"Backup directory not found: {path}")
        return cls(path)

    def path_for(self, artifact: str) -> Path:
        return self.path / artifact

    def has(self, artifact: str) -> bool:
        """True if the artifact exists and is non-empty."""
        path = self.path_for(artifact)
        return path.is_file() and path.stat().st_size > 0

    def write_report(self, report: dict[str, Any]) -> Path:
        path = self.path_for(constants.REPORT_FILE)
        path.write_text(json.dumps(report, indent=2, default=str) + "\n", encoding="utf-8")
        return path

    def __str__(self) -> str:
        return str(self.path)
