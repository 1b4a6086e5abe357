"""
PgBouncer auth_file setup for the self-hosted deployment.

Reads the password hashes of the Supabase service roles from pg_shadow and
writes them in PgBouncer's userlist.txt format:

    "username" "SCRAM-SHA-256$..."

Restart PgBouncer afterwards (docker compose restart pgbouncer).
"""
from __future__ import annotations

import os
from pathlib import Path

import psycopg
import structlog
from psycopg import errors as pg_errors

from selfhost_migrate import constants
from selfhost_migrate.errors import ConfigurationError, ConnectivityError
from selfhost_migrate.models import ConnectionProfile

logger = structlog.get_logger(__name__)

USERLIST_QUERY = """
    SELECT usename, passwd
    FROM pg_shadow
    WHERE usename = ANY(%s)
    ORDER BY usename
"""


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def format_userlist(rows: list[tuple[str, str | None]]) -> str:
    """Render (role, hash) rows; roles without a password hash are left out."""
    lines = [f"{_quote(user)} {_quote(passwd)}" for user, passwd in rows if passwd]
    return "\n".join(lines) + ("\n" if lines else "")


def fetch_role_hashes(
    profile: ConnectionProfile,
    roles: tuple[str, ...] = constants.PGBOUNCER_ROLES,
    connect_timeout: int = 10,
) -> list[tuple[str, str | None]]:
    """Fetch (role, password hash) for `roles` from pg_shadow (requires superuser)."""
    try:
        with psycopg.connect(
            host=profile.host,
            port=profile.port,
            user=profile.user,
            password=profile.password.get_secret_value(),
            dbname=profile.database,
            connect_timeout=connect_timeout,
        ) as conn:
            with conn.cursor() as cur:
                cur.execute(USERLIST_QUERY, (list(roles),))
                return [(row[0], row[1]) for row in cur.fetchall()]
    except pg_errors.InsufficientPrivilege as e:
        raise ConfigurationError(
            f"{profile.user} cannot read pg_shadow; connect as a superuser (e.g. postgres)"
        ) from e
    except psycopg.OperationalError as e:
        raise ConnectivityError(
            f"Cannot connect to {profile.host}:{profile.port}/{profile.database}: {str(e).strip()}"
        ) from e


def write_userlist(
    profile: ConnectionProfile,
    output: Path,
    roles: tuple[str, ...] = constants.PGBOUNCER_ROLES,
    connect_timeout: int = 10,
) -> list[str]:
    """Write userlist.txt for `roles` and return the roles written.

    The file holds password hashes, so it is created owner-read/write only.
    """
    rows = fetch_role_hashes(profile, roles, connect_timeout)
    found = {user for user, passwd in rows if passwd}
    missing = sorted(set(roles) - found)
    if missing:
        logger.warning("pgbouncer_roles_without_hash", roles=missing)

    output.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(format_userlist(rows))
    os.chmod(output, 0o600)

    logger.info("pgbouncer_userlist_written", path=str(output), roles=sorted(found))
    return sorted(found)
