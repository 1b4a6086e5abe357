"""
Migration constants and configuration defaults.

Settings Reference
==================

All settings can be overridden with MIGRATE_-prefixed environment variables
(e.g. MIGRATE_LOG_LEVEL=DEBUG, MIGRATE_STEP_TIMEOUT_SECONDS=600).

- LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
- LOG_FORMAT: "console" for development, "json" for automation
- APP_SCHEMA: Application schema exported and imported (Supabase: public)
- BACKUP_ROOT: Directory under which per-run backup directories are created
- BACKUP_DIR_PREFIX: Prefix of the per-run backup directory name
- ENV_FILE: Self-hosted deployment .env file (read-only settings source)
- STEP_TIMEOUT_SECONDS: Per-step timeout for pg_dump/psql calls (0 disables)
- CONNECT_TIMEOUT_SECONDS: Timeout for connectivity probes
- PG_DUMP_BIN / PSQL_BIN: Client binaries (name on PATH or absolute path)
- SELF_HOSTED_API_PORT: Kong gateway port shown in the next-steps guidance
"""

from __future__ import annotations

from typing import Any

# Connection defaults
DEFAULT_PORT: int = 5432
DEFAULT_USER: str = "postgres"
DEFAULT_DATABASE: str = "postgres"
DEFAULT_TARGET_HOST: str = "localhost"

# Keys read from the self-hosted deployment .env file
ENV_PASSWORD_KEY: str = "POSTGRES_PASSWORD"
ENV_PORT_KEY: str = "POSTGRES_PORT"

# Backup directory layout (durable contract between export and import)
SCHEMA_FILE: str = "schema.sql"
DATA_FILE: str = "data.sql"
AUTH_USERS_FILE: str = "auth_users.csv"
AUTH_IDENTITIES_FILE: str = "auth_identities.csv"
AUTH_IMPORT_SCRIPT: str = "import_auth.sql"
REPORT_FILE: str = "report.json"
BACKUP_TIMESTAMP_FORMAT: str = "%Y%m%d_%H%M%S"

AUTH_USERS_TABLE: str = "auth.users"
AUTH_IDENTITIES_TABLE: str = "auth.identities"

# Columns needed for password-preserving login on the self-hosted GoTrue.
AUTH_USER_COLUMNS: tuple[str, ...] = (
    "id",
    "email",
    "encrypted_password",
    "email_confirmed_at",
    "invited_at",
    "confirmation_token",
    "confirmation_sent_at",
    "recovery_token",
    "recovery_sent_at",
    "email_change_token_new",
    "email_change",
    "email_change_sent_at",
    "last_sign_in_at",
    "raw_app_meta_data",
    "raw_user_meta_data",
    "is_super_admin",
    "created_at",
    "updated_at",
    "phone",
    "phone_confirmed_at",
    "phone_change",
    "phone_change_token",
    "phone_change_sent_at",
    "email_change_token_current",
    "email_change_confirm_status",
    "banned_until",
    "reauthentication_token",
    "reauthentication_sent_at",
    "is_sso_user",
    "deleted_at",
    "role",
    "is_anonymous",
)

# Upsert policy for auth.users: merge on id, overwrite only these columns.
# Everything else keeps the target's value on conflict. This is a business
# decision, not a technical constraint; revisit here if it changes.
AUTH_USER_CONFLICT_KEY: str = "id"
AUTH_USER_UPDATE_COLUMNS: tuple[str, ...] = (
    "email",
    "encrypted_password",
    "raw_app_meta_data",
    "raw_user_meta_data",
    "updated_at",
)

# Roles whose hashes PgBouncer needs for auth_file authentication
PGBOUNCER_ROLES: tuple[str, ...] = (
    "anon",
    "authenticated",
    "authenticator",
    "postgres",
    "service_role",
    "supabase_admin",
    "supabase_auth_admin",
    "supabase_storage_admin",
)
PGBOUNCER_USERLIST_PATH: str = "volumes/pgbouncer/userlist.txt"

POSTGRES_CLIENT_INSTALL_HINT: str = "sudo apt install postgresql-client"

# Defaults
CONSTANTS: dict[str, Any] = {
    "LOG_LEVEL": "INFO",
    "LOG_FORMAT": "console",
    "APP_SCHEMA": "public",
    "BACKUP_ROOT": ".",
    "BACKUP_DIR_PREFIX": "migration_",
    "ENV_FILE": ".env",
    "STEP_TIMEOUT_SECONDS": 1800,
    "CONNECT_TIMEOUT_SECONDS": 10,
    "PG_DUMP_BIN": "pg_dump",
    "PSQL_BIN": "psql",
    "SELF_HOSTED_API_PORT": 8000,
}
