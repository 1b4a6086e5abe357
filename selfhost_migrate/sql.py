"""
SQL text generation for psql: the CSV export query and the auth upsert script.

Statements are composed with psycopg.sql and rendered without a connection,
since they are handed to psql rather than executed through psycopg.
"""
from __future__ import annotations

import csv
from datetime import datetime, timezone
from pathlib import Path

from psycopg import sql


def table_identifier(name: str) -> sql.Identifier:
    """Identifier for a possibly schema-qualified name such as `auth.users`."""
    return sql.Identifier(*name.split("."))


def column_list(columns) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(c) for c in columns)


def export_query(table: str, columns: tuple[str, ...] | None = None) -> str:
    """COPY ... TO STDOUT as quoted CSV with a header row; None selects every column."""
    selected = column_list(columns) if columns else sql.SQL("*")
    query = sql.SQL(
        "COPY (SELECT {columns} FROM {table}) TO STDOUT WITH (FORMAT csv, HEADER true, FORCE_QUOTE *)"
    ).format(columns=selected, table=table_identifier(table))
    return query.as_string(None)


def read_csv_header(csv_path: Path) -> list[str]:
    """Return the column names from the header row of a CSV file."""
    with open(csv_path, encoding="utf-8", newline="") as fh:
        header = next(csv.reader(fh), None)
    if not header:
        raise ValueError(f"{csv_path.name} has no header row")
    return [column.strip() for column in header]


def render_upsert_script(
    table: str,
    csv_path: Path,
    conflict_key: str,
    update_columns: tuple[str, ...],
) -> str:
    """Render a psql script that merges a CSV into `table` on `conflict_key`.

    The CSV header decides the column list, so the script always matches
    what was exported. Only `update_columns` that are present in the header
    are overwritten on conflict; if none are, conflicting rows are left as
    they are.
    """
    columns = read_csv_header(csv_path)
    if conflict_key not in columns:
        raise ValueError(f"{csv_path.name} header lacks conflict key column {conflict_key!r}")

    # \copy is a one-line meta-command
    csv_file = str(csv_path.resolve())
    if "\n" in csv_file or "\r" in csv_file:
        raise ValueError("CSV path must not contain line breaks")

    updates = [c for c in update_columns if c in columns and c != conflict_key]
    if updates:
        conflict_action = sql.SQL("DO UPDATE SET\n    {}").format(
            sql.SQL(",\n    ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in updates
            )
        )
    else:
        conflict_action = sql.SQL("DO NOTHING")

    body = sql.SQL(
        "CREATE TEMP TABLE {staging} (LIKE {target} INCLUDING DEFAULTS);\n"
        "\n"
        "\\copy {staging} ({columns}) FROM {csv_file} WITH (FORMAT csv, HEADER true)\n"
        "\n"
        "INSERT INTO {target} ({columns})\n"
        "SELECT {columns} FROM {staging}\n"
        "ON CONFLICT ({key}) {conflict_action};\n"
        "\n"
        "DROP TABLE {staging};\n"
    ).format(
        staging=sql.Identifier(table.split(".")[-1] + "_import"),
        target=table_identifier(table),
        columns=column_list(columns),
        csv_file=sql.Literal(csv_file),
        key=sql.Identifier(conflict_key),
        conflict_action=conflict_action,
    )

    generated = datetime.now(timezone.utc).isoformat(timespec="seconds")
    return (
        f"-- Generated by selfhost-migrate at {generated}\n"
        f"-- Merges {csv_path.name} into {table} on {conflict_key}.\n"
        f"-- Run with: psql --single-transaction -v ON_ERROR_STOP=1 -f <this file>\n"
        f"\n"
        + body.as_string(None)
    )
