"""remap_users.snapshot_loader

Bulk-load exported source-environment rows into the staging mirrors.

Snapshot layout: one JSON array of row objects per table, looked up under
the snapshot directory as (first match wins):
  1. ``<schema>.<table>.json``
  2. ``<schema>/<table>.json``
  3. ``<table>.json``

Every table in load order must have a file; all files are resolved before
any row is copied. Values are coerced to the staging column's type
(``normalize.coerce_snapshot_value``); absent keys and JSON null load as
NULL, unknown keys are ignored. Rows stream into ``stg."<table>"`` through
``COPY … FROM STDIN``, one COPY per ``batch_size`` rows, each table on its
own worker connection.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg import sql

from remap_users.normalize import SnapshotValueError, coerce_snapshot_value
from remap_users.schema_graph import ColumnInfo, SchemaTable, get_columns
from remap_users.shared import (
    STAGING_SCHEMA,
    CancellationToken,
    SnapshotNotFoundError,
    StagingError,
    open_connection,
    run_parallel,
    staging_identifier,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# File resolution
# ---------------------------------------------------------------------------

def snapshot_candidates(root: Path, table: SchemaTable) -> list[Path]:
    return [
        root / f"{table.schema}.{table.name}.json",
        root / table.schema / f"{table.name}.json",
        root / f"{table.name}.json",
    ]


def resolve_snapshot_file(root: Path, table: SchemaTable) -> Path:
    """Return the first existing snapshot file for ``table``.

    Raises:
        SnapshotNotFoundError: None of the candidate paths exists.
    """
    for candidate in snapshot_candidates(root, table):
        if candidate.is_file():
            return candidate
    raise SnapshotNotFoundError(
        f"snapshot file for {table.qualified_name} was not found in {root}"
    )


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def read_snapshot_rows(path: Path) -> list[dict[str, Any]]:
    """Parse a snapshot file; non-object array elements are skipped."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StagingError(f"{path}: invalid JSON: {exc}") from exc
    if not isinstance(document, list):
        raise StagingError(f"{path}: snapshot files must contain a JSON array of rows")
    skipped = sum(1 for element in document if not isinstance(element, dict))
    if skipped:
        log.warning("%s: skipped %d non-object element(s)", path, skipped)
    return [element for element in document if isinstance(element, dict)]


def convert_row(element: dict[str, Any], columns: list[ColumnInfo]) -> tuple[Any, ...]:
    """Return ``element`` as a tuple in column order, coerced per column type.

    Keys match exactly first, then case-insensitively.
    """
    folded = None
    values = []
    for column in columns:
        if column.name in element:
            raw = element[column.name]
        else:
            if folded is None:
                folded = {k.casefold(): v for k, v in element.items()}
            raw = folded.get(column.name.casefold())
        try:
            values.append(coerce_snapshot_value(raw, column.data_type))
        except SnapshotValueError as exc:
            raise StagingError(f"column {column.name}: {exc}") from exc
    return tuple(values)


def _batches(rows: list[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


# ---------------------------------------------------------------------------
# COPY
# ---------------------------------------------------------------------------

def stage_table(
    conn: psycopg.Connection,
    table: SchemaTable,
    snapshot_file: Path,
    batch_size: int,
    cancel: CancellationToken | None = None,
) -> int:
    """Copy ``snapshot_file`` into ``stg."<table>"``; return rows copied."""
    columns = get_columns(conn, SchemaTable(STAGING_SCHEMA, table.name))
    if not columns:
        raise StagingError(f"staging mirror {STAGING_SCHEMA}.{table.name} does not exist")
    rows = read_snapshot_rows(snapshot_file)

    copy_sql = sql.SQL("COPY {} ({}) FROM STDIN").format(
        staging_identifier(table.name),
        sql.SQL(", ").join(sql.Identifier(c.name) for c in columns),
    )
    copied = 0
    with conn.cursor() as cur:
        for batch in _batches(rows, batch_size):
            if cancel is not None:
                cancel.raise_if_cancelled()
            with cur.copy(copy_sql) as copy:
                for index, element in enumerate(batch, start=copied):
                    try:
                        copy.write_row(convert_row(element, columns))
                    except StagingError as exc:
                        raise StagingError(
                            f"{snapshot_file} row {index}: {exc}"
                        ) from exc
            copied += len(batch)
    log.info("Staged %d row(s) into %s.%s from %s",
             copied, STAGING_SCHEMA, table.name, snapshot_file)
    return copied


def stage_snapshot(
    dsn: str,
    command_timeout_seconds: int,
    snapshot_root: Path,
    tables: list[SchemaTable],
    batch_size: int,
    parallelism: int,
    cancel: CancellationToken | None = None,
) -> dict[SchemaTable, int]:
    """Stage every table in ``tables``, up to ``parallelism`` at a time.

    Returns:
        Rows copied per table, in ``tables`` order.

    Raises:
        SnapshotNotFoundError: Any table lacks a snapshot file; nothing is copied.
        StagingError: A file is malformed or a value cannot be coerced.
    """
    if not snapshot_root.is_dir():
        raise SnapshotNotFoundError(f"snapshot directory {snapshot_root} does not exist")
    files = {table: resolve_snapshot_file(snapshot_root, table) for table in tables}

    def _task(table: SchemaTable, path: Path):
        def run() -> int:
            if cancel is not None:
                cancel.raise_if_cancelled()
            with open_connection(dsn, command_timeout_seconds) as conn:
                return stage_table(conn, table, path, batch_size, cancel)
        return run

    return run_parallel(
        {table: _task(table, path) for table, path in files.items()},
        parallelism,
    )
