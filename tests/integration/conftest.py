"""Integration test fixtures.

Creates a small UAT-like schema (an identity table plus tables holding
identity references) in an ephemeral PostgreSQL database provided by
pytest-postgresql, and writes matching snapshot files.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import psycopg
import pytest
from pytest_postgresql import factories

from remap_users.context import RemapUsersContext

# ---------------------------------------------------------------------------
# Target schema
# ---------------------------------------------------------------------------

UAT_SCHEMA = [
    """
    CREATE TABLE "User" (
        "Id"       bigint PRIMARY KEY,
        "Email"    text,
        "UserName" text
    )
    """,
    """
    CREATE TABLE "Order" (
        "Id"        bigint PRIMARY KEY,
        "CreatedBy" bigint NULL REFERENCES "User" ("Id"),
        "Total"     numeric(10, 2)
    )
    """,
    """
    CREATE TABLE "OrderLine" (
        "OrderId" bigint NOT NULL REFERENCES "Order" ("Id"),
        "LineNo"  integer NOT NULL,
        "Sku"     text
    )
    """,
    """
    CREATE TABLE "Comment" (
        "Id"         bigint GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        "AuthorId"   bigint NOT NULL REFERENCES "User" ("Id"),
        "Body"       text,
        "BodyLength" integer GENERATED ALWAYS AS (length("Body")) STORED
    )
    """,
    """
    INSERT INTO "User" ("Id", "Email", "UserName") VALUES
        (101, 'alice@example.com', 'alice'),
        (999, 'system@example.com', 'system')
    """,
]

# Source users: 1 matches alice by normalized email, 2 has no UAT counterpart.
SNAPSHOT = {
    "public.User.json": [
        {"Id": 1, "Email": "  Alice@Example.com ", "UserName": "alice.prod"},
        {"Id": 2, "Email": "bob@example.com", "UserName": "bob"},
    ],
    "public.Order.json": [
        {"Id": 10, "CreatedBy": 1, "Total": 12.5},
        {"Id": 11, "CreatedBy": 2, "Total": "7.25"},
        {"Id": 12, "CreatedBy": None, "Total": 0},
    ],
    "public.OrderLine.json": [
        {"OrderId": 10, "LineNo": 1, "Sku": "A-1"},
        {"OrderId": 11, "LineNo": 1, "Sku": "B-2"},
    ],
    "public.Comment.json": [
        {"Id": 500, "AuthorId": 1, "Body": "hello"},
        {"Id": 501, "AuthorId": 2, "Body": "bye"},
    ],
}

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the UAT schema applied.

    The connection is left in autocommit mode: the remap steps open their
    own connections and must not wait on locks held by the test.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for statement in UAT_SCHEMA:
            conn.execute(statement)
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def snapshot_root(tmp_path: Path) -> Path:
    root = tmp_path / "snapshot"
    root.mkdir()
    for name, rows in SNAPSHOT.items():
        (root / name).write_text(json.dumps(rows), encoding="utf-8")
    return root


@pytest.fixture
def remap_ctx(db_conn, snapshot_root: Path, tmp_path: Path) -> Callable[..., RemapUsersContext]:
    """Factory for a context pointed at the test database and snapshot."""
    _, dsn = db_conn

    def _make(**overrides) -> RemapUsersContext:
        kwargs = dict(
            source_environment="PROD",
            connection_string=dsn,
            snapshot_path=snapshot_root,
            user_table="User",
            matching_rules=("email_norm",),
            fallback_user_id=999,
            artifact_directory=tmp_path / "artifacts",
            batch_size=2,
            command_timeout_seconds=60,
            parallelism=2,
        )
        kwargs.update(overrides)
        return RemapUsersContext(**kwargs)
    return _make
