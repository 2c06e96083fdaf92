"""remap_users.shared

Shared utilities used by every remap-users step.
Includes the exception hierarchy, the cancellation token, connection
helpers (statement timeout, isolation acquisition), and identifier quoting.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

import psycopg
from psycopg import sql
from psycopg.errors import FeatureNotSupported, InvalidTransactionState

log = logging.getLogger(__name__)

CONTROL_SCHEMA = "ctl"
STAGING_SCHEMA = "stg"

# Schemas never reported by discovery.
EXCLUDED_SCHEMAS = frozenset({
    "pg_catalog",
    "information_schema",
    "pg_toast",
    CONTROL_SCHEMA,
    STAGING_SCHEMA,
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RemapUsersError(Exception):
    """Base class for every domain error raised by the pipeline."""


class ConfigurationError(RemapUsersError, ValueError):
    """Raised when run configuration is invalid; always before any I/O."""


class DiscoveryError(RemapUsersError):
    """Raised when schema discovery queries fail."""


class StagingError(RemapUsersError):
    """Raised when control/staging provisioning or bulk staging fails."""


class SnapshotNotFoundError(StagingError, FileNotFoundError):
    """Raised when a required table has no snapshot file."""


class UserMapError(RemapUsersError):
    """Raised when the identity map cannot be built."""


class RewriteError(RemapUsersError):
    """Raised when a staging rewrite cannot apply the configured policy."""


class TransactionalLoadError(RemapUsersError):
    """Raised when the transactional load rolled back."""


class IntegrityViolationError(RemapUsersError):
    """Raised when post-load validation finds disabled/untrusted FKs or orphans."""


class DryRunApprovalError(RemapUsersError):
    """Raised when a commit run has no matching, fresh dry-run manifest."""


class OperationCancelled(RemapUsersError):
    """Raised when the run's cancellation token has been triggered."""


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Thread-safe cancellation flag shared by every step and worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("remap-users run was cancelled")


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

def qualified(schema: str, name: str) -> sql.Identifier:
    """Return a quoted ``schema.name`` identifier."""
    return sql.Identifier(schema, name)


def staging_identifier(table_name: str) -> sql.Identifier:
    return sql.Identifier(STAGING_SCHEMA, table_name)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def apply_statement_timeout(conn: psycopg.Connection, timeout_seconds: int) -> None:
    """Bound every subsequent statement on ``conn`` to ``timeout_seconds``."""
    conn.execute(
        "SELECT set_config('statement_timeout', %s, false)",
        (f"{int(timeout_seconds) * 1000}",),
    )


@contextmanager
def open_connection(
    dsn: str,
    timeout_seconds: int,
    autocommit: bool = False,
) -> Iterator[psycopg.Connection]:
    """Open a connection with the run's statement timeout applied.

    Non-autocommit connections are committed on clean exit and rolled back
    on any exception.
    """
    conn = psycopg.connect(dsn, autocommit=autocommit)
    try:
        apply_statement_timeout(conn, timeout_seconds)
        yield conn
        if not autocommit and not conn.closed:
            conn.commit()
    except BaseException:
        if not autocommit and not conn.closed:
            conn.rollback()
        raise
    finally:
        if not conn.closed:
            conn.close()


K = TypeVar("K")
R = TypeVar("R")


def run_parallel(
    tasks: dict[K, Callable[[], R]],
    parallelism: int,
) -> dict[K, R]:
    """Run ``tasks`` on up to ``parallelism`` worker threads.

    The first failure cancels every task that has not started yet and is
    re-raised once running tasks finish. With ``parallelism == 1`` tasks run
    inline, in order.
    """
    results: dict[K, R] = {}
    if parallelism <= 1 or len(tasks) <= 1:
        for key, task in tasks.items():
            results[key] = task()
        return results

    with ThreadPoolExecutor(max_workers=parallelism) as pool:
        futures = {pool.submit(task): key for key, task in tasks.items()}
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return {key: results[key] for key in tasks}


SNAPSHOT_ISOLATION = "REPEATABLE READ"
FALLBACK_ISOLATION = "READ COMMITTED"


def _try_isolation(conn: psycopg.Connection, level: str) -> bool:
    conn.execute("BEGIN")
    try:
        conn.execute(sql.SQL("SET TRANSACTION ISOLATION LEVEL {}").format(sql.SQL(level)))
    except (FeatureNotSupported, InvalidTransactionState) as exc:
        conn.execute("ROLLBACK")
        log.warning("Isolation %s rejected by server: %s", level, exc)
        return False
    return True


def begin_isolated_transaction(conn: psycopg.Connection) -> str:
    """Open a transaction at snapshot isolation, falling back to read committed.

    Two attempts, in order:
      1. ``REPEATABLE READ`` (PostgreSQL's snapshot isolation).
      2. ``READ COMMITTED``, only when the server rejected attempt 1 with
         FeatureNotSupported or InvalidTransactionState.

    Any other error propagates. ``conn`` must be in autocommit mode with no
    transaction open; the caller owns COMMIT/ROLLBACK.

    Returns:
        The isolation level that was acquired.
    """
    if _try_isolation(conn, SNAPSHOT_ISOLATION):
        return SNAPSHOT_ISOLATION
    if _try_isolation(conn, FALLBACK_ISOLATION):
        return FALLBACK_ISOLATION
    raise TransactionalLoadError(
        f"server rejected both {SNAPSHOT_ISOLATION} and {FALLBACK_ISOLATION} isolation"
    )
