"""PostgreSQL / TimescaleDB backing store with bulk insert via COPY."""

import logging
from typing import Iterable, Sequence

import psycopg
from psycopg import sql
from psycopg_pool import ConnectionPool, PoolTimeout

from iis_ingest.models import LOG_FAILURES, LOGS, STATIC

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A write the store rejected; retrying will not help."""


class TransientStoreError(StoreError):
    """A write that failed for a reason worth retrying (timeout, reset)."""


_TABLE_DDL = {
    LOGS: """
        CREATE TABLE IF NOT EXISTS {table} (
            event_time     TIMESTAMPTZ NOT NULL,
            client_ip      TEXT NOT NULL,
            cookie_raw     TEXT,
            host           TEXT,
            referer        TEXT,
            uri_query      TEXT,
            uri_path       TEXT NOT NULL,
            username       TEXT,
            server_name    TEXT,
            status         INTEGER NOT NULL,
            elapsed_ms     BIGINT NOT NULL,
            bytes_sent     BIGINT NOT NULL,
            bytes_received BIGINT NOT NULL
        )
    """,
    LOG_FAILURES: """
        CREATE TABLE IF NOT EXISTS {table} (
            failure_time TIMESTAMPTZ NOT NULL DEFAULT now(),
            reason       TEXT NOT NULL,
            raw_log      TEXT NOT NULL
        )
    """,
    STATIC: """
        CREATE TABLE IF NOT EXISTS {table} (
            event_time TIMESTAMPTZ NOT NULL,
            username   TEXT,
            uri_path   TEXT NOT NULL
        )
    """,
}


def _identifier(name: str) -> sql.Identifier:
    # "schema.table" -> "schema"."table"
    return sql.Identifier(*name.split("."))


class PostgresStore:
    """Thread-safe bulk writer over a psycopg connection pool.

    Each ``bulk_insert`` call runs in its own transaction on a pooled
    connection, so concurrent flushes for different streams never share a
    transaction.
    """

    def __init__(
        self,
        dsn: str,
        pool_min_size: int = 1,
        pool_max_size: int = 4,
        timeout: float = 30.0,
    ):
        self._pool = ConnectionPool(
            dsn,
            min_size=pool_min_size,
            max_size=pool_max_size,
            timeout=timeout,
            open=True,
        )

    def bulk_insert(self, table: str, columns: Sequence[str], rows: Iterable[tuple]) -> int:
        """Write *rows* into *table* with a single COPY. Returns the row count."""
        rows = list(rows)
        if not rows:
            return 0

        query = sql.SQL("COPY {} ({}) FROM STDIN").format(
            _identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        )
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    with cur.copy(query) as copy:
                        for row in rows:
                            copy.write_row(row)
        except PoolTimeout as exc:
            raise TransientStoreError(f"no connection available for {table}: {exc}") from exc
        except psycopg.OperationalError as exc:
            raise TransientStoreError(f"write to {table} failed: {exc}") from exc
        except psycopg.Error as exc:
            raise StoreError(f"write to {table} rejected: {exc}") from exc
        return len(rows)

    def ensure_schema(self, tables: dict[str, str]):
        """Create the destination tables if missing and, when TimescaleDB is
        installed, make the ``logs`` table a hypertable on event_time."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                for stream, ddl in _TABLE_DDL.items():
                    cur.execute(sql.SQL(ddl).format(table=_identifier(tables[stream])))
                cur.execute("SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'")
                if cur.fetchone():
                    cur.execute(
                        "SELECT create_hypertable(%s, 'event_time', if_not_exists => TRUE)",
                        (tables[LOGS],),
                    )
                    logger.info("Hypertable ready: %s", tables[LOGS])
                else:
                    logger.warning("timescaledb extension not installed; %s is a plain table", tables[LOGS])
        logger.info("Schema ready: %s", ", ".join(tables[s] for s in _TABLE_DDL))

    def close(self):
        self._pool.close()
