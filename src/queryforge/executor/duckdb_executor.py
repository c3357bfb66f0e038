"""DuckDB query executor for queryforge.

duckdb is perfect for local work and tests - embedded, fast, and speaks sql.
no clickhouse server needed to try a query type out.

duckdb's api is blocking, so statements run in a worker thread with their own
cursor; the event loop stays free for the rest of the batch.
"""

import asyncio
import logging
import time
from typing import Any

import duckdb

from queryforge.errors import (
    MalformedQueryError,
    QueryExecutionError,
    QueryTimeoutError,
    StoreUnavailableError,
)
from queryforge.executor.base import log_malformed
from queryforge.models.query import CompiledQuery, QueryResult

logger = logging.getLogger(__name__)

# errors that mean the statement itself is wrong
_MALFORMED = (
    duckdb.ParserException,
    duckdb.BinderException,
    duckdb.CatalogException,
)


class DuckDBExecutor:
    """Execute compiled queries against DuckDB.

    thin wrapper around duckdb that handles connection management,
    result formatting and error mapping.
    """

    dialect = "duckdb"

    def __init__(self, database_path: str | None = None, timeout: float = 30.0) -> None:
        """Initialize DuckDB connection.

        Args:
            database_path: Path to DuckDB file, or None for in-memory.
            timeout: Seconds a statement may run before it is interrupted.
        """
        self.database_path = database_path
        self.timeout = timeout
        self._conn: duckdb.DuckDBPyConnection | None = None  # lazy init

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection.

        ":memory:" is the duckdb convention for in-memory database.
        """
        if self._conn is None:
            try:
                self._conn = duckdb.connect(self.database_path or ":memory:")
            except duckdb.IOException as e:
                raise StoreUnavailableError(f"Cannot open DuckDB at {self.database_path}: {e}") from e
        return self._conn

    async def execute(self, compiled: CompiledQuery) -> QueryResult:
        """Run the statement in a worker thread, interrupting it on timeout."""
        # one cursor per call, connections aren't safe to share across threads
        cursor = self.conn.cursor()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run, cursor, compiled), timeout=self.timeout
            )
        except TimeoutError:
            cursor.interrupt()
            raise QueryTimeoutError(
                f"Query '{compiled.query_type}' timed out after {self.timeout}s"
            ) from None
        finally:
            cursor.close()

    def _run(self, cursor: duckdb.DuckDBPyConnection, compiled: CompiledQuery) -> QueryResult:
        start = time.perf_counter()
        try:
            result = cursor.execute(compiled.sql, list(compiled.params))
            # result.description gives us (name, type_code, ...) tuples
            columns = [desc[0] for desc in result.description]
            rows = result.fetchall()
        except _MALFORMED as e:
            error = MalformedQueryError(f"DuckDB rejected '{compiled.query_type}': {e}")
            log_malformed(compiled, error)
            raise error from e
        except duckdb.InterruptException as e:
            raise QueryTimeoutError(f"Query '{compiled.query_type}' was interrupted") from e
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            raise StoreUnavailableError(f"DuckDB unavailable: {e}") from e
        except duckdb.Error as e:
            raise QueryExecutionError(f"DuckDB failed running '{compiled.query_type}': {e}") from e

        elapsed_ms = (time.perf_counter() - start) * 1000

        data = [dict(zip(columns, row)) for row in rows]
        return QueryResult(
            sql=compiled.sql,
            columns=columns,
            data=data,
            row_count=len(data),
            execution_time_ms=round(elapsed_ms, 2),
        )

    def execute_raw(self, sql: str, params: list[Any] | None = None) -> list[tuple[Any, ...]]:
        """Execute SQL synchronously and return raw tuples. For setup, not for requests."""
        return self.conn.execute(sql, params or []).fetchall()

    def create_table_from_data(
        self, table_name: str, columns: list[str], data: list[tuple[Any, ...]]
    ) -> None:
        """Create a table from in-memory data.

        columns are "<name> <TYPE>" definitions. a schema-qualified name
        (analytics.events) gets its schema created first.
        """
        if not data:
            raise ValueError("Cannot create table from empty data")

        if "." in table_name:
            self.conn.execute(f"CREATE SCHEMA IF NOT EXISTS {table_name.split('.')[0]}")

        placeholders = ", ".join(["?"] * len(columns))
        col_defs = ", ".join(columns)

        self.conn.execute(f"CREATE OR REPLACE TABLE {table_name} ({col_defs})")

        # executemany is more efficient than individual inserts
        self.conn.executemany(
            f"INSERT INTO {table_name} VALUES ({placeholders})",
            data,
        )

    def table_exists(self, table_name: str) -> bool:
        schema, _, name = table_name.rpartition(".")
        result = self.conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables "
            "WHERE table_name = ? AND (? = '' OR table_schema = ?)",
            [name, schema, schema],
        )
        return result.fetchone()[0] > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
