"""ClickHouse query executor, over the HTTP interface.

clickhouse binds typed query parameters server side: the compiler writes
`{p0:String}` placeholders and we send the values as `param_p0=...`. values
never get spliced into the statement on this side either.

talks plain http with httpx instead of a driver, so nothing here blocks
the event loop.
"""

import logging
import re
import time
from datetime import date, datetime
from typing import Any

import httpx

from queryforge.errors import (
    MalformedQueryError,
    QueryExecutionError,
    QueryTimeoutError,
    StoreUnavailableError,
)
from queryforge.executor.base import log_malformed
from queryforge.models.query import CompiledQuery, QueryResult

logger = logging.getLogger(__name__)

# clickhouse exception codes we classify specially
TIMEOUT_CODES = {159, 160, 209}  # TIMEOUT_EXCEEDED, TOO_SLOW, SOCKET_TIMEOUT
MALFORMED_CODES = {
    46,  # UNKNOWN_FUNCTION
    47,  # UNKNOWN_IDENTIFIER
    60,  # UNKNOWN_TABLE
    62,  # SYNTAX_ERROR
    215,  # NOT_AN_AGGREGATE
    456,  # UNKNOWN_QUERY_PARAMETER
    457,  # BAD_QUERY_PARAMETER
}

_CODE_RE = re.compile(r"Code:\s*(\d+)")


def format_param(value: Any) -> str:
    """Text form of a bound value, as clickhouse parses it for its declared type."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _exception_code(response: httpx.Response) -> int | None:
    header = response.headers.get("X-ClickHouse-Exception-Code")
    if header and header.isdigit():
        return int(header)
    match = _CODE_RE.search(response.text)
    return int(match.group(1)) if match else None


class ClickHouseExecutor:
    """Execute compiled queries against a ClickHouse server."""

    dialect = "clickhouse"

    def __init__(
        self,
        url: str = "http://localhost:8123",
        user: str = "default",
        password: str = "",
        database: str = "default",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.database = database
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"X-ClickHouse-User": user, "X-ClickHouse-Key": password},
        )

    async def execute(self, compiled: CompiledQuery) -> QueryResult:
        params = {
            "database": self.database,
            "default_format": "JSON",
            # keep 64-bit ints as numbers in the json output
            "output_format_json_quote_64bit_integers": "0",
            "max_execution_time": str(int(self.timeout)),
        }
        for index, value in enumerate(compiled.params):
            params[f"param_p{index}"] = format_param(value)

        start = time.perf_counter()
        try:
            response = await self._client.post(
                f"{self.url}/", params=params, content=compiled.sql.encode()
            )
        except httpx.TimeoutException as e:
            raise QueryTimeoutError(
                f"Query '{compiled.query_type}' timed out after {self.timeout}s"
            ) from e
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"ClickHouse unreachable: {e}") from e

        if response.status_code != 200:
            self._raise_for_response(compiled, response)

        payload = response.json()
        elapsed_ms = (time.perf_counter() - start) * 1000

        columns = [col["name"] for col in payload.get("meta", [])]
        data = payload.get("data", [])
        return QueryResult(
            sql=compiled.sql,
            columns=columns,
            data=data,
            row_count=len(data),
            execution_time_ms=round(elapsed_ms, 2),
        )

    def _raise_for_response(self, compiled: CompiledQuery, response: httpx.Response) -> None:
        code = _exception_code(response)
        message = response.text.strip()[:500]

        if code in TIMEOUT_CODES:
            raise QueryTimeoutError(f"Query '{compiled.query_type}' timed out: {message}")
        if code in MALFORMED_CODES:
            error = MalformedQueryError(f"ClickHouse rejected '{compiled.query_type}': {message}")
            log_malformed(compiled, error)
            raise error
        if response.status_code >= 500:
            raise StoreUnavailableError(f"ClickHouse error {response.status_code}: {message}")
        raise QueryExecutionError(f"ClickHouse error {response.status_code}: {message}")

    async def ping(self) -> bool:
        try:
            response = await self._client.get(f"{self.url}/ping")
        except httpx.HTTPError as e:
            logger.warning("ClickHouse ping failed: %s", e)
            return False
        return response.status_code == 200

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
