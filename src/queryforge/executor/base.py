"""Shared executor plumbing: the executor protocol, retry, error logging.

store failures fall into three buckets: TIMEOUT, STORE_UNAVAILABLE and
MALFORMED_QUERY. the first two are worth one more try after a short pause,
a malformed query is a compiler bug and fails straight away.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from queryforge.errors import MalformedQueryError, QueryExecutionError
from queryforge.models.query import CompiledQuery, QueryResult

logger = logging.getLogger(__name__)

REDACTED = "<redacted>"


class QueryExecutor(Protocol):
    dialect: str

    async def execute(self, compiled: CompiledQuery) -> QueryResult: ...

    async def close(self) -> None: ...


@dataclass
class RetryConfig:
    """How often and how long to wait before re-running a failed statement."""

    max_retries: int = 1
    backoff_seconds: float = 0.2

    def calculate_delay(self, attempt: int) -> float:
        # linear, a second retry is rare enough not to need anything smarter
        return self.backoff_seconds * (attempt + 1)


def redact_params(params: tuple[Any, ...]) -> list[str]:
    """Keep the shape of the parameter list, drop the values (they can be PII)."""
    return [f"{type(p).__name__}:{REDACTED}" for p in params]


def log_malformed(compiled: CompiledQuery, error: Exception) -> None:
    logger.error(
        "MALFORMED_QUERY for %s: %s\nSQL:\n%s\nparams: %s",
        compiled.query_type,
        error,
        compiled.sql,
        redact_params(compiled.params),
    )


async def execute_with_retry(
    executor: QueryExecutor,
    compiled: CompiledQuery,
    retry: RetryConfig | None = None,
) -> QueryResult:
    """Run a compiled query, retrying retryable store errors.

    MalformedQueryError never reaches the retry loop: retryable is False on it.
    """
    retry = retry or RetryConfig()
    attempt = 0
    while True:
        try:
            return await executor.execute(compiled)
        except MalformedQueryError:
            raise
        except QueryExecutionError as e:
            if not e.retryable or attempt >= retry.max_retries:
                raise
            delay = retry.calculate_delay(attempt)
            logger.warning(
                "%s running %s (attempt %d), retrying in %.2fs",
                e.code,
                compiled.query_type,
                attempt + 1,
                delay,
            )
            attempt += 1
            await asyncio.sleep(delay)
