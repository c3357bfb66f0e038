"""Main QueryStore interface for queryforge."""

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from queryforge.batch import BatchConfig, build_meta, page_offset, run_parameters
from queryforge.cache import DomainCache, static_fetcher
from queryforge.compiler.sql_builder import SQLCompiler
from queryforge.config import Settings
from queryforge.executor.base import QueryExecutor, RetryConfig, execute_with_retry
from queryforge.executor.clickhouse_executor import ClickHouseExecutor
from queryforge.executor.duckdb_executor import DuckDBExecutor
from queryforge.models.definition import TimeUnit
from queryforge.models.query import (
    BatchQueryRequest,
    BatchResult,
    CompiledQuery,
    Filter,
    QueryRequest,
    QueryResult,
)
from queryforge.parser.loader import QueryTypeRegistry
from queryforge.shaping import shape_result
from queryforge.timezones import UTC, build_date_range

logger = logging.getLogger(__name__)

# any fixed window does for compile checks, the sql doesn't depend on it
_VALIDATE_RANGE = ("2024-01-01", "2024-01-07")


class QueryStore:
    """Main interface for queryforge.

    ties the registry, compiler, executor and domain cache together. one
    instance serves every request; nothing on it is mutated per request
    apart from the domain cache, which handles its own concurrency.
    """

    def __init__(
        self,
        registry: QueryTypeRegistry,
        executor: QueryExecutor,
        domain_cache: DomainCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = registry
        self.executor = executor
        self.domain_cache = domain_cache
        self.compiler = SQLCompiler(
            registry, dialect=executor.dialect, max_limit=self.settings.MAX_LIMIT
        )
        self.retry = RetryConfig(max_retries=1, backoff_seconds=self.settings.RETRY_BACKOFF_SECONDS)
        self.batch_config = BatchConfig(
            concurrency=self.settings.BATCH_CONCURRENCY,
            parameter_timeout=self.settings.PARAMETER_TIMEOUT_SECONDS,
            batch_timeout=self.settings.BATCH_TIMEOUT_SECONDS,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "QueryStore":
        """Build a store from configuration: registry, executor and domain cache."""
        settings = settings or Settings()

        registry = QueryTypeRegistry()
        if settings.BUILDERS_PATH:
            registry.load_directory(Path(settings.BUILDERS_PATH))
        else:
            registry = QueryTypeRegistry.load_builtin()

        executor: QueryExecutor
        if settings.STORE == "duckdb":
            executor = DuckDBExecutor(
                settings.DUCKDB_PATH or None, timeout=settings.QUERY_TIMEOUT_SECONDS
            )
        elif settings.STORE == "clickhouse":
            executor = ClickHouseExecutor(
                url=settings.CLICKHOUSE_URL,
                user=settings.CLICKHOUSE_USER,
                password=settings.CLICKHOUSE_PASSWORD,
                database=settings.CLICKHOUSE_DATABASE,
                timeout=settings.QUERY_TIMEOUT_SECONDS,
            )
        else:
            raise ValueError(f"Unknown store: {settings.STORE}. Use clickhouse or duckdb")

        domain_cache = DomainCache(
            static_fetcher(settings.WEBSITE_DOMAINS),
            ttl_seconds=settings.DOMAIN_CACHE_TTL_SECONDS,
            stale_seconds=settings.DOMAIN_CACHE_STALE_SECONDS,
        )
        return cls(registry, executor, domain_cache=domain_cache, settings=settings)

    def build_request(
        self,
        type: str,
        website_id: str,
        start_date: str,
        end_date: str,
        timezone: str = UTC,
        filters: Sequence[Filter | dict] = (),
        group_by: Sequence[str] | None = None,
        order_by: str | None = None,
        time_unit: str | TimeUnit | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> QueryRequest:
        """Resolve caller inputs (local dates, a timezone) into a QueryRequest."""
        unit = TimeUnit.parse(time_unit)
        return QueryRequest(
            type=type,
            website_id=website_id,
            date_range=build_date_range(start_date, end_date, timezone, unit),
            filters=tuple(f if isinstance(f, Filter) else Filter.model_validate(f) for f in filters),
            group_by=tuple(group_by) if group_by else None,
            order_by=order_by,
            time_unit=unit,
            limit=limit,
            offset=offset,
        )

    def compile(self, request: QueryRequest, website_domain: str | None = None) -> CompiledQuery:
        return self.compiler.compile(request, website_domain=website_domain)

    def get_sql(self, request: QueryRequest) -> str:
        """Get the SQL without executing it."""
        return self.compile(request).sql

    async def website_domain(self, query_type: str, website_id: str) -> str | None:
        if self.domain_cache is None:
            return None
        if not self.registry.get_definition(query_type).uses_website_domain:
            return None
        return await self.domain_cache.get(website_id)

    async def query(self, request: QueryRequest) -> QueryResult:
        """Compile, execute and shape one query."""
        domain = await self.website_domain(request.type, request.website_id)
        compiled = self.compile(request, website_domain=domain)
        result = await execute_with_retry(self.executor, compiled, self.retry)

        definition = self.registry.get_definition(request.type)
        data = shape_result(
            definition,
            compiled,
            result,
            request.date_range,
            grouped_override=bool(request.group_by),
            website_domain=domain,
        )
        return result.model_copy(update={"data": data, "row_count": len(data)})

    async def run_batch(
        self, batch: BatchQueryRequest, timezone: str | None = None
    ) -> BatchResult:
        """Run every parameter of a batch against the shared context.

        timezone, when given, wins over the one in the batch body (it was
        resolved from the request headers by the caller). a bad timezone or
        date range fails the whole batch, it's shared by every parameter.
        """
        tz = timezone or batch.timezone
        date_range = build_date_range(batch.start_date, batch.end_date, tz, batch.granularity)
        limit = min(batch.limit or self.settings.DEFAULT_LIMIT, self.settings.MAX_LIMIT)
        offset = page_offset(batch, limit)

        # looked up once; the cache's single-flight covers sibling parameters anyway
        domain = None
        if self.domain_cache is not None and any(
            name in self.registry and self.registry.get_definition(name).uses_website_domain
            for name in batch.parameters
        ):
            domain = await self.domain_cache.get(batch.website_id)

        async def run_parameter(parameter: str) -> list[dict]:
            request = QueryRequest(
                type=parameter,
                website_id=batch.website_id,
                date_range=date_range,
                filters=batch.filters,
                time_unit=batch.granularity,
                limit=limit,
                offset=offset or None,
            )
            compiled = self.compile(request, website_domain=domain)
            result = await execute_with_retry(self.executor, compiled, self.retry)
            definition = self.registry.get_definition(parameter)
            return shape_result(definition, compiled, result, date_range, website_domain=domain)

        data = await run_parameters(batch.parameters, run_parameter, self.batch_config)
        return BatchResult(query_id=batch.id, data=data, meta=build_meta(batch, limit))

    def list_types(self) -> dict[str, dict]:
        """All query types with their allowed filters, for the ui."""
        return self.registry.describe()

    def validate(self) -> list[str]:
        """Compile every query type and syntax-check the result. Returns list of errors."""
        errors = []
        start, end = _VALIDATE_RANGE
        for name in self.registry.names():
            try:
                request = self.build_request(name, "validate", start, end)
                self.compiler.check_syntax(self.compile(request, website_domain="example.com"))
            except Exception as e:
                errors.append(f"Query type '{name}': {e}")
        return errors

    async def close(self) -> None:
        """Close the executor's connections."""
        await self.executor.close()

    async def __aenter__(self) -> "QueryStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
