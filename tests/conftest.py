"""Pytest fixtures for queryforge tests."""

import asyncio
from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import pytest

from queryforge.cache import DomainCache, static_fetcher
from queryforge.config import Settings
from queryforge.executor.duckdb_executor import DuckDBExecutor
from queryforge.parser.loader import QueryTypeRegistry
from queryforge.store import QueryStore


@pytest.fixture
def sample_builders_yaml() -> str:
    """Query types written in sql duckdb can run."""
    return """
tables:
  - name: analytics.events
    time_columns: [time]
  - name: analytics.errors
    time_columns: [timestamp]

query_types:
  - name: summary_metrics
    table: analytics.events
    fields:
      - "COUNT(*) as pageviews"
      - "COUNT(DISTINCT anonymous_id) as visitors"
      - "COUNT(DISTINCT session_id) as sessions"
    where:
      - "event_name = 'screen_view'"
    time_field: time
    allowed_filters: [path, referrer, device_type, browser_name, country]

  - name: top_pages
    table: analytics.events
    fields:
      - "path as name"
      - "COUNT(*) as pageviews"
      - "COUNT(DISTINCT anonymous_id) as visitors"
    where:
      - "event_name = 'screen_view'"
    group_by: [path]
    order_by: pageviews DESC
    limit: 10
    time_field: time
    allowed_filters: [path, country, device_type, browser_name]

  - name: top_referrers
    table: analytics.events
    fields:
      - "referrer as name"
      - "COUNT(DISTINCT anonymous_id) as visitors"
    where:
      - "event_name = 'screen_view'"
      - "referrer != ''"
    group_by: [referrer]
    order_by: visitors DESC
    time_field: time
    allowed_filters: [path, referrer]
    exclude_self_referrer: true

  - name: pageviews_trend
    table: analytics.events
    fields:
      - "{bucket} as date"
      - "COUNT(*) as pageviews"
    where:
      - "event_name = 'screen_view'"
    group_by: [date]
    order_by: date ASC
    time_field: time
    allowed_filters: [country, device_type]
    fill_gaps: true

  - name: locked_summary
    table: analytics.events
    fields:
      - "COUNT(*) as events"
    time_field: time
    allowed_filters: [country]
    customizable: false

  - name: error_types
    table: analytics.errors
    fields:
      - "message as name"
      - "COUNT(*) as occurrences"
    group_by: [message]
    order_by: occurrences DESC
    limit: 50
    time_field: timestamp
    allowed_filters: [path, browser_name]
"""


@pytest.fixture
def builders_dir(tmp_path: Path, sample_builders_yaml: str) -> Path:
    """Temporary builders directory with the sample YAML."""
    path = tmp_path / "builders"
    path.mkdir()
    (path / "sample.yaml").write_text(sample_builders_yaml)
    return path


@pytest.fixture
def registry(builders_dir: Path) -> QueryTypeRegistry:
    reg = QueryTypeRegistry()
    reg.load_directory(builders_dir)
    return reg


@pytest.fixture(scope="session")
def builtin_registry() -> QueryTypeRegistry:
    return QueryTypeRegistry.load_builtin()


EVENT_COLUMNS = [
    "client_id VARCHAR",
    "time TIMESTAMP",
    "event_name VARCHAR",
    "anonymous_id VARCHAR",
    "session_id VARCHAR",
    "path VARCHAR",
    "referrer VARCHAR",
    "browser_name VARCHAR",
    "country VARCHAR",
    "device_type VARCHAR",
]

ERROR_COLUMNS = [
    "client_id VARCHAR",
    "timestamp TIMESTAMP",
    "message VARCHAR",
    "path VARCHAR",
    "browser_name VARCHAR",
]


@pytest.fixture
def sample_events() -> list[tuple]:
    """Events for two websites. w1 has 4 screen views from 3 visitors, none on June 2."""
    return [
        ("w1", datetime(2024, 6, 1, 10, 0), "screen_view", "a1", "s1", "/", "", "Chrome", "US", "desktop"),
        ("w1", datetime(2024, 6, 1, 10, 5), "screen_view", "a1", "s1", "/pricing", "https://google.com/search", "Chrome", "US", "desktop"),
        ("w1", datetime(2024, 6, 1, 12, 0), "screen_view", "a2", "s2", "/", "https://mysite.com/blog", "Firefox", "DE", "mobile"),
        ("w1", datetime(2024, 6, 3, 9, 0), "screen_view", "a3", "s3", "/docs/", "https://news.ycombinator.com/", "Safari", "US", "mobile"),
        ("w1", datetime(2024, 6, 3, 9, 1), "click", "a3", "s3", "/docs/", "", "Safari", "US", "mobile"),
        ("w2", datetime(2024, 6, 1, 11, 0), "screen_view", "b1", "t1", "/", "", "Chrome", "FR", "desktop"),
    ]


@pytest.fixture
def sample_errors() -> list[tuple]:
    return [
        ("w1", datetime(2024, 6, 1, 10, 1), "TypeError: x is undefined", "/", "Chrome"),
        ("w1", datetime(2024, 6, 1, 10, 2), "TypeError: x is undefined", "/pricing", "Chrome"),
        ("w1", datetime(2024, 6, 2, 8, 0), "NetworkError", "/", "Firefox"),
    ]


def load_sample_data(
    executor: DuckDBExecutor, events: list[tuple], errors: list[tuple]
) -> None:
    executor.create_table_from_data("analytics.events", EVENT_COLUMNS, events)
    executor.create_table_from_data("analytics.errors", ERROR_COLUMNS, errors)


@pytest.fixture
def db_with_data(
    sample_events: list[tuple], sample_errors: list[tuple]
) -> Generator[DuckDBExecutor, None, None]:
    """In-memory DuckDB executor with the sample tables."""
    executor = DuckDBExecutor()
    load_sample_data(executor, sample_events, sample_errors)
    yield executor
    asyncio.run(executor.close())


@pytest.fixture
def settings() -> Settings:
    return Settings(
        STORE="duckdb",
        RETRY_BACKOFF_SECONDS=0,
        PARAMETER_TIMEOUT_SECONDS=5,
        BATCH_TIMEOUT_SECONDS=10,
    )


@pytest.fixture
def store_with_data(
    registry: QueryTypeRegistry, db_with_data: DuckDBExecutor, settings: Settings
) -> QueryStore:
    """QueryStore over the sample data; w1's own domain is mysite.com."""
    cache = DomainCache(static_fetcher({"w1": "mysite.com"}))
    return QueryStore(registry, db_with_data, domain_cache=cache, settings=settings)


@pytest.fixture
def duckdb_file(
    tmp_path: Path, sample_events: list[tuple], sample_errors: list[tuple]
) -> Path:
    """DuckDB database file holding the sample tables, for the cli."""
    path = tmp_path / "analytics.duckdb"
    executor = DuckDBExecutor(str(path))
    load_sample_data(executor, sample_events, sample_errors)
    asyncio.run(executor.close())
    return path
