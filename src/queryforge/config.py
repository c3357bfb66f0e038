"""Settings and logging setup for queryforge.

every knob can be set through the environment or a .env file, e.g.
STORE=duckdb DUCKDB_PATH=analytics.duckdb qf serve
"""

import logging

from pydantic_settings import BaseSettings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "queryforge"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Store: "clickhouse" in production, "duckdb" for local work
    STORE: str = "clickhouse"

    # ClickHouse
    CLICKHOUSE_URL: str = "http://localhost:8123"
    CLICKHOUSE_USER: str = "default"
    CLICKHOUSE_PASSWORD: str = ""
    CLICKHOUSE_DATABASE: str = "default"

    # DuckDB (empty means in-memory)
    DUCKDB_PATH: str = ""

    # Query types, defaults to the ones shipped in the package
    BUILDERS_PATH: str = ""

    # Timeouts
    QUERY_TIMEOUT_SECONDS: float = 30.0
    PARAMETER_TIMEOUT_SECONDS: float = 15.0
    BATCH_TIMEOUT_SECONDS: float = 45.0
    RETRY_BACKOFF_SECONDS: float = 0.2

    # Batches
    BATCH_CONCURRENCY: int = 4

    # Pagination
    MAX_LIMIT: int = 1000
    DEFAULT_LIMIT: int = 100

    # Website domain cache
    DOMAIN_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    DOMAIN_CACHE_STALE_SECONDS: int = 60 * 60
    # website id -> domain, e.g. {"w1": "example.com"}
    WEBSITE_DOMAINS: dict[str, str] = {}

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup for the cli and the server. Library code only logs."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # httpx logs every request at info
    logging.getLogger("httpx").setLevel(logging.WARNING)
