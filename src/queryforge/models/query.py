"""Pydantic models for query requests, compiled statements and results.

a request states what the caller wants; the compiler turns it into a
CompiledQuery (sql + ordered params) and the executor into a QueryResult.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from queryforge.models.definition import FilterOp, TimeUnit

FilterScalar = str | int | float
FilterValue = FilterScalar | list[FilterScalar]


class Filter(BaseModel):
    """A caller filter: `{field, op, value}`.

    op stays a plain string here so an unsupported operator is reported by
    the filter validator with its own error code, not as a schema error.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    op: str
    value: Any = None

    @property
    def operator(self) -> FilterOp | None:
        try:
            return FilterOp(self.op)
        except ValueError:
            return None


class DateRange(BaseModel):
    """A resolved query window.

    start and end are naive UTC datetimes: the timezone resolver already
    expanded the caller's local days, the timezone is kept for bucketing.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    timezone: str = "UTC"
    granularity: TimeUnit | None = None


class QueryRequest(BaseModel):
    """A fully resolved request for one query type."""

    model_config = ConfigDict(frozen=True)

    type: str
    website_id: str
    date_range: DateRange
    filters: tuple[Filter, ...] = ()
    group_by: tuple[str, ...] | None = None
    order_by: str | None = None
    time_unit: TimeUnit | None = None
    limit: int | None = None
    offset: int | None = None


class CompiledQuery(BaseModel):
    """A parameterized statement ready for the executor.

    never mutated after compilation. `params` line up with the placeholders
    in `sql` by position.
    """

    model_config = ConfigDict(frozen=True)

    query_type: str
    sql: str
    params: tuple[Any, ...] = ()
    time_unit: TimeUnit | None = None  # set for bucketed query types
    bucket_timezone: str = "UTC"  # zone the buckets were truncated in
    # gap-filled series are paged after filling, not by the sql
    page_limit: int | None = None
    page_offset: int | None = None


class QueryResult(BaseModel):
    """Result of executing a compiled query.

    the sql travels with the data, handy when a dashboard panel looks wrong.
    """

    sql: str
    columns: list[str]
    data: list[dict]
    row_count: int
    execution_time_ms: float


class ParameterResult(BaseModel):
    """Outcome of one parameter (query type) inside a batch."""

    parameter: str
    success: bool
    data: list[dict] = Field(default_factory=list)
    error: str | None = None
    code: str | None = None


class BatchQueryRequest(BaseModel):
    """Several query types sharing one context (website, range, filters, paging)."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    parameters: tuple[str, ...]
    website_id: str
    start_date: str
    end_date: str
    timezone: str = "UTC"
    granularity: TimeUnit | None = None
    filters: tuple[Filter, ...] = ()
    # None means the configured DEFAULT_LIMIT
    limit: int | None = Field(default=None, ge=1)
    page: int = Field(default=1, ge=1)

    @field_validator("granularity", mode="before")
    @classmethod
    def parse_granularity(cls, value: Any) -> TimeUnit | None:
        return TimeUnit.parse(value)


class BatchResult(BaseModel):
    """Per-parameter results in the caller's order, plus what was honoured."""

    model_config = ConfigDict(populate_by_name=True)

    query_id: str | None = Field(default=None, alias="queryId")
    data: list[ParameterResult]
    meta: dict
