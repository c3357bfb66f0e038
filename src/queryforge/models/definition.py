"""Pydantic models for query-type definitions.

a query type is a named, declarative recipe: which table, which projections,
which fixed predicates, and which columns callers may filter on. definitions
are developer-authored constants so their sql fragments are trusted verbatim.
everything a request brings in goes through parameter binding instead.
"""

import re
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ORDER_BY_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)(?:\s+(ASC|DESC))?$", re.IGNORECASE)

# token a definition's fields use for the time bucket expression
BUCKET_TOKEN = "{bucket}"


class FilterOp(str, Enum):
    """Filter operators callers can use.

    the values are the wire names, so `notIn` stays camel-cased.
    """

    EQ = "eq"
    NE = "ne"
    LIKE = "like"
    GT = "gt"
    LT = "lt"
    IN = "in"
    NOT_IN = "notIn"


class TimeUnit(str, Enum):
    """Bucketing units for time-series query types."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @classmethod
    def parse(cls, value: "str | TimeUnit | None") -> "TimeUnit | None":
        """Accept the unit names plus the `hourly`/`daily` spellings some callers send."""
        if value is None or isinstance(value, TimeUnit):
            return value
        aliases = {"hourly": "hour", "daily": "day", "weekly": "week", "monthly": "month"}
        normalized = aliases.get(value.lower(), value.lower())
        return cls(normalized)


class QueryTypeDefinition(BaseModel):
    """One entry of the query-type registry.

    frozen so the registry can be shared across requests without locking.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str | None = None
    table: str
    fields: tuple[str, ...]  # "<expr> [as <alias>]" projections
    where: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    order_by: str | None = None
    limit: int | None = Field(default=None, ge=1)
    time_field: str
    allowed_filters: frozenset[str] = frozenset()
    customizable: bool = True
    scope_field: str = "client_id"
    exclude_self_referrer: bool = False
    default_time_unit: TimeUnit = TimeUnit.DAY
    fill_gaps: bool = False
    # read from events carrying their session's first referrer, utm, geo and device
    session_attribution: bool = False
    # name of a result processor in queryforge.shaping, e.g. "referrers"
    postprocess: str | None = None

    @field_validator("allowed_filters")
    @classmethod
    def validate_identifiers(cls, value: frozenset[str]) -> frozenset[str]:
        # allowed filters end up in the identifier position of the sql
        for name in value:
            if not IDENTIFIER_RE.match(name):
                raise ValueError(f"Allowed filter '{name}' is not a plain identifier")
        return value

    @field_validator("scope_field", "time_field")
    @classmethod
    def validate_column(cls, value: str) -> str:
        if not IDENTIFIER_RE.match(value):
            raise ValueError(f"'{value}' is not a plain identifier")
        return value

    @field_validator("order_by")
    @classmethod
    def validate_order_by(cls, value: str | None) -> str | None:
        if value is not None and not ORDER_BY_RE.match(value.strip()):
            raise ValueError(f"order_by must be '<column> ASC|DESC', got '{value}'")
        return value

    @model_validator(mode="after")
    def validate_fill_gaps(self) -> Self:
        if self.fill_gaps and not self.is_time_series:
            raise ValueError(f"Query type '{self.name}' fills gaps but has no {BUCKET_TOKEN} field")
        return self

    @property
    def is_time_series(self) -> bool:
        return any(BUCKET_TOKEN in f for f in self.fields)

    @property
    def uses_website_domain(self) -> bool:
        """Whether compiling or shaping this query type needs the website's domain."""
        return self.exclude_self_referrer or self.postprocess == "referrers"

    @property
    def bucket_alias(self) -> str | None:
        """Alias of the bucketed projection, used when filling gaps."""
        for f in self.fields:
            if BUCKET_TOKEN in f:
                return split_alias(f)[1]
        return None

    def aliases(self) -> list[str]:
        return [split_alias(f)[1] for f in self.fields]


_ALIAS_RE = re.compile(r"^(.*?)\s+as\s+([A-Za-z_][A-Za-z0-9_]*)\s*$", re.IGNORECASE | re.DOTALL)


def split_alias(projection: str) -> tuple[str, str]:
    """Split "<expr> as <alias>" into its parts.

    projections without an alias are assumed to be bare columns and alias themselves.
    """
    match = _ALIAS_RE.match(projection.strip())
    if match:
        return match.group(1).strip(), match.group(2)
    expr = projection.strip()
    return expr, expr.split(".")[-1]
