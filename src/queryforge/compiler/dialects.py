"""Dialect-specific sql for the compiler.

the compiler writes the same clause structure for every store; only the few
expressions below differ: placeholder syntax, time truncation, LIKE escaping,
the first-value aggregate and the normalising expressions used by the
path/referrer/device type filters.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from queryforge.compiler.fragments import Bound, Fragment, TrustedSQL
from queryforge.models.definition import TimeUnit


class QmarkStyle:
    """`?` placeholders, what duckdb (and most dbapi drivers) expect."""

    name = "qmark"

    def placeholder(self, index: int, value: Any) -> str:
        return "?"


class ClickHouseStyle:
    """Typed ClickHouse query parameters: `{p0:String}`.

    the executor sends the values as `param_p0=...` so names follow the
    position in the params list.
    """

    name = "clickhouse"

    def placeholder(self, index: int, value: Any) -> str:
        return f"{{p{index}:{clickhouse_type(value)}}}"


def clickhouse_type(value: Any) -> str:
    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return "Bool"
    if isinstance(value, int):
        return "Int64"
    if isinstance(value, float):
        return "Float64"
    if isinstance(value, datetime):
        return "DateTime"
    if isinstance(value, date):
        return "Date"
    return "String"


_CLICKHOUSE_INTERVALS = {
    TimeUnit.MINUTE: "INTERVAL 1 MINUTE",
    TimeUnit.HOUR: "INTERVAL 1 HOUR",
    TimeUnit.DAY: "INTERVAL 1 DAY",
    TimeUnit.WEEK: "INTERVAL 1 WEEK",
    TimeUnit.MONTH: "INTERVAL 1 MONTH",
}

_PATH_EXPR = {
    "clickhouse": (
        "CASE WHEN trimRight(path(path), '/') = '' THEN '/' "
        "ELSE trimRight(path(path), '/') END"
    ),
    "duckdb": "CASE WHEN rtrim(path, '/') = '' THEN '/' ELSE rtrim(path, '/') END",
}

# width and height of a "<w>x<h>" screen_resolution, NULL when it doesn't parse
_RESOLUTION_DIMS = {
    "clickhouse": (
        "toFloat64OrNull(splitByChar('x', screen_resolution)[1])",
        "toFloat64OrNull(splitByChar('x', screen_resolution)[2])",
    ),
    "duckdb": (
        "TRY_CAST(split_part(screen_resolution, 'x', 1) AS DOUBLE)",
        "TRY_CAST(split_part(screen_resolution, 'x', 2) AS DOUBLE)",
    ),
}

_REFERRER_DOMAIN_EXPR = {
    "clickhouse": "domain(referrer)",
    "duckdb": "regexp_extract(referrer, '^[a-z]+://([^/:?#]+)', 1)",
}


def _referrer_expr(domain_expr: str) -> str:
    d = domain_expr
    return (
        "CASE "
        "WHEN referrer = '' OR referrer IS NULL THEN 'direct' "
        f"WHEN {d} LIKE '%.google.com%' OR {d} LIKE 'google.com%' THEN 'https://google.com' "
        f"WHEN {d} LIKE '%.facebook.com%' OR {d} LIKE 'facebook.com%' THEN 'https://facebook.com' "
        f"WHEN {d} LIKE '%.twitter.com%' OR {d} LIKE 'twitter.com%' OR {d} LIKE 't.co%' "
        "THEN 'https://twitter.com' "
        f"WHEN {d} LIKE '%.instagram.com%' OR {d} LIKE 'instagram.com%' THEN 'https://instagram.com' "
        f"ELSE concat('https://', {d}) "
        "END"
    )


@dataclass(frozen=True)
class Dialect:
    name: str
    paramstyle: str  # native placeholder style of the store
    like_escape: str  # appended after a LIKE placeholder
    arg_min: str  # value of the first argument at the minimum of the second

    def bucket(self, unit: TimeUnit, time_field: str, timezone: str) -> Fragment:
        """Truncate time_field to the start of its bucket.

        clickhouse buckets in the caller's zone (bound, never inlined).
        duckdb buckets in UTC.
        """
        if self.name == "clickhouse":
            interval = _CLICKHOUSE_INTERVALS[unit]
            if timezone == "UTC":
                return Fragment.trusted(f"toStartOfInterval({time_field}, {interval})")
            return Fragment.of(
                TrustedSQL(f"toStartOfInterval({time_field}, {interval}, "),
                Bound(timezone),
                TrustedSQL(")"),
            )
        return Fragment.trusted(f"date_trunc('{unit.value}', {time_field})")

    def buckets_in_local_time(self) -> bool:
        return self.name == "clickhouse"

    def path_expr(self) -> str:
        return _PATH_EXPR[self.name]

    def referrer_expr(self) -> str:
        return _referrer_expr(_REFERRER_DOMAIN_EXPR[self.name])

    def resolution_dims(self) -> tuple[str, str]:
        return _RESOLUTION_DIMS[self.name]


DIALECTS = {
    "clickhouse": Dialect(
        name="clickhouse", paramstyle="clickhouse", like_escape="", arg_min="argMin"
    ),
    "duckdb": Dialect(
        name="duckdb", paramstyle="qmark", like_escape=" ESCAPE '\\'", arg_min="arg_min"
    ),
}

PARAM_STYLES = {
    "qmark": QmarkStyle(),
    "clickhouse": ClickHouseStyle(),
}


def get_dialect(name: str) -> Dialect:
    if name not in DIALECTS:
        raise ValueError(f"Unknown dialect: {name}. Use one of: {', '.join(DIALECTS)}")
    return DIALECTS[name]


def get_paramstyle(name: str) -> QmarkStyle | ClickHouseStyle:
    if name not in PARAM_STYLES:
        raise ValueError(f"Unknown paramstyle: {name}. Use one of: {', '.join(PARAM_STYLES)}")
    return PARAM_STYLES[name]
