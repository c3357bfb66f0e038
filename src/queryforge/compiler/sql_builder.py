"""SQL compiler for query-type requests.

translates a QueryRequest into a parameterized statement. the flow:
  1. look up the definition, validate filters (all-or-nothing)
  2. work out the time bucket, if the query type has one
  3. build select/from/where/group by/order by/limit clauses as fragments,
     behind the session attribution ctes for query types that use them
  4. render once, collecting bound values in placeholder order

compile() is pure: same request in, byte-identical sql and params out.
the resolved date range arrives fixed, nothing here reads a clock.
"""

import logging
import re
from typing import Any

import sqlglot
from sqlglot.errors import SqlglotError

from queryforge.compiler.dialects import get_dialect, get_paramstyle
from queryforge.compiler.filters import FilterValidator, escape_like
from queryforge.compiler.fragments import Bound, Fragment, TrustedSQL, render_all
from queryforge.errors import (
    InvalidOrderByError,
    InvalidPaginationError,
    MalformedQueryError,
    NotCustomizableError,
    UnknownFilterFieldError,
)
from queryforge.models.definition import (
    BUCKET_TOKEN,
    ORDER_BY_RE,
    QueryTypeDefinition,
    TimeUnit,
    split_alias,
)
from queryforge.models.query import CompiledQuery, Filter, QueryRequest
from queryforge.parser.loader import QueryTypeRegistry
from queryforge.timezones import UTC, align_range

logger = logging.getLogger(__name__)

MAX_LIMIT = 1000

_CLICKHOUSE_PLACEHOLDER_RE = re.compile(r"\{p\d+:[A-Za-z0-9()]+\}")
# single-quoted literals, stripped before counting placeholders
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")

# any of these calls makes the statement aggregated
_AGGREGATE_RE = re.compile(
    r"\b(count|sum|avg|min|max|any|median|uniq\w*|quantile\w*|arg_?min|arg_?max|group_?array)\s*\(",
    re.IGNORECASE,
)

# columns whose first value in a session is attributed to every event of it
SESSION_FIELDS = (
    "referrer",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "country",
    "device_type",
    "browser_name",
    "os_name",
)
SESSION_ATTRIBUTION = "session_attribution"
ATTRIBUTED_EVENTS = "attributed_events"


class SQLCompiler:
    """Compiles query-type requests into parameterized SQL.

    stateless apart from config: holds a registry reference, never modifies it.
    """

    def __init__(
        self,
        registry: QueryTypeRegistry,
        dialect: str = "clickhouse",
        paramstyle: str | None = None,
        max_limit: int = MAX_LIMIT,
    ) -> None:
        self.registry = registry
        self.dialect = get_dialect(dialect)
        self.style = get_paramstyle(paramstyle or self.dialect.paramstyle)
        self.max_limit = max_limit
        self.filter_validator = FilterValidator(self.dialect)

    def compile(self, request: QueryRequest, website_domain: str | None = None) -> CompiledQuery:
        """Convert a QueryRequest into a CompiledQuery.

        website_domain comes from the domain cache; when the query type excludes
        self-referrals it is bound like any filter value.
        """
        definition = self.registry.get_definition(request.type)

        # validation first so a bad filter never yields a partially built query
        filters = self.filter_validator.validate(definition, request.filters)
        group_by = self._validate_group_by(definition, request.group_by)

        unit = self._time_unit(definition, request)
        dr = request.date_range
        start, end = dr.start, dr.end
        bucket_tz = UTC
        if unit is not None:
            if self.dialect.buckets_in_local_time():
                bucket_tz = dr.timezone
            start, end = align_range(start, end, unit, bucket_tz)

        select = self._build_select(definition, group_by, unit, bucket_tz)
        where = self._build_where(definition, request, filters, start, end, website_domain)
        group_exprs = self._build_group_by(definition, group_by)
        order_expr = self._build_order_by(definition, request, select, group_exprs)
        limit, offset = self._build_pagination(definition, request)

        page_limit = page_offset = None
        if definition.fill_gaps and unit is not None and not group_by:
            # a LIMIT here would cut real buckets that gap filling then zeroes
            page_limit, page_offset = limit, offset
            limit = offset = None

        params: list[Any] = []
        lines = []
        source = definition.table
        if definition.session_attribution:
            ctes = self._build_session_ctes(definition, request.website_id, start, end)
            lines.append(render_all(ctes, self.style, params, ""))
            source = ATTRIBUTED_EVENTS
        lines.append(f"SELECT {render_all(select, self.style, params, ', ')}")
        lines.append(f"FROM {source}")
        lines.append(f"WHERE {render_all(where, self.style, params, ' AND ')}")
        if group_exprs:
            lines.append(f"GROUP BY {', '.join(group_exprs)}")
        if order_expr:
            lines.append(f"ORDER BY {order_expr}")
        if limit is not None:
            lines.append(f"LIMIT {limit}")
        if offset:
            lines.append(f"OFFSET {offset}")

        compiled = CompiledQuery(
            query_type=definition.name,
            sql="\n".join(lines),
            params=tuple(params),
            time_unit=unit,
            bucket_timezone=bucket_tz,
            page_limit=page_limit,
            page_offset=page_offset,
        )
        self._check_placeholders(compiled)
        return compiled

    def _time_unit(
        self, definition: QueryTypeDefinition, request: QueryRequest
    ) -> TimeUnit | None:
        if not definition.is_time_series:
            return None
        return request.time_unit or request.date_range.granularity or definition.default_time_unit

    def _validate_group_by(
        self, definition: QueryTypeDefinition, group_by: tuple[str, ...] | None
    ) -> tuple[str, ...] | None:
        if not group_by:
            return None
        if not definition.customizable:
            raise NotCustomizableError(
                f"Query type '{definition.name}' does not accept a custom groupBy"
            )
        for column in group_by:
            # grouping columns are identifiers, so the same allow-list applies
            if column not in definition.allowed_filters:
                raise UnknownFilterFieldError(
                    f"Grouping by field '{column}' is not permitted for '{definition.name}'"
                )
        return group_by

    def _build_select(
        self,
        definition: QueryTypeDefinition,
        group_by: tuple[str, ...] | None,
        unit: TimeUnit | None,
        bucket_tz: str,
    ) -> list[Fragment]:
        """Projections, with the {bucket} token swapped for the dialect's truncation.

        a groupBy override replaces the definition's grouping columns with the
        override columns and keeps the aggregates.
        """
        fields = list(definition.fields)
        if group_by:
            grouping = set(definition.group_by)
            kept = [
                f
                for f in fields
                if BUCKET_TOKEN in f or not grouping.intersection(split_alias(f))
            ]
            fields = [*group_by, *kept]

        fragments = []
        for projection in fields:
            if BUCKET_TOKEN in projection and unit is not None:
                bucket = self.dialect.bucket(unit, definition.time_field, bucket_tz)
                before, after = projection.split(BUCKET_TOKEN, 1)
                fragments.append(
                    Fragment((TrustedSQL(before), *bucket.parts, TrustedSQL(after)))
                )
            else:
                fragments.append(Fragment.trusted(projection))
        return fragments

    def _build_where(
        self,
        definition: QueryTypeDefinition,
        request: QueryRequest,
        filters: list[Filter],
        start: Any,
        end: Any,
        website_domain: str | None,
    ) -> list[Fragment]:
        """WHERE conditions in a fixed order.

        definition predicates, website scope, time range, caller filters, then
        the self-referrer exclusion.
        """
        conditions = [Fragment.trusted(w) for w in definition.where]

        conditions.append(
            Fragment.of(TrustedSQL(f"{definition.scope_field} = "), Bound(request.website_id))
        )
        conditions.append(
            Fragment.of(
                TrustedSQL(f"{definition.time_field} BETWEEN "),
                Bound(start),
                TrustedSQL(" AND "),
                Bound(end),
            )
        )

        conditions.extend(
            self.filter_validator.build_fragments(
                definition, filters, self.registry.columns(definition.table)
            )
        )

        if definition.exclude_self_referrer and website_domain:
            conditions.append(
                Fragment.of(
                    TrustedSQL("referrer NOT LIKE "),
                    Bound(f"%{escape_like(website_domain)}%"),
                    TrustedSQL(self.dialect.like_escape),
                )
            )
        return conditions

    def _build_session_ctes(
        self, definition: QueryTypeDefinition, website_id: str, start: Any, end: Any
    ) -> list[Fragment]:
        """First-touch attribution: every event carries its session's first values.

        session_attribution picks, per session, the earliest value of each
        SESSION_FIELDS column. attributed_events is the table with those
        columns swapped in, and the query type then reads from it as usual.
        """
        columns = sorted(self.registry.columns(definition.table))
        attributed = [c for c in SESSION_FIELDS if c in columns]
        scope, time_field = definition.scope_field, definition.time_field

        first_touch = ", ".join(
            f"{self.dialect.arg_min}({c}, {time_field}) AS session_{c}" for c in attributed
        )
        swapped = ", ".join(
            f"sa.session_{c} AS {c}" if c in attributed else f"e.{c}" for c in columns
        )
        return [
            Fragment.trusted(
                f"WITH {SESSION_ATTRIBUTION} AS (\n"
                f"SELECT session_id, {first_touch}\n"
                f"FROM {definition.table}\n"
            ),
            Fragment.of(
                TrustedSQL(f"WHERE {scope} = "),
                Bound(website_id),
                TrustedSQL(f" AND {time_field} BETWEEN "),
                Bound(start),
                TrustedSQL(" AND "),
                Bound(end),
                TrustedSQL(" AND session_id != ''\n"),
            ),
            Fragment.trusted(
                "GROUP BY session_id\n"
                f"), {ATTRIBUTED_EVENTS} AS (\n"
                f"SELECT {swapped}\n"
                f"FROM {definition.table} e\n"
                f"INNER JOIN {SESSION_ATTRIBUTION} sa ON e.session_id = sa.session_id\n"
            ),
            Fragment.of(
                TrustedSQL(f"WHERE e.{scope} = "),
                Bound(website_id),
                TrustedSQL(f" AND e.{time_field} BETWEEN "),
                Bound(start),
                TrustedSQL(" AND "),
                Bound(end),
                TrustedSQL("\n)"),
            ),
        ]

    def _build_group_by(
        self, definition: QueryTypeDefinition, group_by: tuple[str, ...] | None
    ) -> list[str]:
        if not group_by:
            return list(definition.group_by)
        exprs = list(group_by)
        # time series keep grouping by their bucket
        bucket_alias = definition.bucket_alias
        if bucket_alias and bucket_alias not in exprs:
            exprs.append(bucket_alias)
        return exprs

    def _build_order_by(
        self,
        definition: QueryTypeDefinition,
        request: QueryRequest,
        select: list[Fragment],
        group_exprs: list[str],
    ) -> str | None:
        """Validate an orderBy override.

        aggregated statements can only sort on what they project or group by,
        anything else is rejected here instead of by the store.
        """
        if not request.order_by:
            return definition.order_by

        match = ORDER_BY_RE.match(request.order_by.strip())
        if not match:
            raise InvalidOrderByError(f"Invalid orderBy: {request.order_by!r}")

        column, direction = match.group(1), (match.group(2) or "ASC").upper()
        projected = {split_alias(_fragment_text(f))[1] for f in select}
        aggregated = bool(group_exprs) or any(
            _AGGREGATE_RE.search(_fragment_text(f)) for f in select
        )
        if aggregated:
            sortable = projected | set(group_exprs)
        else:
            sortable = projected | definition.allowed_filters
        if column not in sortable:
            raise InvalidOrderByError(
                f"Cannot order '{definition.name}' by '{column}'"
            )
        return f"{column} {direction}"

    def _build_pagination(
        self, definition: QueryTypeDefinition, request: QueryRequest
    ) -> tuple[int | None, int | None]:
        """Bound the caller's limit/offset.

        limits above max_limit are clamped rather than rejected, nonsense
        (limit < 1, offset < 0) is rejected. both end up as validated ints.
        """
        limit = definition.limit
        if request.limit is not None:
            if request.limit < 1:
                raise InvalidPaginationError(f"limit must be at least 1, got {request.limit}")
            limit = min(int(request.limit), self.max_limit)
            if definition.limit is not None:
                limit = min(limit, definition.limit)

        offset = None
        if request.offset is not None:
            if request.offset < 0:
                raise InvalidPaginationError(f"offset must be >= 0, got {request.offset}")
            offset = int(request.offset)

        return limit, offset

    def _check_placeholders(self, compiled: CompiledQuery) -> None:
        bare = _STRING_LITERAL_RE.sub("''", compiled.sql)
        if self.style.name == "qmark":
            count = bare.count("?")
        else:
            count = len(_CLICKHOUSE_PLACEHOLDER_RE.findall(bare))
        if count != len(compiled.params):
            logger.error(
                "Placeholder mismatch compiling %s: %d placeholders, %d params\n%s",
                compiled.query_type,
                count,
                len(compiled.params),
                compiled.sql,
            )
            raise MalformedQueryError(
                f"Compiled query for '{compiled.query_type}' has {count} placeholders "
                f"but {len(compiled.params)} parameters"
            )

    def check_syntax(self, compiled: CompiledQuery) -> None:
        """Parse the statement with sqlglot, raising MalformedQueryError if it can't."""
        try:
            sqlglot.parse_one(compiled.sql, read=self.dialect.name)
        except SqlglotError as e:
            raise MalformedQueryError(
                f"Generated SQL for '{compiled.query_type}' does not parse: {e}"
            ) from e


def format_sql(sql: str, dialect: str = "clickhouse") -> str:
    """Pretty-print SQL with sqlglot.

    falls back to the input if sqlglot can't parse it; this is for humans,
    never for what gets executed.
    """
    try:
        parsed = sqlglot.parse_one(sql, read=dialect)
        return parsed.sql(dialect=dialect, pretty=True)
    except SqlglotError:
        return sql


def _fragment_text(fragment: Fragment) -> str:
    return "".join(p for p in fragment.parts if isinstance(p, TrustedSQL))

