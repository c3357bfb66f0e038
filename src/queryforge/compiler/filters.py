"""Filter validation and lowering.

callers may only filter on the columns a query type allow-lists, with one of
seven operators. accepted filters are lowered into fragments whose identifier
comes from the allow-list and whose values are always bound.

LIKE policy: the value is always wrapped as %value% and literal `\\`, `%`
and `_` in it are escaped, so callers search for text, not patterns.

device_type equality and membership filters on tables that record
screen_resolution match on resolution heuristics, see compiler.devices.
"""

from collections.abc import Collection, Sequence
from typing import Any

from queryforge.compiler.devices import (
    DEVICE_TYPE_FIELD,
    DEVICE_TYPES,
    RESOLUTION_COLUMN,
    device_type_condition,
)
from queryforge.compiler.dialects import Dialect
from queryforge.compiler.fragments import Bound, Fragment, TrustedSQL
from queryforge.errors import (
    EmptyInListError,
    InvalidFilterValueError,
    NotCustomizableError,
    UnknownFilterFieldError,
    UnsupportedOperatorError,
)
from queryforge.models.definition import FilterOp, QueryTypeDefinition
from queryforge.models.query import Filter

OPERATOR_SQL = {
    FilterOp.EQ: "=",
    FilterOp.NE: "!=",
    FilterOp.LIKE: "LIKE",
    FilterOp.GT: ">",
    FilterOp.LT: "<",
    FilterOp.IN: "IN",
    FilterOp.NOT_IN: "NOT IN",
}

LIST_OPERATORS = {FilterOp.IN, FilterOp.NOT_IN}
DEVICE_OPERATORS = {FilterOp.EQ, FilterOp.NE, FilterOp.IN, FilterOp.NOT_IN}

# fields that filter on a normalising expression instead of the raw column
PATH_FIELD = "path"
REFERRER_FIELD = "referrer"

# common ways people type a referrer, mapped onto what the referrer expression yields
_REFERRER_ALIASES = {
    "direct": "direct",
    "google": "https://google.com",
    "google.com": "https://google.com",
    "www.google.com": "https://google.com",
    "facebook": "https://facebook.com",
    "facebook.com": "https://facebook.com",
    "www.facebook.com": "https://facebook.com",
    "twitter": "https://twitter.com",
    "twitter.com": "https://twitter.com",
    "www.twitter.com": "https://twitter.com",
    "t.co": "https://twitter.com",
    "instagram": "https://instagram.com",
    "instagram.com": "https://instagram.com",
    "www.instagram.com": "https://instagram.com",
    "l.instagram.com": "https://instagram.com",
}

_REFERRER_SEARCH_ALIASES = {
    "direct": "direct",
    "google": "google.com",
    "facebook": "facebook.com",
    "twitter": "twitter.com",
    "instagram": "instagram.com",
}


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters so the value matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def normalize_referrer(value: str) -> str:
    """Map user input like `google` or `t.co` onto a canonical referrer url."""
    lowered = value.lower()
    if lowered in _REFERRER_ALIASES:
        return _REFERRER_ALIASES[lowered]
    if value.startswith(("http://", "https://")):
        return value
    if "." in value and " " not in value:
        return f"https://{value}"
    return value


def _is_scalar(value: Any) -> bool:
    return isinstance(value, str | int | float) and not isinstance(value, bool)


class FilterValidator:
    """Validates caller filters against a definition and lowers them to sql."""

    def __init__(self, dialect: Dialect) -> None:
        self.dialect = dialect

    def validate(
        self, definition: QueryTypeDefinition, filters: Sequence[Filter]
    ) -> list[Filter]:
        """Return the filters unchanged if every one of them is acceptable.

        all-or-nothing: the first bad filter fails the whole request, a partially
        applied filter set would silently return the wrong numbers.
        """
        if not filters:
            return []

        if not definition.customizable:
            raise NotCustomizableError(
                f"Query type '{definition.name}' does not accept filters"
            )

        validated = []
        for f in filters:
            if f.field not in definition.allowed_filters:
                raise UnknownFilterFieldError(
                    f"Filter on field '{f.field}' is not permitted for '{definition.name}'"
                )

            op = f.operator
            if op is None:
                raise UnsupportedOperatorError(f"Unsupported filter operator: {f.op}")

            if op in LIST_OPERATORS:
                values = f.value if isinstance(f.value, list) else [f.value]
                if not values:
                    raise EmptyInListError(
                        f"Filter '{f.field} {f.op}' needs at least one value"
                    )
                if not all(_is_scalar(v) for v in values):
                    raise InvalidFilterValueError(
                        f"Filter '{f.field} {f.op}' values must be strings or numbers"
                    )
            elif not _is_scalar(f.value):
                raise InvalidFilterValueError(
                    f"Filter '{f.field} {f.op}' needs a single string or number"
                )

            validated.append(f)
        return validated

    def build_fragments(
        self,
        definition: QueryTypeDefinition,
        filters: Sequence[Filter],
        table_columns: Collection[str] = (),
    ) -> list[Fragment]:
        """Lower validated filters to predicate fragments, in filter order.

        table_columns are the columns the table declares, if it declares any.
        """
        fragments = []
        for f in filters:
            # identifier taken from the allow-list, never from the request
            column = next(name for name in definition.allowed_filters if name == f.field)
            if (
                column == DEVICE_TYPE_FIELD
                and RESOLUTION_COLUMN in table_columns
                and f.operator in DEVICE_OPERATORS
            ):
                fragments.append(self._lower_device_type(f.operator, f.value))
            else:
                fragments.append(self._lower(column, f.operator, f.value))
        return fragments

    def _lower_device_type(self, op: FilterOp, value: Any) -> Fragment:
        values = value if isinstance(value, list) else [value]
        unknown = [v for v in values if v not in DEVICE_TYPES]
        if unknown:
            raise InvalidFilterValueError(
                f"Unknown device type {unknown[0]!r}, use one of: {', '.join(DEVICE_TYPES)}"
            )

        width, height = self.dialect.resolution_dims()
        # dict.fromkeys drops repeats but keeps the caller's order
        conditions = [device_type_condition(v, width, height) for v in dict.fromkeys(values)]
        matched = conditions[0] if len(conditions) == 1 else f"({' OR '.join(conditions)})"
        if op in (FilterOp.NE, FilterOp.NOT_IN):
            return Fragment.trusted(f"NOT {matched}")
        return Fragment.trusted(matched)

    def _lower(self, column: str, op: FilterOp, value: Any) -> Fragment:
        lhs = column
        if column == PATH_FIELD:
            lhs = self.dialect.path_expr()
        elif column == REFERRER_FIELD:
            lhs = self.dialect.referrer_expr()

        sql_op = OPERATOR_SQL[op]

        if op in LIST_OPERATORS:
            values = value if isinstance(value, list) else [value]
            if column == REFERRER_FIELD:
                values = [normalize_referrer(str(v)) for v in values]
            parts: list[TrustedSQL | Bound] = [TrustedSQL(f"{lhs} {sql_op} (")]
            for i, v in enumerate(values):
                if i:
                    parts.append(TrustedSQL(", "))
                parts.append(Bound(v))
            parts.append(TrustedSQL(")"))
            return Fragment.of(*parts)

        if op == FilterOp.LIKE:
            term = str(value)
            if column == REFERRER_FIELD:
                term = _REFERRER_SEARCH_ALIASES.get(term.lower(), term)
            return Fragment.of(
                TrustedSQL(f"{lhs} LIKE "),
                Bound(f"%{escape_like(term)}%"),
                TrustedSQL(self.dialect.like_escape),
            )

        if column == REFERRER_FIELD and op in (FilterOp.EQ, FilterOp.NE):
            value = normalize_referrer(str(value))

        return Fragment.of(TrustedSQL(f"{lhs} {sql_op} "), Bound(value))
