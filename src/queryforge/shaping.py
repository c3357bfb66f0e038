"""Result shaping: turn store rows into what the dashboard charts consume.

rows come back with driver types (datetime, Decimal, UUID) that json can't
carry, and time series come back with holes wherever nothing happened.

some query types also name a postprocessor that tidies their rows for
display: direct traffic gets a label, referrers get their host, and each
row gets its share of the total.
"""

import uuid
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from urllib.parse import urlsplit

from queryforge.models.definition import QueryTypeDefinition, TimeUnit
from queryforge.models.query import CompiledQuery, DateRange, QueryResult
from queryforge.timezones import bucket_starts


def to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def json_rows(rows: list[dict]) -> list[dict]:
    return [{k: to_json_value(v) for k, v in row.items()} for row in rows]


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).replace(tzinfo=None)
        except ValueError:
            return None
    return None


def fill_gaps(
    rows: list[dict],
    columns: list[str],
    bucket_column: str,
    date_range: DateRange,
    unit: TimeUnit,
    timezone: str,
) -> list[dict]:
    """Zero-fill missing buckets between the range's start and end.

    the bucket column of every row, real or filled, comes back as an iso
    string, ordered ascending. metrics of filled rows are 0.
    """
    by_bucket: dict[datetime, dict] = {}
    unparsed = []
    for row in rows:
        moment = _as_datetime(row.get(bucket_column))
        if moment is None:
            unparsed.append(row)
            continue
        by_bucket[moment] = {**row, bucket_column: moment.isoformat()}

    for moment in bucket_starts(date_range.start, date_range.end, unit, timezone):
        if moment not in by_bucket:
            filled = {col: 0 for col in columns}
            filled[bucket_column] = moment.isoformat()
            by_bucket[moment] = filled

    return [by_bucket[k] for k in sorted(by_bucket)] + unparsed


def shape_result(
    definition: QueryTypeDefinition,
    compiled: CompiledQuery,
    result: QueryResult,
    date_range: DateRange,
    grouped_override: bool = False,
    website_domain: str | None = None,
) -> list[dict]:
    """JSON-friendly rows, gap-filled where the query type asks for it.

    gap filling is skipped under a groupBy override: rows per bucket are then
    one per group value and a single zero row per bucket would be wrong.
    a gap-filled series is paged here, after filling, using the page the
    compiler kept out of the sql.
    """
    rows = json_rows(result.data)
    bucket_column = definition.bucket_alias
    if (
        definition.fill_gaps
        and not grouped_override
        and compiled.time_unit is not None
        and bucket_column is not None
    ):
        rows = fill_gaps(
            rows,
            result.columns,
            bucket_column,
            date_range,
            compiled.time_unit,
            compiled.bucket_timezone,
        )
    if compiled.page_limit is not None or compiled.page_offset:
        start = compiled.page_offset or 0
        stop = None if compiled.page_limit is None else start + compiled.page_limit
        rows = rows[start:stop]
    if definition.postprocess is not None:
        rows = POSTPROCESSORS[definition.postprocess](rows, website_domain)
    return rows


# --- postprocessors ---

# the first of these a row carries is what its percentage is a share of
SHARE_METRICS = ("visitors", "pageviews", "total_events", "sessions", "entries", "exits")

DIRECT = "direct"
UNKNOWN_COUNTRY = "Unknown"


def with_percentage(rows: list[dict]) -> list[dict]:
    """Add each row's share of the returned rows' total, in percent."""
    if not rows:
        return rows
    metric = next((m for m in SHARE_METRICS if m in rows[0]), None)
    if metric is None:
        return rows
    total = sum(row.get(metric) or 0 for row in rows)
    return [
        {**row, "percentage": round((row.get(metric) or 0) / total * 100, 2) if total else 0}
        for row in rows
    ]


def referrer_host(referrer: str | None) -> str:
    """Host of a referrer url without a leading www., '' if there is none."""
    if not referrer:
        return ""
    url = referrer if "//" in referrer else f"//{referrer}"
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return host.removeprefix("www.")


def _is_own_host(host: str, own: str) -> bool:
    return host == own or host.endswith(f".{own}")


def process_referrers(rows: list[dict], website_domain: str | None) -> list[dict]:
    """Label direct traffic, add the referrer host, drop the site's own hosts.

    the sql already excludes the own domain by substring; this catches
    subdomains and www. variants that substring match leaves behind.
    """
    own = referrer_host(website_domain) if website_domain else ""
    processed = []
    for row in rows:
        name = row.get("name") or ""
        host = referrer_host(name)
        if own and host and _is_own_host(host, own):
            continue
        processed.append({**row, "name": name or DIRECT, "domain": host or DIRECT})
    return with_percentage(processed)


def process_pages(rows: list[dict], website_domain: str | None) -> list[dict]:
    return with_percentage([{**row, "name": row.get("name") or "/"} for row in rows])


def process_countries(rows: list[dict], website_domain: str | None) -> list[dict]:
    processed = []
    for row in rows:
        code = row.get("name")
        processed.append({**row, "name": code.upper() if code else UNKNOWN_COUNTRY})
    return with_percentage(processed)


def normalize_language(code: str | None) -> str:
    """en-us and en_US both become en-US."""
    if not code:
        return ""
    language, _, region = code.replace("_", "-").partition("-")
    return f"{language.lower()}-{region.upper()}" if region else language.lower()


def process_languages(rows: list[dict], website_domain: str | None) -> list[dict]:
    return with_percentage([{**row, "name": normalize_language(row.get("name"))} for row in rows])


def process_custom_events(rows: list[dict], website_domain: str | None) -> list[dict]:
    return with_percentage(rows)


Postprocessor = Callable[[list[dict], str | None], list[dict]]

POSTPROCESSORS: dict[str, Postprocessor] = {
    "referrers": process_referrers,
    "pages": process_pages,
    "countries": process_countries,
    "languages": process_languages,
    "custom_events": process_custom_events,
}
