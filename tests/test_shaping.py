"""Tests for result shaping and gap filling."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from queryforge.models.definition import QueryTypeDefinition, TimeUnit
from queryforge.models.query import CompiledQuery, QueryResult
from queryforge.shaping import (
    fill_gaps,
    normalize_language,
    process_countries,
    process_pages,
    process_referrers,
    referrer_host,
    shape_result,
    to_json_value,
    with_percentage,
)
from queryforge.timezones import build_date_range

TREND = QueryTypeDefinition(
    name="trend",
    table="analytics.events",
    fields=["{bucket} as date", "COUNT(*) as pageviews"],
    group_by=["date"],
    time_field="time",
    fill_gaps=True,
)


class TestToJsonValue:
    def test_conversions(self):
        assert to_json_value(datetime(2024, 6, 1, 4, 0)) == "2024-06-01T04:00:00"
        assert to_json_value(date(2024, 6, 1)) == "2024-06-01"
        assert to_json_value(Decimal("1.50")) == 1.5
        assert to_json_value(uuid.UUID(int=1)) == "00000000-0000-0000-0000-000000000001"
        assert to_json_value("plain") == "plain"
        assert to_json_value(3) == 3


class TestFillGaps:
    def test_zero_fills_missing_days(self):
        """Days without rows come back with zero metrics, in order."""
        rows = [
            {"date": "2024-06-03T00:00:00", "pageviews": 2},
            {"date": "2024-06-01T00:00:00", "pageviews": 5},
        ]
        filled = fill_gaps(
            rows,
            ["date", "pageviews"],
            "date",
            build_date_range("2024-06-01", "2024-06-03"),
            TimeUnit.DAY,
            "UTC",
        )
        assert filled == [
            {"date": "2024-06-01T00:00:00", "pageviews": 5},
            {"date": "2024-06-02T00:00:00", "pageviews": 0},
            {"date": "2024-06-03T00:00:00", "pageviews": 2},
        ]

    def test_local_buckets(self):
        """Buckets follow the zone the store truncated in."""
        filled = fill_gaps(
            [],
            ["date", "pageviews"],
            "date",
            build_date_range("2024-06-01", "2024-06-02", "America/New_York"),
            TimeUnit.DAY,
            "America/New_York",
        )
        assert [row["date"] for row in filled] == ["2024-06-01T00:00:00", "2024-06-02T00:00:00"]

    def test_unparseable_buckets_kept(self):
        rows = [{"date": None, "pageviews": 1}]
        filled = fill_gaps(
            rows,
            ["date", "pageviews"],
            "date",
            build_date_range("2024-06-01", "2024-06-01"),
            TimeUnit.DAY,
            "UTC",
        )
        assert filled[-1] == {"date": None, "pageviews": 1}
        assert len(filled) == 2


class TestShapeResult:
    def _result(self, data: list[dict]) -> QueryResult:
        return QueryResult(
            sql="SELECT 1", columns=["date", "pageviews"], data=data, row_count=len(data),
            execution_time_ms=1.0,
        )

    def test_fills_time_series(self):
        compiled = CompiledQuery(query_type="trend", sql="SELECT 1", time_unit=TimeUnit.DAY)
        shaped = shape_result(
            TREND,
            compiled,
            self._result([{"date": datetime(2024, 6, 2), "pageviews": Decimal("3")}]),
            build_date_range("2024-06-01", "2024-06-02"),
        )
        assert shaped == [
            {"date": "2024-06-01T00:00:00", "pageviews": 0},
            {"date": "2024-06-02T00:00:00", "pageviews": 3.0},
        ]

    def test_group_by_override_skips_filling(self):
        """With extra grouping a single zero row per bucket would be wrong."""
        compiled = CompiledQuery(query_type="trend", sql="SELECT 1", time_unit=TimeUnit.DAY)
        shaped = shape_result(
            TREND,
            compiled,
            self._result([{"date": datetime(2024, 6, 2), "pageviews": 3}]),
            build_date_range("2024-06-01", "2024-06-02"),
            grouped_override=True,
        )
        assert shaped == [{"date": "2024-06-02T00:00:00", "pageviews": 3}]

    def test_pages_filled_series_after_filling(self):
        """The page the compiler kept out of the sql is cut from the filled series."""
        compiled = CompiledQuery(
            query_type="trend",
            sql="SELECT 1",
            time_unit=TimeUnit.DAY,
            page_limit=2,
            page_offset=2,
        )
        shaped = shape_result(
            TREND,
            compiled,
            self._result(
                [
                    {"date": datetime(2024, 6, 1), "pageviews": 5},
                    {"date": datetime(2024, 6, 4), "pageviews": 2},
                ]
            ),
            build_date_range("2024-06-01", "2024-06-05"),
        )
        assert shaped == [
            {"date": "2024-06-03T00:00:00", "pageviews": 0},
            {"date": "2024-06-04T00:00:00", "pageviews": 2},
        ]

    def test_offset_without_limit(self):
        compiled = CompiledQuery(
            query_type="trend", sql="SELECT 1", time_unit=TimeUnit.DAY, page_offset=1
        )
        shaped = shape_result(
            TREND, compiled, self._result([]), build_date_range("2024-06-01", "2024-06-03")
        )
        assert [row["date"] for row in shaped] == ["2024-06-02T00:00:00", "2024-06-03T00:00:00"]

    def test_postprocess_gets_domain(self):
        referrers = QueryTypeDefinition(
            name="refs",
            table="analytics.events",
            fields=["referrer as name", "COUNT(*) as visitors"],
            group_by=["referrer"],
            time_field="time",
            postprocess="referrers",
        )
        result = QueryResult(
            sql="SELECT 1",
            columns=["name", "visitors"],
            data=[
                {"name": "https://blog.mysite.com/post", "visitors": 4},
                {"name": "https://duckduckgo.com/", "visitors": 1},
            ],
            row_count=2,
            execution_time_ms=1.0,
        )
        shaped = shape_result(
            referrers,
            CompiledQuery(query_type="refs", sql="SELECT 1"),
            result,
            build_date_range("2024-06-01", "2024-06-01"),
            website_domain="mysite.com",
        )
        assert shaped == [
            {
                "name": "https://duckduckgo.com/",
                "visitors": 1,
                "domain": "duckduckgo.com",
                "percentage": 100.0,
            }
        ]


class TestPostprocessors:
    def test_percentage_of_first_metric(self):
        rows = with_percentage([{"name": "a", "visitors": 3}, {"name": "b", "visitors": 1}])
        assert [row["percentage"] for row in rows] == [75.0, 25.0]

    def test_percentage_rounded(self):
        rows = with_percentage([{"pageviews": 1}, {"pageviews": 2}])
        assert [row["percentage"] for row in rows] == [33.33, 66.67]

    def test_zero_total(self):
        rows = with_percentage([{"visitors": 0}, {"visitors": None}])
        assert [row["percentage"] for row in rows] == [0, 0]

    def test_no_metric_untouched(self):
        assert with_percentage([{"name": "a"}]) == [{"name": "a"}]

    def test_referrer_host(self):
        assert referrer_host("https://www.Google.com/search?q=x") == "google.com"
        assert referrer_host("news.ycombinator.com/item") == "news.ycombinator.com"
        assert referrer_host("") == ""
        assert referrer_host(None) == ""

    def test_referrers(self):
        """Direct gets a label; the site's own hosts and subdomains are dropped."""
        rows = process_referrers(
            [
                {"name": "", "visitors": 2},
                {"name": "https://www.mysite.com/", "visitors": 5},
                {"name": "https://app.mysite.com/login", "visitors": 1},
                {"name": "https://notmysite.com/", "visitors": 2},
            ],
            "www.mysite.com",
        )
        assert rows == [
            {"name": "direct", "visitors": 2, "domain": "direct", "percentage": 50.0},
            {
                "name": "https://notmysite.com/",
                "visitors": 2,
                "domain": "notmysite.com",
                "percentage": 50.0,
            },
        ]

    def test_referrers_without_domain(self):
        rows = process_referrers([{"name": "https://mysite.com/", "visitors": 1}], None)
        assert rows[0]["domain"] == "mysite.com"

    def test_pages(self):
        rows = process_pages([{"name": "", "pageviews": 1}, {"name": "/docs", "pageviews": 3}], None)
        assert [(row["name"], row["percentage"]) for row in rows] == [("/", 25.0), ("/docs", 75.0)]

    def test_countries(self):
        rows = process_countries([{"name": "us", "visitors": 1}, {"name": "", "visitors": 1}], None)
        assert [row["name"] for row in rows] == ["US", "Unknown"]

    def test_normalize_language(self):
        assert normalize_language("en-us") == "en-US"
        assert normalize_language("pt_BR") == "pt-BR"
        assert normalize_language("DE") == "de"
        assert normalize_language(None) == ""
