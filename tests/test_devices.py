"""Tests for device types inferred from screen resolution."""

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from queryforge.compiler.devices import (
    DEVICE_TYPES,
    device_type_condition,
    device_type_for_resolution,
)
from queryforge.compiler.dialects import get_dialect, get_paramstyle
from queryforge.compiler.filters import FilterValidator
from queryforge.compiler.fragments import render_all
from queryforge.errors import InvalidFilterValueError
from queryforge.executor.duckdb_executor import DuckDBExecutor
from queryforge.models.query import Filter
from queryforge.parser.loader import QueryTypeRegistry
from queryforge.store import QueryStore

RESOLUTIONS = [
    "360x360",
    "390x844",
    "844x390",
    "820x1180",
    "1600x900",
    "1280x1024",
    "1366x768",
    "1920x1080",
    "2560x1600",
    "3840x2160",
    "2560x1080",
    "3440x1440",
    "5120x2880",
    "garbage",
    "",
    "0x0",
]

SCREEN_BUILDERS = """
tables:
  - name: analytics.events
    time_columns: [time]
    columns: [client_id, event_name, anonymous_id, screen_resolution, device_type]

query_types:
  - name: visitors
    table: analytics.events
    fields:
      - "COUNT(DISTINCT anonymous_id) as visitors"
    time_field: time
    allowed_filters: [device_type]
"""


@pytest.fixture
def screen_registry(tmp_path: Path) -> QueryTypeRegistry:
    (tmp_path / "screens.yaml").write_text(SCREEN_BUILDERS)
    registry = QueryTypeRegistry()
    registry.load_directory(tmp_path)
    return registry


def _lower(registry: QueryTypeRegistry, *filters: Filter):
    definition = registry.get_definition("visitors")
    validator = FilterValidator(get_dialect("duckdb"))
    validated = validator.validate(definition, filters)
    params: list = []
    sql = render_all(
        validator.build_fragments(definition, validated, registry.columns(definition.table)),
        get_paramstyle("qmark"),
        params,
        " AND ",
    )
    return sql, params


class TestDeviceTypeForResolution:
    @pytest.mark.parametrize(
        "resolution, expected",
        [
            ("360x360", "watch"),
            ("390x844", "mobile"),
            ("844x390", "mobile"),
            ("820x1180", "tablet"),
            ("1280x1024", "laptop"),
            ("1366x768", "laptop"),
            ("2560x1600", "desktop"),
            ("2560x1080", "ultrawide"),
            ("5120x2880", "unknown"),
            ("garbage", "unknown"),
            ("0x0", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_classification(self, resolution, expected):
        assert device_type_for_resolution(resolution) == expected

    def test_known_sizes_win(self):
        """1366x768 would be a tablet by the rules, the known-size table says laptop."""
        assert device_type_for_resolution("1366x768") == "laptop"
        assert device_type_for_resolution("3840x2160") == "desktop"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="toaster"):
            device_type_condition("toaster", "w", "h")


class TestDeviceTypeSQL:
    def test_sql_agrees_with_python(self):
        """Every resolution lands in the same single type in sql as in python."""
        executor = DuckDBExecutor()
        try:
            executor.create_table_from_data(
                "screens",
                ["screen_resolution VARCHAR"],
                [(r,) for r in RESOLUTIONS] + [(None,)],
            )
            width, height = get_dialect("duckdb").resolution_dims()
            for device_type in DEVICE_TYPES:
                condition = device_type_condition(device_type, width, height)
                rows = executor.execute_raw(f"SELECT screen_resolution FROM screens WHERE {condition}")
                expected = {r for r in RESOLUTIONS if device_type_for_resolution(r) == device_type}
                assert {row[0] for row in rows} == expected, device_type
        finally:
            asyncio.run(executor.close())


class TestDeviceTypeFilter:
    def test_eq_uses_resolution(self, screen_registry: QueryTypeRegistry):
        sql, params = _lower(screen_registry, Filter(field="device_type", op="eq", value="mobile"))

        assert sql.startswith("(screen_resolution IN ('896x414'")
        assert "device_type" not in sql
        assert params == []

    def test_ne_negates(self, screen_registry: QueryTypeRegistry):
        sql, _ = _lower(screen_registry, Filter(field="device_type", op="ne", value="tablet"))
        assert sql.startswith("NOT (screen_resolution IN ('1366x1024'")

    def test_in_ors_types(self, screen_registry: QueryTypeRegistry):
        sql, _ = _lower(
            screen_registry, Filter(field="device_type", op="in", value=["watch", "mobile"])
        )
        watch = device_type_condition("watch", *get_dialect("duckdb").resolution_dims())
        assert sql.startswith(f"({watch} OR (screen_resolution IN ('896x414'")

    def test_unknown_device_type(self, screen_registry: QueryTypeRegistry):
        with pytest.raises(InvalidFilterValueError, match="toaster"):
            _lower(screen_registry, Filter(field="device_type", op="eq", value="toaster"))

    def test_other_operators_use_column(self, screen_registry: QueryTypeRegistry):
        sql, params = _lower(screen_registry, Filter(field="device_type", op="like", value="mob"))
        assert sql.startswith("device_type LIKE ?")
        assert params == ["%mob%"]

    def test_tables_without_resolution_use_column(self, registry: QueryTypeRegistry):
        definition = registry.get_definition("summary_metrics")
        validator = FilterValidator(get_dialect("duckdb"))
        fragments = validator.build_fragments(
            definition, [Filter(field="device_type", op="eq", value="toaster")]
        )
        params: list = []
        assert render_all(fragments, get_paramstyle("qmark"), params, " AND ") == "device_type = ?"
        assert params == ["toaster"]

    def test_filtered_query(self, screen_registry: QueryTypeRegistry):
        """The tracker's own device_type column is ignored in favour of the screen."""
        executor = DuckDBExecutor()
        executor.create_table_from_data(
            "analytics.events",
            [
                "client_id VARCHAR",
                "time TIMESTAMP",
                "event_name VARCHAR",
                "anonymous_id VARCHAR",
                "screen_resolution VARCHAR",
                "device_type VARCHAR",
            ],
            [
                ("w1", datetime(2024, 6, 1, 9), "screen_view", "a1", "390x844", "desktop"),
                ("w1", datetime(2024, 6, 1, 9), "screen_view", "a2", "844x390", "mobile"),
                ("w1", datetime(2024, 6, 1, 9), "screen_view", "a3", "1920x1080", "mobile"),
            ],
        )
        store = QueryStore(screen_registry, executor)
        request = store.build_request(
            type="visitors",
            website_id="w1",
            start_date="2024-06-01",
            end_date="2024-06-01",
            filters=[{"field": "device_type", "op": "eq", "value": "mobile"}],
        )
        try:
            result = asyncio.run(store.query(request))
        finally:
            asyncio.run(store.close())

        assert result.data == [{"visitors": 2}]
