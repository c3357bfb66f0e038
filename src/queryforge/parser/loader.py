"""YAML loader and query-type registry for queryforge.

query types are data, not code: each domain (summary, pages, traffic, ...)
keeps its definitions in its own yaml file, and the registry merges them into
one namespace at startup. adding a query type never touches the compiler.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from queryforge.errors import QueryTypeNotFoundError
from queryforge.models.definition import QueryTypeDefinition
from queryforge.shaping import POSTPROCESSORS

logger = logging.getLogger(__name__)

BUILTIN_BUILDERS_PATH = Path(__file__).resolve().parent.parent / "builders"

# file holding the table catalog rather than query types
TABLES_FILE = "_tables.yaml"


class QueryTypeRegistry:
    """Every query type the service can compile, keyed by name.

    load once, then only read. nothing mutates the registry after load so it
    is safe to share between concurrent requests.
    """

    def __init__(self) -> None:
        self.definitions: dict[str, QueryTypeDefinition] = {}
        # table name -> its timestamp columns
        self.tables: dict[str, set[str]] = {}
        # table name -> every column, for tables whose catalog entry lists them
        self.table_columns: dict[str, set[str]] = {}
        # query type -> the partition file it came from, for error messages
        self._sources: dict[str, str] = {}

    @classmethod
    def load_builtin(cls) -> "QueryTypeRegistry":
        """Registry with the query types shipped in the package."""
        registry = cls()
        registry.load_directory(BUILTIN_BUILDERS_PATH)
        return registry

    def load_directory(self, path: Path) -> None:
        """Load every yaml partition in a directory.

        the table catalog goes first since definitions are checked against it.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Builders directory not found: {path}")

        yaml_files = sorted(path.glob("*.yaml")) + sorted(path.glob("*.yml"))
        if not yaml_files:
            raise ValueError(f"No YAML files found in {path}")

        yaml_files.sort(key=lambda p: p.name != TABLES_FILE)
        for yaml_file in yaml_files:
            self._load_file(yaml_file)

        self._validate_references()
        logger.info("Loaded %d query types from %s", len(self.definitions), path)

    def _load_file(self, path: Path) -> None:
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return

        for table in data.get("tables", []):
            time_columns = set(table.get("time_columns", []))
            self.tables.setdefault(table["name"], set()).update(time_columns)
            if "columns" in table:
                # timestamp columns are columns too
                columns = set(table["columns"]) | time_columns
                self.table_columns.setdefault(table["name"], set()).update(columns)

        for qt_data in data.get("query_types", []):
            self.register(self._parse_definition(qt_data), source=path.name)

    def _parse_definition(self, data: dict[str, Any]) -> QueryTypeDefinition:
        return QueryTypeDefinition.model_validate(data)

    def register(self, definition: QueryTypeDefinition, source: str = "<code>") -> None:
        """Add a definition, refusing duplicates across partitions."""
        if definition.name in self.definitions:
            raise ValueError(
                f"Duplicate query type '{definition.name}' in '{source}', "
                f"already defined in '{self._sources[definition.name]}'"
            )
        self.definitions[definition.name] = definition
        self._sources[definition.name] = source

    def _validate_references(self) -> None:
        """Check every definition against the table catalog.

        time_field must be a timestamp column of its table. where the table
        lists its columns, the scope and filter columns must be among them,
        and session attribution needs that list to rebuild the rows.
        """
        for name, definition in self.definitions.items():
            if definition.table not in self.tables:
                raise ValueError(
                    f"Query type '{name}' reads unknown table '{definition.table}'"
                )
            if definition.time_field not in self.tables[definition.table]:
                raise ValueError(
                    f"Query type '{name}' uses '{definition.time_field}' as time field, "
                    f"which is not a timestamp column of '{definition.table}'"
                )
            self._validate_columns(name, definition)
            if definition.postprocess is not None and definition.postprocess not in POSTPROCESSORS:
                raise ValueError(
                    f"Query type '{name}' uses unknown postprocess '{definition.postprocess}', "
                    f"use one of: {', '.join(sorted(POSTPROCESSORS))}"
                )

    def _validate_columns(self, name: str, definition: QueryTypeDefinition) -> None:
        columns = self.table_columns.get(definition.table)
        if columns is None:
            if definition.session_attribution:
                raise ValueError(
                    f"Query type '{name}' uses session attribution but table "
                    f"'{definition.table}' does not list its columns"
                )
            return

        unknown = sorted((definition.allowed_filters | {definition.scope_field}) - columns)
        if unknown:
            raise ValueError(
                f"Query type '{name}' refers to {', '.join(unknown)}, "
                f"not columns of '{definition.table}'"
            )
        if definition.session_attribution and "session_id" not in columns:
            raise ValueError(
                f"Query type '{name}' uses session attribution but "
                f"'{definition.table}' has no session_id column"
            )

    # --- lookup methods ---

    def get_definition(self, name: str) -> QueryTypeDefinition:
        if name not in self.definitions:
            raise QueryTypeNotFoundError(name)
        return self.definitions[name]

    def columns(self, table: str) -> frozenset[str]:
        """Declared columns of a table, empty when its catalog entry doesn't list them."""
        return frozenset(self.table_columns.get(table, ()))

    def names(self) -> list[str]:
        return list(self.definitions)

    def describe(self) -> dict[str, dict]:
        """What the UI needs to build filter pickers.

        the shape of this dict is part of the public api, change with care.
        """
        return {
            name: {
                "allowedFilters": sorted(d.allowed_filters),
                "customizable": d.customizable,
                "defaultLimit": d.limit,
            }
            for name, d in self.definitions.items()
        }

    def __contains__(self, name: object) -> bool:
        return name in self.definitions

    def __len__(self) -> int:
        return len(self.definitions)
