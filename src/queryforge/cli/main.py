"""CLI for queryforge."""

import asyncio
import json
from typing import Annotated

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from queryforge.compiler.sql_builder import format_sql
from queryforge.config import Settings, configure_logging
from queryforge.errors import QueryError
from queryforge.models.definition import FilterOp
from queryforge.models.query import Filter, QueryRequest, QueryResult
from queryforge.store import QueryStore

app = typer.Typer(
    name="qf",
    help="queryforge - analytics query compiler CLI",
    no_args_is_help=True,
)
console = Console()

BuildersOption = Annotated[
    str | None, typer.Option("--builders", "-b", help="Directory of query type YAML files")
]
WebsiteOption = Annotated[str, typer.Option("--website", "-w", help="Website id")]
FromOption = Annotated[str, typer.Option("--from", help="Start date (YYYY-MM-DD), local to --tz")]
ToOption = Annotated[str, typer.Option("--to", help="End date (YYYY-MM-DD), local to --tz")]
TimezoneOption = Annotated[str, typer.Option("--tz", help="IANA timezone of the dates")]
FilterOption = Annotated[
    list[str] | None,
    typer.Option("--filter", "-f", help="field:op:value, e.g. country:in:US,DE (repeatable)"),
]
GroupByOption = Annotated[
    str | None, typer.Option("--group-by", "-g", help="Comma-separated grouping columns")
]
OrderByOption = Annotated[str | None, typer.Option("--order-by", help="'<column> ASC|DESC'")]
UnitOption = Annotated[
    str | None, typer.Option("--unit", "-t", help="Time unit: minute, hour, day, week, month")
]
LimitOption = Annotated[int | None, typer.Option("--limit", "-l", help="Maximum rows")]
OffsetOption = Annotated[int | None, typer.Option("--offset", help="Rows to skip")]


def get_store(settings: Settings) -> QueryStore:
    return QueryStore.from_settings(settings)


def _settings(
    store: str = "duckdb", builders: str | None = None, db_path: str | None = None
) -> Settings:
    overrides: dict = {"STORE": store}
    if builders:
        overrides["BUILDERS_PATH"] = builders
    if db_path:
        overrides["DUCKDB_PATH"] = db_path
    return Settings(**overrides)


def _load_store(settings: Settings) -> QueryStore:
    try:
        return get_store(settings)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading query types: {e}[/red]")
        raise typer.Exit(1)


def _close(store: QueryStore) -> None:
    asyncio.run(store.close())


def _print_error(e: Exception) -> None:
    if isinstance(e, QueryError):
        console.print(f"[red]{e.code}: {e.message}[/red]")
    else:
        console.print(f"[red]Invalid request: {e}[/red]")


def parse_filter(raw: str) -> Filter:
    """Parse `field:op:value`. in/notIn split the value on commas."""
    parts = raw.split(":", 2)
    if len(parts) != 3:
        raise typer.BadParameter(f"Filter must look like field:op:value, got '{raw}'")
    field, op, value = parts

    if op in (FilterOp.IN.value, FilterOp.NOT_IN.value):
        return Filter(field=field, op=op, value=[v.strip() for v in value.split(",") if v.strip()])
    if op in (FilterOp.GT.value, FilterOp.LT.value):
        return Filter(field=field, op=op, value=_number(value))
    return Filter(field=field, op=op, value=value)


def _number(value: str) -> int | float | str:
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def _build_request(
    store: QueryStore,
    query_type: str,
    website: str,
    start: str,
    end: str,
    tz: str,
    filters: list[str] | None,
    group_by: str | None,
    order_by: str | None,
    unit: str | None,
    limit: int | None,
    offset: int | None,
) -> QueryRequest:
    return store.build_request(
        type=query_type,
        website_id=website,
        start_date=start,
        end_date=end,
        timezone=tz,
        filters=[parse_filter(f) for f in filters or []],
        group_by=[g.strip() for g in group_by.split(",")] if group_by else None,
        order_by=order_by,
        time_unit=unit,
        limit=limit,
        offset=offset,
    )


@app.command("types")
def list_types(builders: BuildersOption = None) -> None:
    """List registered query types."""
    store = _load_store(_settings(builders=builders))
    types = store.list_types()
    _close(store)

    if not types:
        console.print("[yellow]No query types defined[/yellow]")
        return

    table = Table(title=f"Query Types ({len(types)})")
    table.add_column("Name", style="cyan")
    table.add_column("Customizable", style="green")
    table.add_column("Default limit", style="yellow")
    table.add_column("Allowed filters")

    for name, info in sorted(types.items()):
        table.add_row(
            name,
            "yes" if info["customizable"] else "no",
            str(info["defaultLimit"] or "-"),
            ", ".join(info["allowedFilters"]) or "-",
        )

    console.print(table)


@app.command("show-sql")
def show_sql(
    query_type: Annotated[str, typer.Argument(help="Query type name")],
    website: WebsiteOption,
    start: FromOption,
    end: ToOption,
    tz: TimezoneOption = "UTC",
    filters: FilterOption = None,
    group_by: GroupByOption = None,
    order_by: OrderByOption = None,
    unit: UnitOption = None,
    limit: LimitOption = None,
    offset: OffsetOption = None,
    dialect: Annotated[
        str, typer.Option("--dialect", help="clickhouse or duckdb")
    ] = "clickhouse",
    builders: BuildersOption = None,
) -> None:
    """Show compiled SQL and its bound parameters without executing."""
    store = _load_store(_settings(store=dialect, builders=builders))
    try:
        request = _build_request(
            store, query_type, website, start, end, tz, filters, group_by, order_by, unit, limit, offset
        )
        compiled = store.compile(request)
    except (QueryError, ValueError) as e:
        _print_error(e)
        raise typer.Exit(1)
    finally:
        _close(store)

    sql = format_sql(compiled.sql, dialect)
    console.print(Syntax(sql, "sql", theme="monokai", line_numbers=True))
    console.print()

    table = Table(title="Parameters")
    table.add_column("#", style="cyan")
    table.add_column("Value")
    for index, value in enumerate(compiled.params):
        table.add_row(str(index), repr(value))
    console.print(table)


@app.command()
def query(
    query_type: Annotated[str, typer.Argument(help="Query type name")],
    website: WebsiteOption,
    start: FromOption,
    end: ToOption,
    db_path: Annotated[str | None, typer.Option("--db", help="DuckDB database path")] = None,
    tz: TimezoneOption = "UTC",
    filters: FilterOption = None,
    group_by: GroupByOption = None,
    order_by: OrderByOption = None,
    unit: UnitOption = None,
    limit: LimitOption = None,
    offset: OffsetOption = None,
    builders: BuildersOption = None,
    show_sql: Annotated[bool, typer.Option("--sql", "-s", help="Show generated SQL")] = False,
    output: Annotated[
        str, typer.Option("--output", "-o", help="Output format: table, json, csv")
    ] = "table",
) -> None:
    """Run a query type against a DuckDB database."""
    store = _load_store(_settings(builders=builders, db_path=db_path))

    try:
        request = _build_request(
            store, query_type, website, start, end, tz, filters, group_by, order_by, unit, limit, offset
        )
        if show_sql:
            console.print(Syntax(format_sql(store.get_sql(request), "duckdb"), "sql", theme="monokai"))
            console.print()
        result = asyncio.run(store.query(request))
    except (QueryError, ValueError) as e:
        _print_error(e)
        raise typer.Exit(1)
    finally:
        _close(store)

    _output_result(result, output)


def _output_result(result: QueryResult, output_format: str) -> None:
    """Output query result in the specified format."""
    if output_format == "json":
        console.print(json.dumps(result.data, indent=2, default=str))
    elif output_format == "csv":
        if result.data:
            console.print(",".join(result.columns))
            for row in result.data:
                values = [str(row.get(c, "")) for c in result.columns]
                console.print(",".join(values))
    else:
        table = Table(
            title=f"Query Results ({result.row_count} rows, {result.execution_time_ms}ms)"
        )
        for col in result.columns:
            table.add_column(col)

        for row in result.data:
            values = [str(row.get(c, "")) for c in result.columns]
            table.add_row(*values)

        console.print(table)


@app.command()
def validate(
    dialect: Annotated[
        str, typer.Option("--dialect", help="clickhouse or duckdb")
    ] = "clickhouse",
    builders: BuildersOption = None,
) -> None:
    """Compile every query type and syntax-check the SQL."""
    store = _load_store(_settings(store=dialect, builders=builders))
    errors = store.validate()
    _close(store)

    if errors:
        console.print("[red]Validation failed:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    else:
        console.print(
            f"[green]Validated {len(store.registry)} query types for {dialect} successfully![/green]"
        )


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port")] = 8000,
) -> None:
    """Serve the query API with uvicorn. Store and timeouts come from the environment."""
    import uvicorn

    from queryforge.api.app import create_app

    settings = Settings()
    configure_logging(settings.LOG_LEVEL)
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    app()
