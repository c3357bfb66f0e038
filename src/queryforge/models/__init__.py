"""Pydantic models for queryforge."""

from queryforge.models.definition import (
    FilterOp,
    QueryTypeDefinition,
    TimeUnit,
    split_alias,
)
from queryforge.models.query import (
    BatchQueryRequest,
    BatchResult,
    CompiledQuery,
    DateRange,
    Filter,
    ParameterResult,
    QueryRequest,
    QueryResult,
)

__all__ = [
    "BatchQueryRequest",
    "BatchResult",
    "CompiledQuery",
    "DateRange",
    "Filter",
    "FilterOp",
    "ParameterResult",
    "QueryRequest",
    "QueryResult",
    "QueryTypeDefinition",
    "TimeUnit",
    "split_alias",
]
