"""Query endpoints."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from queryforge.api.schemas import BatchQueryBody, SingleQueryBody, parse_payload
from queryforge.errors import QueryValidationError
from queryforge.models.query import BatchQueryRequest, QueryRequest
from queryforge.shaping import to_json_value
from queryforge.store import QueryStore
from queryforge.timezones import resolve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/query", tags=["query"])


def get_store(request: Request) -> QueryStore:
    return request.app.state.store


StoreDep = Annotated[QueryStore, Depends(get_store)]


def _website_id(body_value: str | None, query_value: str | None) -> str:
    website_id = query_value or body_value
    if not website_id:
        raise QueryValidationError("website_id is required")
    return website_id


def _single_request(
    store: QueryStore, body: SingleQueryBody, request: Request, website_id: str | None, timezone: str | None
) -> QueryRequest:
    tz = resolve(request.headers, explicit=timezone or body.timezone)
    return store.build_request(
        type=body.type,
        website_id=_website_id(body.website_id, website_id),
        start_date=body.start_date,
        end_date=body.end_date,
        timezone=tz.timezone,
        filters=body.filters,
        group_by=body.group_by,
        order_by=body.order_by,
        time_unit=body.time_unit,
        limit=body.limit,
        offset=body.offset,
    )


async def _run_batch(
    store: QueryStore, body: BatchQueryBody, request: Request, website_id: str | None, timezone: str | None
) -> dict:
    tz = resolve(request.headers, explicit=timezone or body.timezone)
    batch = BatchQueryRequest(
        id=body.id,
        parameters=tuple(body.parameters),
        website_id=_website_id(body.website_id, website_id),
        start_date=body.start_date,
        end_date=body.end_date,
        timezone=tz.timezone,
        granularity=body.granularity,
        filters=tuple(body.filters),
        limit=body.limit,
        page=body.page,
    )
    result = await store.run_batch(batch, timezone=tz.timezone)
    return result.model_dump(by_alias=True)


@router.get("/types")
async def list_query_types(store: StoreDep):
    """Every query type with its allowed filters, for building filter pickers."""
    return {"success": True, "types": store.list_types()}


@router.post("/compile")
async def compile_query(
    store: StoreDep,
    request: Request,
    body: SingleQueryBody,
    website_id: str | None = Query(None),
    timezone: str | None = Query(None),
):
    """Compile without executing. Handy for debugging a dashboard panel."""
    query_request = _single_request(store, body, request, website_id, timezone)
    domain = await store.website_domain(query_request.type, query_request.website_id)
    compiled = store.compile(query_request, website_domain=domain)
    return {
        "success": True,
        "data": {
            "queryType": compiled.query_type,
            "sql": compiled.sql,
            "params": [to_json_value(p) for p in compiled.params],
        },
    }


@router.post("")
async def run_query(
    store: StoreDep,
    request: Request,
    payload: Any = Body(...),
    website_id: str | None = Query(None),
    timezone: str | None = Query(None),
):
    try:
        body = parse_payload(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e

    if isinstance(body, list):
        results = [await _run_batch(store, b, request, website_id, timezone) for b in body]
        return {"success": True, "batch": True, "results": results}

    if isinstance(body, BatchQueryBody):
        return {"success": True, **await _run_batch(store, body, request, website_id, timezone)}

    query_request = _single_request(store, body, request, website_id, timezone)
    result = await store.query(query_request)
    return {
        "success": True,
        "data": result.data,
        "meta": {
            "type": query_request.type,
            "row_count": result.row_count,
            "execution_time_ms": result.execution_time_ms,
            "filters_applied": len(query_request.filters),
            "limit": query_request.limit,
            "offset": query_request.offset,
        },
    }
