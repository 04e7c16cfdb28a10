"""Analytics event ingestion and tenant-scoped search."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from starlette.responses import JSONResponse

from tenant_gate.api.pipeline import PRESETS, RequestPipeline, RequestState
from tenant_gate.api.schemas import (
    EventCreateRequest,
    EventResponse,
    SearchHit,
    SearchResponse,
)
from tenant_gate.errors import InvalidRequest

MAX_QUERY_LENGTH = 200


async def record_event(state: RequestState) -> JSONResponse:
    """Store an analytics event for the current tenant and user."""
    body = await state.parse_body(EventCreateRequest)
    event = await state.scoped.events.create(
        {
            "type": body.type,
            "resource_type": body.resource_type,
            "resource_id": body.resource_id,
            "data": body.data,
            "user_agent": state.request.headers.get("user-agent"),
        }
    )
    return JSONResponse(
        status_code=201, content=jsonable_encoder(EventResponse.model_validate(event))
    )


async def search(state: RequestState) -> SearchResponse:
    """Search project names and document titles within the current tenant."""
    query = (state.request.query_params.get("q") or "").strip()
    if not query or len(query) > MAX_QUERY_LENGTH:
        raise InvalidRequest(f"Query parameter q must be 1-{MAX_QUERY_LENGTH} characters")
    limit = state.query_int("limit", 20, minimum=1, maximum=50)

    data = state.scoped
    projects = await data.projects.search(query, ["name", "slug"], limit=limit)
    documents = await data.documents.search(query, ["title", "slug"], limit=limit)
    hits = [
        SearchHit(kind="project", id=p.id, title=p.name, slug=p.slug) for p in projects
    ] + [
        SearchHit(kind="document", id=d.id, title=d.title, slug=d.slug)
        for d in documents
    ]
    return SearchResponse(query=query, items=hits[:limit], count=len(hits[:limit]))


def build_router(pipeline: RequestPipeline) -> APIRouter:
    router = APIRouter(tags=["events"])
    pipeline.route(
        router,
        "/events",
        record_event,
        methods=["POST"],
        options=PRESETS["analytics"],
        status_code=201,
    )
    pipeline.route(router, "/search", search, methods=["GET"], options=PRESETS["search"])
    return router
