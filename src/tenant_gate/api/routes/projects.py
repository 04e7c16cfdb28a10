"""Project and document endpoints, all served through ``ScopedDataAccess``."""

from __future__ import annotations

from dataclasses import replace

import structlog
from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from starlette.responses import JSONResponse, Response

from tenant_gate.api.pipeline import PRESETS, RequestPipeline, RequestState
from tenant_gate.api.schemas import (
    DocumentCreateRequest,
    DocumentListResponse,
    DocumentResponse,
    ProjectCreateRequest,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdateRequest,
)
from tenant_gate.auth.roles import Permission, Role
from tenant_gate.errors import InsufficientPermission, InvalidRequest, ResourceNotFound
from tenant_gate.storage.repositories import slugify

logger = structlog.get_logger()

MANAGE_PROJECTS = replace(PRESETS["tenant_api"], permission=Permission.MANAGE_PROJECTS)


def _created(model: object) -> JSONResponse:
    return JSONResponse(status_code=201, content=jsonable_encoder(model))


# --- Projects ---


async def list_projects(state: RequestState) -> ProjectListResponse:
    """List active projects of the current tenant, newest first."""
    limit = state.query_int("limit", 20, minimum=1, maximum=100)
    offset = state.query_int("offset", 0)
    projects = state.scoped.projects
    items = await projects.find_many(limit=limit, offset=offset)
    return ProjectListResponse(
        items=[ProjectResponse.model_validate(p) for p in items],
        total=await projects.count(),
        limit=limit,
        offset=offset,
    )


async def create_project(state: RequestState) -> JSONResponse:
    body = await state.parse_body(ProjectCreateRequest)
    slug = body.slug or slugify(body.name)
    projects = state.scoped.projects
    if await projects.count({"slug": slug}, include_inactive=True):
        raise InvalidRequest(f"Project slug already in use: {slug}")
    project = await projects.create(
        {
            "name": body.name,
            "slug": slug,
            "description": body.description,
            "is_public": body.is_public,
        }
    )
    logger.info("project_created", project_id=str(project.id), slug=slug)
    return _created(ProjectResponse.model_validate(project))


async def get_project(state: RequestState) -> ProjectResponse:
    project = await state.scoped.projects.find_one(state.path_uuid("project_id"))
    if project is None:
        raise ResourceNotFound("Project not found")
    return ProjectResponse.model_validate(project)


async def update_project(state: RequestState) -> ProjectResponse:
    body = await state.parse_body(ProjectUpdateRequest)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise InvalidRequest("No fields to update")
    project = await state.scoped.projects.update(state.path_uuid("project_id"), changes)
    return ProjectResponse.model_validate(project)


async def delete_project(state: RequestState) -> Response:
    await state.scoped.projects.delete(state.path_uuid("project_id"))
    return Response(status_code=204)


# --- Documents ---


async def list_documents(state: RequestState) -> DocumentListResponse:
    project_id = state.path_uuid("project_id")
    data = state.scoped
    if not await data.validate_resource_access("projects", project_id):
        raise ResourceNotFound("Project not found")
    where = {"project_id": project_id}
    items = await data.documents.find_many(where, limit=100)
    return DocumentListResponse(
        items=[DocumentResponse.model_validate(d) for d in items],
        total=await data.documents.count(where),
    )


async def create_document(state: RequestState) -> JSONResponse:
    """Create a document in a project. Requires the editor role or above."""
    if not state.context.role.at_least(Role.EDITOR):
        raise InsufficientPermission("create documents")
    project_id = state.path_uuid("project_id")
    body = await state.parse_body(DocumentCreateRequest)
    data = state.scoped
    if not await data.validate_resource_access("projects", project_id):
        raise ResourceNotFound("Project not found")
    document = await data.documents.create(
        {
            "project_id": project_id,
            "title": body.title,
            "slug": body.slug or slugify(body.title),
            "content": body.content,
            "is_published": body.is_published,
        }
    )
    return _created(DocumentResponse.model_validate(document))


async def get_document(state: RequestState) -> DocumentResponse:
    document = await state.scoped.documents.find_one(state.path_uuid("document_id"))
    if document is None:
        raise ResourceNotFound("Document not found")
    return DocumentResponse.model_validate(document)


def build_router(pipeline: RequestPipeline) -> APIRouter:
    router = APIRouter(tags=["projects"])
    tenant_api = PRESETS["tenant_api"]
    pipeline.route(router, "/projects", list_projects, methods=["GET"], options=tenant_api)
    pipeline.route(
        router,
        "/projects",
        create_project,
        methods=["POST"],
        options=MANAGE_PROJECTS,
        status_code=201,
    )
    pipeline.route(
        router, "/projects/{project_id}", get_project, methods=["GET"], options=tenant_api
    )
    pipeline.route(
        router,
        "/projects/{project_id}",
        update_project,
        methods=["PATCH"],
        options=MANAGE_PROJECTS,
    )
    pipeline.route(
        router,
        "/projects/{project_id}",
        delete_project,
        methods=["DELETE"],
        options=MANAGE_PROJECTS,
        status_code=204,
    )
    pipeline.route(
        router,
        "/projects/{project_id}/documents",
        list_documents,
        methods=["GET"],
        options=tenant_api,
    )
    pipeline.route(
        router,
        "/projects/{project_id}/documents",
        create_document,
        methods=["POST"],
        options=tenant_api,
        status_code=201,
    )
    pipeline.route(
        router,
        "/documents/{document_id}",
        get_document,
        methods=["GET"],
        options=tenant_api,
    )
    return router
