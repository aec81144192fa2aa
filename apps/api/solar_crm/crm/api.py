from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from solar_crm.context import get_correlation_id
from solar_crm.core.auth import AuthUser, get_current_user as get_auth_user
from solar_crm.core.config import get_settings
from solar_crm.core.context import get_request_context
from solar_crm.core.database import get_db
from solar_crm.core.rbac import Actor, Role, resolve_role
from solar_crm.crm.documents import document_service
from solar_crm.crm.models import User, UserStatus
from solar_crm.crm.schemas import (
    ActivityPage,
    DocumentCreate,
    DocumentRead,
    DocumentStatusUpdate,
    LeadCreate,
    LeadCreateResult,
    LeadRead,
    LeadStatusUpdate,
    UserCreate,
    UserRead,
    UserStatusUpdate,
)
from solar_crm.crm.service import lead_service, user_service
from solar_crm.services.activity import activity_recorder
from solar_crm.timeline.errors import TimelineError


leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
documents_router = APIRouter(prefix="/api", tags=["crm.documents"])
users_router = APIRouter(prefix="/api/users", tags=["crm.users"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def timeline_error_response(request: Request, exc: TimelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_actor(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> Actor:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None)
    role = resolve_role(auth_user.roles)

    profile = db.get(User, auth_user.sub)
    if profile is not None:
        if profile.status == UserStatus.DISABLED.value:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user account is disabled")
        role = Role(profile.role)

    if role is None:
        if auth_user.sub == "anonymous":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="no CRM role assigned")

    if context is not None:
        context.user_id = auth_user.sub
        context.role = role.value
    return Actor(user_id=auth_user.sub, role=role, correlation_id=correlation_id)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.create_user(db, actor, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "user_create_failed")


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    role: Role | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, actor, role=role)
    except HTTPException as exc:
        return http_error_response(request, exc, "user_list_failed")


@users_router.patch("/{user_id}/status", response_model=UserRead)
def set_user_status(
    request: Request,
    user_id: str,
    dto: UserStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.set_status(db, actor, user_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "user_status_update_failed")


@leads_router.post("", response_model=LeadCreateResult, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadCreateResult | JSONResponse:
    try:
        return lead_service.create_lead(db, actor, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_create_failed")


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(db, actor, status_filter=status_filter)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_list_failed")


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, actor, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_get_failed")


@leads_router.patch("/{lead_id}/status", response_model=LeadRead)
def update_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_status(db, actor, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_status_update_failed")


@leads_router.get("/{lead_id}/activity", response_model=ActivityPage)
def list_lead_activity(
    request: Request,
    lead_id: uuid.UUID,
    user_id: str | None = Query(default=None, alias="userId"),
    action_type: str | None = Query(default=None, alias="actionType"),
    date_from: datetime | None = Query(default=None, alias="dateFrom"),
    date_to: datetime | None = Query(default=None, alias="dateTo"),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> ActivityPage | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return activity_recorder.list_for_lead(
            db,
            actor,
            lead_id,
            actor_id=user_id,
            action=action_type,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit or get_settings().activity_page_size,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_activity_list_failed")


@documents_router.post(
    "/leads/{lead_id}/documents",
    response_model=DocumentRead,
    status_code=status.HTTP_201_CREATED,
)
def register_document(
    request: Request,
    lead_id: uuid.UUID,
    dto: DocumentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> DocumentRead | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return document_service.register(db, actor, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "document_create_failed")


@documents_router.get("/leads/{lead_id}/documents", response_model=list[DocumentRead])
def list_documents(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[DocumentRead] | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return document_service.list_for_lead(db, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "document_list_failed")


@documents_router.post("/documents/{document_id}/submit", response_model=DocumentRead)
def submit_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> DocumentRead | JSONResponse:
    try:
        document = document_service.get_document(db, document_id)
        lead_service.ensure_visible(db, actor, document.lead_id)
        return document_service.submit(db, actor, document_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "document_submit_failed")


@documents_router.patch("/documents/{document_id}/status", response_model=DocumentRead)
def set_document_status(
    request: Request,
    document_id: uuid.UUID,
    dto: DocumentStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> DocumentRead | JSONResponse:
    try:
        document = document_service.get_document(db, document_id)
        lead_service.ensure_visible(db, actor, document.lead_id)
        return document_service.set_status(db, actor, document_id, dto.status)
    except HTTPException as exc:
        return http_error_response(request, exc, "document_status_update_failed")
