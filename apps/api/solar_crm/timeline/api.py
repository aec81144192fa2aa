from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from solar_crm.core.database import get_db
from solar_crm.core.rbac import Actor, Role, require_roles
from solar_crm.crm.api import get_actor, http_error_response, timeline_error_response
from solar_crm.crm.service import lead_service
from solar_crm.timeline.catalog import step_catalog_service
from solar_crm.timeline.engine import timeline_engine
from solar_crm.timeline.errors import TimelineError
from solar_crm.timeline.schemas import (
    LeadStepRead,
    LeadStepView,
    RequiredDocumentsRead,
    RequiredDocumentsUpdate,
    StepCompleteRequest,
    StepDefinitionCreate,
    StepDefinitionRead,
    StepDefinitionUpdate,
    StepMoveRequest,
    StepSkipRequest,
    TimelineInitializeResult,
    TimelineRewindRequest,
    TimelineRewindResult,
)


steps_router = APIRouter(prefix="/api/steps", tags=["timeline.steps"])
timeline_router = APIRouter(prefix="/api/leads", tags=["timeline.leads"])


@steps_router.get("", response_model=list[StepDefinitionRead])
def list_step_definitions(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[StepDefinitionRead] | JSONResponse:
    try:
        return step_catalog_service.list(db)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@steps_router.post("", response_model=StepDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_step_definition(
    request: Request,
    dto: StepDefinitionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> StepDefinitionRead | JSONResponse:
    try:
        return step_catalog_service.create(db, actor, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@steps_router.patch("/{step_id}", response_model=StepDefinitionRead)
def update_step_definition(
    request: Request,
    step_id: uuid.UUID,
    dto: StepDefinitionUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> StepDefinitionRead | JSONResponse:
    try:
        return step_catalog_service.update(db, actor, step_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@steps_router.post("/{step_id}/move", response_model=list[StepDefinitionRead])
def move_step_definition(
    request: Request,
    step_id: uuid.UUID,
    dto: StepMoveRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[StepDefinitionRead] | JSONResponse:
    try:
        return step_catalog_service.move(db, actor, step_id, dto.after_step_id)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@steps_router.get("/{step_id}/documents", response_model=RequiredDocumentsRead)
def list_required_documents(
    request: Request,
    step_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> RequiredDocumentsRead | JSONResponse:
    try:
        return step_catalog_service.list_required_documents(db, step_id)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@steps_router.put("/{step_id}/documents", response_model=RequiredDocumentsRead)
def set_required_documents(
    request: Request,
    step_id: uuid.UUID,
    dto: RequiredDocumentsUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> RequiredDocumentsRead | JSONResponse:
    try:
        return step_catalog_service.set_required_documents(db, actor, step_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@timeline_router.post("/{lead_id}/timeline/initialize", response_model=TimelineInitializeResult)
def initialize_timeline(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> TimelineInitializeResult | JSONResponse:
    try:
        require_roles(actor, Role.OFFICE)
        return timeline_engine.initialize(db, lead_id)
    except TimelineError as exc:
        return timeline_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "timeline_initialize_failed")


@timeline_router.get("/{lead_id}/steps", response_model=list[LeadStepView])
def list_lead_steps(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[LeadStepView] | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return timeline_engine.list_steps(db, lead_id)
    except TimelineError as exc:
        return timeline_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_steps_list_failed")


@timeline_router.post("/{lead_id}/steps/{step_id}/complete", response_model=LeadStepRead)
def complete_lead_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: StepCompleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadStepRead | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return timeline_engine.complete_step(
            db,
            lead_id,
            step_id,
            actor,
            remarks=dto.remarks,
            attachments=dto.attachments,
            admin_override=dto.admin_override,
            skip=dto.skip,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_step_complete_failed")


@timeline_router.post("/{lead_id}/steps/{step_id}/skip", response_model=LeadStepRead)
def skip_lead_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: StepSkipRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadStepRead | JSONResponse:
    try:
        return timeline_engine.skip_step(db, lead_id, step_id, actor, remarks=dto.remarks)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@timeline_router.post("/{lead_id}/steps/{step_id}/reopen", response_model=LeadStepRead)
def reopen_lead_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> LeadStepRead | JSONResponse:
    try:
        lead_service.ensure_visible(db, actor, lead_id)
        return timeline_engine.reopen_step(db, lead_id, step_id, actor)
    except TimelineError as exc:
        return timeline_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_step_reopen_failed")


@timeline_router.post("/{lead_id}/timeline/rewind", response_model=TimelineRewindResult)
def rewind_timeline(
    request: Request,
    lead_id: uuid.UUID,
    dto: TimelineRewindRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> TimelineRewindResult | JSONResponse:
    try:
        return timeline_engine.rewind(db, lead_id, dto.step_id, actor, remarks=dto.remarks)
    except TimelineError as exc:
        return timeline_error_response(request, exc)
