from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from solar_crm.core.rbac import Actor, Role, require_roles
from solar_crm.crm.models import Lead, LeadSource, User, utcnow
from solar_crm.crm.schemas import (
    LeadCreate,
    LeadCreateResult,
    LeadRead,
    LeadStatusUpdate,
    UserCreate,
    UserRead,
    UserStatusUpdate,
)
from solar_crm.services.activity import ActivityEntry, ActivityRecorder
from solar_crm.timeline.engine import TimelineEngine
from solar_crm.timeline.errors import TimelineError


logger = logging.getLogger("solar_crm.crm")


@dataclass(slots=True)
class UserService:
    def create_user(self, session: Session, actor: Actor, dto: UserCreate) -> UserRead:
        require_roles(actor, Role.ADMIN)
        user = User(
            id=dto.id,
            email=str(dto.email).lower(),
            name=dto.name.strip(),
            phone=dto.phone,
            role=dto.role.value,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already exists")
        session.refresh(user)
        return UserRead.model_validate(user)

    def list_users(self, session: Session, actor: Actor, *, role: Role | None = None) -> list[UserRead]:
        require_roles(actor, Role.OFFICE)
        stmt: Select[tuple[User]] = select(User)
        if role is not None:
            stmt = stmt.where(User.role == role.value)
        rows = session.scalars(stmt.order_by(User.name.asc())).all()
        return [UserRead.model_validate(row) for row in rows]

    def set_status(self, session: Session, actor: Actor, user_id: str, dto: UserStatusUpdate) -> UserRead:
        require_roles(actor, Role.ADMIN)
        if user_id == actor.user_id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="cannot change your own status")
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        user.status = dto.status.value
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)


@dataclass(slots=True)
class LeadService:
    """Lead intake and status; every new lead gets its timeline on creation."""

    engine: TimelineEngine = field(default_factory=TimelineEngine)
    recorder: ActivityRecorder = field(default_factory=ActivityRecorder)

    def _visible(self, stmt: Select[tuple[Lead]], actor: Actor) -> Select[tuple[Lead]]:
        if actor.role in {Role.AGENT, Role.CUSTOMER}:
            return stmt.where(Lead.created_by == actor.user_id)
        if actor.role is Role.INSTALLER:
            return stmt.where(Lead.installer_id == actor.user_id)
        return stmt

    def _get_visible(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> Lead:
        lead = session.scalar(self._visible(select(Lead).where(Lead.id == lead_id), actor))
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def create_lead(self, session: Session, actor: Actor, dto: LeadCreate) -> LeadCreateResult:
        payload = dto.model_dump(mode="python")
        payload["source"] = dto.source.value
        if actor.role is Role.CUSTOMER:
            payload["source"] = LeadSource.SELF.value
            payload["installer_id"] = None
        elif actor.role is Role.AGENT:
            payload["source"] = LeadSource.AGENT.value

        lead = Lead(created_by=actor.user_id, **payload)
        session.add(lead)
        session.commit()
        session.refresh(lead)

        self.recorder.record(
            session,
            ActivityEntry(
                actor_id=actor.user_id,
                action="create_lead",
                entity_type="lead",
                lead_id=lead.id,
                entity_id=str(lead.id),
                new_value={"customer_name": lead.customer_name, "source": lead.source},
            ),
        )

        created_count = 0
        initialized = False
        try:
            result = self.engine.initialize(session, lead.id)
            created_count = result.created_count
            initialized = True
        except TimelineError as exc:
            # the lead stands; the timeline can be initialized later once the catalog is populated
            logger.warning(
                "lead.timeline_not_initialized",
                extra={"lead_id": str(lead.id), "actor_id": actor.user_id, "error": exc.message},
            )

        session.refresh(lead)
        read = LeadRead.model_validate(lead)
        return LeadCreateResult(
            **read.model_dump(),
            timeline_initialized=initialized,
            timeline_steps_created=created_count,
        )

    def get_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get_visible(session, actor, lead_id))

    def ensure_visible(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> None:
        self._get_visible(session, actor, lead_id)

    def list_leads(self, session: Session, actor: Actor, *, status_filter: str | None = None) -> list[LeadRead]:
        stmt = self._visible(select(Lead), actor)
        if status_filter:
            stmt = stmt.where(Lead.status == status_filter)
        rows = session.scalars(stmt.order_by(Lead.created_at.desc())).all()
        return [LeadRead.model_validate(row) for row in rows]

    def update_status(self, session: Session, actor: Actor, lead_id: uuid.UUID, dto: LeadStatusUpdate) -> LeadRead:
        require_roles(actor, Role.OFFICE)
        lead = self._get_visible(session, actor, lead_id)
        previous = lead.status
        if previous == dto.status.value:
            return LeadRead.model_validate(lead)

        lead.status = dto.status.value
        lead.updated_at = utcnow()
        session.commit()
        session.refresh(lead)

        logger.info(
            "lead.status_changed",
            extra={"lead_id": str(lead.id), "actor_id": actor.user_id, "status": lead.status},
        )
        self.recorder.record(
            session,
            ActivityEntry(
                actor_id=actor.user_id,
                action="update_lead_status",
                entity_type="lead",
                lead_id=lead.id,
                entity_id=str(lead.id),
                old_value={"status": previous},
                new_value={"status": dto.status.value},
            ),
        )
        return LeadRead.model_validate(lead)


user_service = UserService()
lead_service = LeadService()
