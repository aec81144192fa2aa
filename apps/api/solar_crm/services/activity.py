from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from solar_crm.context import get_correlation_id
from solar_crm.core.rbac import Actor, Role
from solar_crm.crm.schemas import ActivityPage, ActivityRead, Pagination
from solar_crm.metrics import observe_activity_write_failure

if TYPE_CHECKING:
    from solar_crm.models.activity import ActivityLog


logger = logging.getLogger("solar_crm.activity")


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    actor_id: str
    action: str
    entity_type: str
    lead_id: uuid.UUID | None = None
    entity_id: str | None = None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None


class ActivityRecorder:
    """Append-only trail of who changed what on a lead.

    ``record`` runs after the mutation it describes has committed. A failed
    write is logged and counted but never raised, so the mutation stands.
    """

    def record(self, session: Session, entry: ActivityEntry) -> ActivityLog | None:
        from solar_crm.models.activity import ActivityLog

        row = ActivityLog(
            lead_id=entry.lead_id,
            actor_id=entry.actor_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            old_value=entry.old_value,
            new_value=entry.new_value,
            correlation_id=get_correlation_id(),
        )
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_activity_write_failure(entry.action)
            logger.exception(
                "activity.write_failed",
                extra={
                    "lead_id": str(entry.lead_id) if entry.lead_id else None,
                    "actor_id": entry.actor_id,
                    "action": entry.action,
                    "error": str(exc),
                },
            )
            return None
        return row

    def record_many(self, session: Session, entries: list[ActivityEntry]) -> int:
        return sum(1 for entry in entries if self.record(session, entry) is not None)

    def list_for_lead(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        *,
        actor_id: str | None = None,
        action: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> ActivityPage:
        if actor.role not in {Role.ADMIN, Role.OFFICE}:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admin and office users can view activity")

        from solar_crm.models.activity import ActivityLog

        conditions = [ActivityLog.lead_id == lead_id]
        if actor_id:
            conditions.append(ActivityLog.actor_id == actor_id)
        if action:
            conditions.append(ActivityLog.action.ilike(f"%{action}%"))
        if date_from is not None:
            conditions.append(ActivityLog.created_at >= date_from)
        if date_to is not None:
            conditions.append(ActivityLog.created_at <= date_to)

        total = session.scalar(select(func.count(ActivityLog.id)).where(and_(*conditions))) or 0
        stmt: Select[tuple[ActivityLog]] = (
            select(ActivityLog)
            .where(and_(*conditions))
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = session.scalars(stmt).all()
        return ActivityPage(
            logs=[ActivityRead.model_validate(row) for row in rows],
            pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if limit else 0),
        )


activity_recorder = ActivityRecorder()
