from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from solar_crm.crm.models import Lead, User
from solar_crm.timeline.models import LeadStep, StepDefinition, StepRequiredDocument


class StepDefinitionRepository:
    def list_ordered(self, session: Session) -> list[StepDefinition]:
        return list(session.scalars(select(StepDefinition).order_by(StepDefinition.order_index.asc())).all())

    def get(self, session: Session, step_id: uuid.UUID) -> StepDefinition | None:
        return session.get(StepDefinition, step_id)

    def max_order_index(self, session: Session) -> int | None:
        return session.scalar(select(func.max(StepDefinition.order_index)))

    def required_categories(self, session: Session, step_id: uuid.UUID) -> list[str]:
        rows = session.scalars(
            select(StepRequiredDocument.document_category)
            .where(StepRequiredDocument.step_definition_id == step_id)
            .order_by(StepRequiredDocument.document_category.asc())
        ).all()
        return list(rows)


class LeadTimelineRepository:
    def lock_lead(self, session: Session, lead_id: uuid.UUID) -> Lead | None:
        # SELECT ... FOR UPDATE on backends that support it; sqlite ignores the clause.
        stmt = select(Lead).where(Lead.id == lead_id).with_for_update().execution_options(populate_existing=True)
        return session.scalar(stmt)

    def bump_lead_version(self, session: Session, lead: Lead) -> bool:
        observed = lead.row_version
        result = session.execute(
            update(Lead)
            .where(and_(Lead.id == lead.id, Lead.row_version == observed))
            .values(row_version=Lead.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        set_committed_value(lead, "row_version", observed + 1)
        return True

    def has_steps(self, session: Session, lead_id: uuid.UUID) -> bool:
        return session.scalar(select(func.count(LeadStep.id)).where(LeadStep.lead_id == lead_id)) > 0

    def list_steps(self, session: Session, lead_id: uuid.UUID) -> list[LeadStep]:
        stmt = (
            select(LeadStep)
            .join(StepDefinition, StepDefinition.id == LeadStep.step_definition_id)
            .where(LeadStep.lead_id == lead_id)
            .order_by(StepDefinition.order_index.asc())
        )
        return list(session.scalars(stmt).unique().all())

    def get_step(self, session: Session, lead_id: uuid.UUID, step_id: uuid.UUID) -> LeadStep | None:
        """Resolve a lead step by its own id or by its step definition id."""
        return session.scalar(
            select(LeadStep).where(
                and_(
                    LeadStep.lead_id == lead_id,
                    or_(LeadStep.id == step_id, LeadStep.step_definition_id == step_id),
                )
            )
        )

    def successor(self, steps: list[LeadStep], current: LeadStep) -> LeadStep | None:
        """Return the step with the next-higher order index, if any."""
        current_order = current.step_definition.order_index
        later = [step for step in steps if step.step_definition.order_index > current_order]
        if not later:
            return None
        return min(later, key=lambda step: step.step_definition.order_index)

    def update_step(self, session: Session, step: LeadStep, **values: Any) -> bool:
        """Conditionally write ``values`` to the step; False when another writer got there first."""
        observed = step.row_version
        result = session.execute(
            update(LeadStep)
            .where(and_(LeadStep.id == step.id, LeadStep.row_version == observed))
            .values(row_version=LeadStep.row_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        for key, value in values.items():
            set_committed_value(step, key, value)
        set_committed_value(step, "row_version", observed + 1)
        return True

    def user_names(self, session: Session, user_ids: set[str]) -> dict[str, str]:
        if not user_ids:
            return {}
        rows = session.execute(select(User.id, User.name).where(User.id.in_(user_ids))).all()
        return {row.id: row.name for row in rows}


def completion_fields(
    *,
    status: str,
    completed_by: str | None,
    completed_at: datetime | None,
    remarks: str | None,
    attachments: list[str],
) -> dict[str, Any]:
    return {
        "status": status,
        "completed_by": completed_by,
        "completed_at": completed_at,
        "remarks": remarks,
        "attachments": attachments,
    }
