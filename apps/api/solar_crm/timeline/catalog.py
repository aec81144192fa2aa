from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from solar_crm.core.config import get_settings
from solar_crm.core.rbac import Actor
from solar_crm.timeline.errors import DatabaseError, NotAuthorizedError, NotFoundError, ValidationError
from solar_crm.timeline.models import StepDefinition, StepRequiredDocument
from solar_crm.timeline.repository import StepDefinitionRepository
from solar_crm.timeline.schemas import (
    RequiredDocumentsRead,
    RequiredDocumentsUpdate,
    StepDefinitionCreate,
    StepDefinitionRead,
    StepDefinitionUpdate,
)


logger = logging.getLogger("solar_crm.timeline.catalog")


def _role_values(roles: list) -> list[str]:
    seen: list[str] = []
    for role in roles:
        value = str(role.value if hasattr(role, "value") else role)
        if value not in seen:
            seen.append(value)
    return seen


@dataclass(slots=True)
class StepCatalogService:
    """Admin-authored, ordered step definitions shared by every lead timeline."""

    repository: StepDefinitionRepository = field(default_factory=StepDefinitionRepository)

    def _require_admin(self, actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise NotAuthorizedError(f"Only admins can {action} step definitions")

    def _commit(self, session: Session, message: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise DatabaseError(message) from exc

    def _get_or_404(self, session: Session, step_id: uuid.UUID) -> StepDefinition:
        definition = self.repository.get(session, step_id)
        if definition is None:
            raise NotFoundError("Step definition not found", details={"step_id": str(step_id)})
        return definition

    def list(self, session: Session) -> list[StepDefinitionRead]:
        return [StepDefinitionRead.model_validate(row) for row in self.repository.list_ordered(session)]

    def create(self, session: Session, actor: Actor, dto: StepDefinitionCreate) -> StepDefinitionRead:
        self._require_admin(actor, "create")
        gap = get_settings().step_order_gap
        max_order = self.repository.max_order_index(session)
        definition = StepDefinition(
            name=dto.name.strip(),
            order_index=gap if max_order is None else max_order + gap,
            allowed_roles=_role_values(dto.allowed_roles),
            remarks_required=dto.remarks_required,
            attachments_allowed=dto.attachments_allowed,
            customer_upload_allowed=dto.customer_upload_allowed,
        )
        session.add(definition)
        self._commit(session, "Failed to create step definition")
        session.refresh(definition)
        logger.info(
            "timeline.step_definition.created",
            extra={"step_id": str(definition.id), "actor_id": actor.user_id, "action": "create_step"},
        )
        return StepDefinitionRead.model_validate(definition)

    def update(
        self,
        session: Session,
        actor: Actor,
        step_id: uuid.UUID,
        dto: StepDefinitionUpdate,
    ) -> StepDefinitionRead:
        self._require_admin(actor, "update")
        definition = self._get_or_404(session, step_id)

        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes:
            if changes["name"] is None:
                raise ValidationError("Step name cannot be empty")
            definition.name = changes["name"].strip()
        if "allowed_roles" in changes:
            if not changes["allowed_roles"]:
                raise ValidationError("A step must allow at least one role")
            definition.allowed_roles = _role_values(dto.allowed_roles or [])
        for flag in ("remarks_required", "attachments_allowed", "customer_upload_allowed"):
            if changes.get(flag) is not None:
                setattr(definition, flag, changes[flag])

        self._commit(session, "Failed to update step definition")
        session.refresh(definition)
        logger.info(
            "timeline.step_definition.updated",
            extra={"step_id": str(definition.id), "actor_id": actor.user_id, "action": "update_step"},
        )
        return StepDefinitionRead.model_validate(definition)

    def move(
        self,
        session: Session,
        actor: Actor,
        step_id: uuid.UUID,
        after_step_id: uuid.UUID | None,
    ) -> list[StepDefinitionRead]:
        """Place a step directly after another one, or first when ``after_step_id`` is None.

        The step takes the midpoint of its new neighbours' order indexes. When the
        neighbours are adjacent integers the catalog is renumbered with the
        configured gap, keeping the relative order of every other step.
        """
        self._require_admin(actor, "reorder")
        if after_step_id == step_id:
            raise ValidationError("A step cannot be moved after itself")

        definitions = self.repository.list_ordered(session)
        target = next((item for item in definitions if item.id == step_id), None)
        if target is None:
            raise NotFoundError("Step definition not found", details={"step_id": str(step_id)})

        others = [item for item in definitions if item.id != step_id]
        position = 0
        if after_step_id is not None:
            anchor_index = next((idx for idx, item in enumerate(others) if item.id == after_step_id), None)
            if anchor_index is None:
                raise NotFoundError("Step definition not found", details={"step_id": str(after_step_id)})
            position = anchor_index + 1

        lower = others[position - 1].order_index if position > 0 else 0
        upper = others[position].order_index if position < len(others) else None

        if upper is None:
            target.order_index = lower + get_settings().step_order_gap
        elif upper - lower >= 2:
            target.order_index = lower + (upper - lower) // 2
        else:
            self._renumber(session, others[:position] + [target] + others[position:])

        self._commit(session, "Failed to reorder step definitions")
        logger.info(
            "timeline.step_definition.moved",
            extra={"step_id": str(step_id), "actor_id": actor.user_id, "action": "move_step"},
        )
        return self.list(session)

    def _renumber(self, session: Session, ordered: list[StepDefinition]) -> None:
        gap = get_settings().step_order_gap
        # park every row on a negative index first so the unique constraint holds mid-way
        for position, definition in enumerate(ordered, start=1):
            definition.order_index = -position
        session.flush()
        for position, definition in enumerate(ordered, start=1):
            definition.order_index = position * gap
        session.flush()

    def list_required_documents(self, session: Session, step_id: uuid.UUID) -> RequiredDocumentsRead:
        self._get_or_404(session, step_id)
        return RequiredDocumentsRead(step_id=step_id, categories=self.repository.required_categories(session, step_id))

    def set_required_documents(
        self,
        session: Session,
        actor: Actor,
        step_id: uuid.UUID,
        dto: RequiredDocumentsUpdate,
    ) -> RequiredDocumentsRead:
        self._require_admin(actor, "configure")
        self._get_or_404(session, step_id)

        session.execute(delete(StepRequiredDocument).where(StepRequiredDocument.step_definition_id == step_id))
        for category in dto.categories:
            session.add(StepRequiredDocument(step_definition_id=step_id, document_category=category))
        self._commit(session, "Failed to update required documents")
        session.expire_all()

        logger.info(
            "timeline.step_definition.documents_updated",
            extra={"step_id": str(step_id), "actor_id": actor.user_id, "action": "set_required_documents"},
        )
        return self.list_required_documents(session, step_id)


step_catalog_service = StepCatalogService()
