from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_crm.core.database import Base
from solar_crm.crm.models import utcnow


class StepStatus(StrEnum):
    UPCOMING = "upcoming"
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


CLOSED_STEP_STATUSES = frozenset({StepStatus.COMPLETED.value, StepStatus.SKIPPED.value})


class StepDefinition(Base):
    __tablename__ = "step_definitions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    allowed_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    remarks_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    attachments_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    customer_upload_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    required_documents: Mapped[list[StepRequiredDocument]] = relationship(
        "StepRequiredDocument",
        back_populates="step_definition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StepRequiredDocument.document_category",
    )


class StepRequiredDocument(Base):
    __tablename__ = "step_required_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    step_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("step_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_category: Mapped[str] = mapped_column(String(64), nullable=False)

    step_definition: Mapped[StepDefinition] = relationship("StepDefinition", back_populates="required_documents")

    __table_args__ = (
        UniqueConstraint("step_definition_id", "document_category", name="uq_step_required_document"),
    )


class LeadStep(Base):
    __tablename__ = "lead_steps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("step_definitions.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=StepStatus.UPCOMING.value)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    step_definition: Mapped[StepDefinition] = relationship("StepDefinition", lazy="joined", innerjoin=True)

    __table_args__ = (
        UniqueConstraint("lead_id", "step_definition_id", name="uq_lead_step"),
        Index("ix_lead_steps_lead_status", "lead_id", "status"),
    )
