from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from solar_crm.core.rbac import Role
from solar_crm.timeline.models import StepStatus


class StepDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    allowed_roles: list[Role] = Field(min_length=1)
    remarks_required: bool = False
    attachments_allowed: bool = False
    customer_upload_allowed: bool = False


class StepDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    allowed_roles: list[Role] | None = Field(default=None, min_length=1)
    remarks_required: bool | None = None
    attachments_allowed: bool | None = None
    customer_upload_allowed: bool | None = None


class StepDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order_index: int
    allowed_roles: list[str]
    remarks_required: bool
    attachments_allowed: bool
    customer_upload_allowed: bool
    created_at: datetime
    updated_at: datetime


class StepMoveRequest(BaseModel):
    after_step_id: UUID | None = None


class RequiredDocumentsUpdate(BaseModel):
    categories: list[str] = Field(default_factory=list)

    @field_validator("categories")
    @classmethod
    def _normalize(cls, value: list[str]) -> list[str]:
        cleaned = {item.strip() for item in value if item and item.strip()}
        return sorted(cleaned)


class RequiredDocumentsRead(BaseModel):
    step_id: UUID
    categories: list[str]


class TimelineInitializeResult(BaseModel):
    lead_id: UUID
    created_count: int
    already_initialized: bool


class StepCompleteRequest(BaseModel):
    remarks: str | None = None
    attachments: list[str] = Field(default_factory=list)
    admin_override: bool = False
    skip: bool = False


class StepSkipRequest(BaseModel):
    remarks: str | None = None


class TimelineRewindRequest(BaseModel):
    step_id: UUID
    remarks: str | None = None


class TimelineRewindResult(BaseModel):
    lead_id: UUID
    step_id: UUID
    reset_count: int


class LeadStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    step_definition_id: UUID
    status: StepStatus
    completed_by: str | None
    completed_at: datetime | None
    remarks: str | None
    attachments: list[str]
    row_version: int
    created_at: datetime
    updated_at: datetime


class LeadStepView(LeadStepRead):
    """Lead step flattened with its definition, as rendered on a lead timeline."""

    step_name: str
    order_index: int
    allowed_roles: list[str]
    remarks_required: bool
    attachments_allowed: bool
    customer_upload_allowed: bool
    completed_by_name: str | None = None
