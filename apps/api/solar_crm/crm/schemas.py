from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from solar_crm.core.rbac import Role
from solar_crm.crm.models import DocumentStatus, DocumentType, LeadSource, LeadStatus, UserStatus


class UserCreate(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    phone: str | None = None
    role: Role


class UserStatusUpdate(BaseModel):
    status: UserStatus


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    phone: str | None
    role: Role
    status: UserStatus
    created_at: datetime


class LeadCreate(BaseModel):
    customer_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=6, max_length=32)
    email: EmailStr | None = None
    address: str | None = None
    kw_requirement: Decimal | None = Field(default=None, gt=0)
    roof_type: str | None = None
    notes: str | None = None
    source: LeadSource = LeadSource.OFFICE
    installer_id: str | None = None


class LeadStatusUpdate(BaseModel):
    status: LeadStatus


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_name: str
    phone: str
    email: str | None
    address: str | None
    kw_requirement: Decimal | None
    roof_type: str | None
    notes: str | None
    status: LeadStatus
    source: LeadSource
    created_by: str
    installer_id: str | None
    created_at: datetime
    updated_at: datetime


class LeadCreateResult(LeadRead):
    timeline_initialized: bool
    timeline_steps_created: int


class DocumentCreate(BaseModel):
    type: DocumentType
    document_category: str = Field(min_length=1, max_length=64)
    file_path: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(ge=0)
    mime_type: str = Field(min_length=1, max_length=128)
    is_submitted: bool = False


class DocumentStatusUpdate(BaseModel):
    status: DocumentStatus


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    type: DocumentType
    document_category: str
    file_path: str
    file_name: str
    file_size: int
    mime_type: str
    uploaded_by: str
    status: DocumentStatus
    is_submitted: bool
    uploaded_at: datetime


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: UUID | None
    actor_id: str
    action: str
    entity_type: str
    entity_id: str | None
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    correlation_id: str | None
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ActivityPage(BaseModel):
    logs: list[ActivityRead]
    pagination: Pagination
