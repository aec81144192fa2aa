from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from solar_crm.core.config import get_settings
from solar_crm.core.rbac import Role
from solar_crm.timeline.models import StepDefinition, StepRequiredDocument


logger = logging.getLogger("solar_crm.timeline.seed")

_SALES = (Role.ADMIN, Role.OFFICE, Role.AGENT)
_BACK_OFFICE = (Role.ADMIN, Role.OFFICE)
_FIELD = (Role.ADMIN, Role.OFFICE, Role.INSTALLER)

KYC_DOCUMENT_CATEGORIES = ("aadhar_front", "aadhar_back", "pan_card", "electricity_bill", "bank_passbook")


@dataclass(frozen=True)
class DefaultStep:
    name: str
    allowed_roles: tuple[Role, ...]
    remarks_required: bool = True
    attachments_allowed: bool = True
    customer_upload_allowed: bool = False
    required_documents: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_STEPS: tuple[DefaultStep, ...] = (
    DefaultStep("Lead Created", _SALES, remarks_required=False, attachments_allowed=False),
    DefaultStep("Initial Contact", _SALES, attachments_allowed=False),
    DefaultStep("Site Survey", _SALES),
    DefaultStep(
        "Document Collection",
        (*_SALES, Role.CUSTOMER),
        remarks_required=False,
        customer_upload_allowed=True,
    ),
    DefaultStep(
        "PM Suryaghar Form Submission",
        (*_SALES, Role.CUSTOMER),
        remarks_required=False,
        attachments_allowed=False,
        required_documents=KYC_DOCUMENT_CATEGORIES,
    ),
    DefaultStep("Proposal Generation", _BACK_OFFICE),
    DefaultStep("Proposal Approval", (*_BACK_OFFICE, Role.CUSTOMER), customer_upload_allowed=True),
    DefaultStep("Payment/Loan Processing", _BACK_OFFICE),
    DefaultStep("Installer Assignment", _BACK_OFFICE, attachments_allowed=False),
    DefaultStep("Installation Scheduling", _FIELD, attachments_allowed=False),
    DefaultStep("Installation in Progress", _FIELD),
    DefaultStep("Installation Completed", _FIELD),
    DefaultStep("Quality Inspection", _BACK_OFFICE),
    DefaultStep("Commissioning", _BACK_OFFICE),
    DefaultStep("Net Meter Application", _BACK_OFFICE),
    DefaultStep("Net Meter Installation", _BACK_OFFICE),
    DefaultStep("Subsidy Application", _BACK_OFFICE),
    DefaultStep("Subsidy Approval", _BACK_OFFICE),
    DefaultStep("Subsidy Release", _BACK_OFFICE),
    DefaultStep("Project Closure", _BACK_OFFICE),
)


def ensure_default_steps(session: Session) -> int:
    """Load the standard rooftop-solar catalog into an empty step catalog.

    Returns the number of definitions created; a non-empty catalog is left alone.
    """
    existing = session.scalar(select(func.count(StepDefinition.id))) or 0
    if existing:
        return 0

    gap = get_settings().step_order_gap
    for position, step in enumerate(DEFAULT_STEPS, start=1):
        definition = StepDefinition(
            name=step.name,
            order_index=position * gap,
            allowed_roles=[role.value for role in step.allowed_roles],
            remarks_required=step.remarks_required,
            attachments_allowed=step.attachments_allowed,
            customer_upload_allowed=step.customer_upload_allowed,
        )
        definition.required_documents = [
            StepRequiredDocument(document_category=category) for category in step.required_documents
        ]
        session.add(definition)
    session.commit()

    logger.info("timeline.catalog.seeded", extra={"created_count": len(DEFAULT_STEPS)})
    return len(DEFAULT_STEPS)
