from solar_crm.timeline.catalog import StepCatalogService, step_catalog_service
from solar_crm.timeline.engine import DocumentLookup, TimelineEngine, timeline_engine
from solar_crm.timeline.errors import (
    AlreadyCompletedError,
    DatabaseError,
    MissingDocumentsError,
    NotAuthorizedError,
    NotFoundError,
    StepNotActiveError,
    TimelineError,
    ValidationError,
)
from solar_crm.timeline.models import LeadStep, StepDefinition, StepRequiredDocument, StepStatus
from solar_crm.timeline.seed import DEFAULT_STEPS, ensure_default_steps

__all__ = [
    "AlreadyCompletedError",
    "DatabaseError",
    "DEFAULT_STEPS",
    "DocumentLookup",
    "LeadStep",
    "MissingDocumentsError",
    "NotAuthorizedError",
    "NotFoundError",
    "StepCatalogService",
    "StepDefinition",
    "StepNotActiveError",
    "StepRequiredDocument",
    "StepStatus",
    "TimelineEngine",
    "TimelineError",
    "ValidationError",
    "ensure_default_steps",
    "step_catalog_service",
    "timeline_engine",
]
