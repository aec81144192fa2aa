from solar_crm.models.activity import ActivityLog
from solar_crm.crm.models import Document, Lead, User
from solar_crm.timeline.models import LeadStep, StepDefinition, StepRequiredDocument

__all__ = [
	"ActivityLog",
	"Document",
	"Lead",
	"LeadStep",
	"StepDefinition",
	"StepRequiredDocument",
	"User",
]
