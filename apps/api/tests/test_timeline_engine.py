from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from dataclasses import replace
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solar_crm.core.config import get_settings
from solar_crm.core.database import Base
from solar_crm.core.rbac import Actor, Role
from solar_crm.crm.documents import DocumentService
from solar_crm.crm.models import Document, DocumentStatus, Lead, LeadStatus, User
from solar_crm.models import ActivityLog
from solar_crm.services.activity import ActivityEntry, ActivityRecorder
from solar_crm.timeline.engine import TimelineEngine
from solar_crm.timeline.errors import (
    AlreadyCompletedError,
    DatabaseError,
    MissingDocumentsError,
    NotAuthorizedError,
    NotFoundError,
    StepNotActiveError,
    ValidationError,
)
from solar_crm.timeline.models import LeadStep, StepDefinition, StepRequiredDocument
from solar_crm.timeline.repository import LeadTimelineRepository


ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
OFFICE = Actor(user_id="office-1", role=Role.OFFICE)
AGENT = Actor(user_id="agent-1", role=Role.AGENT)
INSTALLER = Actor(user_id="installer-1", role=Role.INSTALLER)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def timeline() -> TimelineEngine:
    return TimelineEngine()


def _add_step(
    session: Session,
    name: str,
    order_index: int,
    roles: list[Role],
    *,
    remarks_required: bool = False,
    attachments_allowed: bool = False,
    documents: tuple[str, ...] = (),
) -> StepDefinition:
    definition = StepDefinition(
        name=name,
        order_index=order_index,
        allowed_roles=[role.value for role in roles],
        remarks_required=remarks_required,
        attachments_allowed=attachments_allowed,
    )
    definition.required_documents = [StepRequiredDocument(document_category=category) for category in documents]
    session.add(definition)
    session.commit()
    return definition


def _add_lead(session: Session, *, status: LeadStatus = LeadStatus.ONGOING) -> Lead:
    lead = Lead(
        customer_name="Ravi Kumar",
        phone="9876543210",
        status=status.value,
        source="office",
        created_by=OFFICE.user_id,
    )
    session.add(lead)
    session.commit()
    return lead


def _add_document(
    session: Session,
    lead_id: uuid.UUID,
    category: str,
    *,
    submitted: bool = True,
    status: DocumentStatus = DocumentStatus.VALID,
) -> Document:
    document = Document(
        lead_id=lead_id,
        type="mandatory",
        document_category=category,
        file_path=f"leads/{lead_id}/{category}.pdf",
        file_name=f"{category}.pdf",
        file_size=1024,
        mime_type="application/pdf",
        uploaded_by=AGENT.user_id,
        status=status.value,
        is_submitted=submitted,
    )
    session.add(document)
    session.commit()
    return document


def _statuses(timeline: TimelineEngine, session: Session, lead_id: uuid.UUID) -> dict[str, str]:
    return {view.step_name: view.status.value for view in timeline.list_steps(session, lead_id)}


def _activity_actions(session: Session, lead_id: uuid.UUID) -> list[str]:
    rows = session.scalars(select(ActivityLog).where(ActivityLog.lead_id == lead_id).order_by(ActivityLog.id.asc())).all()
    return [row.action for row in rows]


@pytest.fixture()
def three_steps(db_session: Session) -> dict[str, StepDefinition]:
    return {
        "survey": _add_step(db_session, "Site Survey", 1000, [Role.AGENT, Role.OFFICE]),
        "design": _add_step(db_session, "System Design", 2000, [Role.OFFICE]),
        "install": _add_step(db_session, "Installation", 3000, [Role.INSTALLER], attachments_allowed=True),
    }


def test_initialize_creates_one_step_per_definition(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)

    result = timeline.initialize(db_session, lead.id)

    assert result.created_count == 3
    assert result.already_initialized is False
    assert _statuses(timeline, db_session, lead.id) == {
        "Site Survey": "pending",
        "System Design": "upcoming",
        "Installation": "upcoming",
    }
    assert _activity_actions(db_session, lead.id) == []


def test_initialize_twice_does_not_duplicate_steps(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    again = timeline.initialize(db_session, lead.id)

    assert again.created_count == 0
    assert again.already_initialized is True
    count = db_session.scalar(select(func.count(LeadStep.id)).where(LeadStep.lead_id == lead.id))
    assert count == 3


def test_initialize_with_empty_catalog_fails_and_creates_nothing(db_session: Session, timeline: TimelineEngine) -> None:
    lead = _add_lead(db_session)

    with pytest.raises(DatabaseError):
        timeline.initialize(db_session, lead.id)

    assert db_session.scalar(select(func.count(LeadStep.id))) == 0


def test_initialize_unknown_lead_is_not_found(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    with pytest.raises(NotFoundError):
        timeline.initialize(db_session, uuid.uuid4())


def test_role_outside_allowed_roles_is_rejected_without_mutation(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    db_session.refresh(lead)
    version_before = lead.row_version

    with pytest.raises(NotAuthorizedError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, INSTALLER)

    db_session.refresh(lead)
    assert lead.row_version == version_before
    assert _statuses(timeline, db_session, lead.id)["Site Survey"] == "pending"
    assert _activity_actions(db_session, lead.id) == []


@pytest.mark.parametrize(
    ("actor", "allowed"),
    [
        (AGENT, True),
        (OFFICE, True),
        (ADMIN, True),
        (INSTALLER, False),
        (Actor(user_id="customer-1", role=Role.CUSTOMER), False),
    ],
)
def test_authorization_gate_follows_allowed_roles_plus_admin(
    db_session: Session,
    timeline: TimelineEngine,
    three_steps: dict[str, StepDefinition],
    actor: Actor,
    allowed: bool,
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    if allowed:
        step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, actor)
        assert step.status.value == "completed"
        assert step.completed_by == actor.user_id
    else:
        with pytest.raises(NotAuthorizedError):
            timeline.complete_step(db_session, lead.id, three_steps["survey"].id, actor)


def test_admin_completes_step_that_does_not_list_admin(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, ADMIN)

    assert "admin" not in three_steps["survey"].allowed_roles
    assert step.status.value == "completed"
    assert _activity_actions(db_session, lead.id) == ["complete_step"]


def test_step_can_be_addressed_by_lead_step_id(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    lead_step_id = timeline.list_steps(db_session, lead.id)[0].id

    step = timeline.complete_step(db_session, lead.id, lead_step_id, AGENT)

    assert step.id == lead_step_id
    assert step.status.value == "completed"


def test_unknown_step_is_not_found(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(NotFoundError):
        timeline.complete_step(db_session, lead.id, uuid.uuid4(), ADMIN)


def test_document_gate_lists_exactly_the_missing_categories(db_session: Session, timeline: TimelineEngine) -> None:
    kyc = _add_step(db_session, "KYC", 1000, [Role.AGENT], documents=("aadhar_front", "pan_card", "electricity_bill"))
    _add_step(db_session, "Install", 2000, [Role.INSTALLER])
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    _add_document(db_session, lead.id, "aadhar_front")
    _add_document(db_session, lead.id, "pan_card", submitted=False)
    _add_document(db_session, lead.id, "electricity_bill", status=DocumentStatus.CORRUPTED)

    with pytest.raises(MissingDocumentsError) as exc_info:
        timeline.complete_step(db_session, lead.id, kyc.id, AGENT)

    assert exc_info.value.missing_categories == ["electricity_bill", "pan_card"]
    assert exc_info.value.details == {"missing_documents": ["electricity_bill", "pan_card"]}
    assert _statuses(timeline, db_session, lead.id)["KYC"] == "pending"

    _add_document(db_session, lead.id, "pan_card")
    _add_document(db_session, lead.id, "electricity_bill")

    step = timeline.complete_step(db_session, lead.id, kyc.id, AGENT)
    assert step.status.value == "completed"


def test_document_gate_applies_to_admins_without_override(db_session: Session, timeline: TimelineEngine) -> None:
    kyc = _add_step(db_session, "KYC", 1000, [Role.AGENT], documents=("pan_card",))
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(MissingDocumentsError):
        timeline.complete_step(db_session, lead.id, kyc.id, ADMIN)

    step = timeline.complete_step(db_session, lead.id, kyc.id, ADMIN, admin_override=True)

    assert step.status.value == "completed"
    assert _activity_actions(db_session, lead.id) == ["admin_override_complete"]


class _FixedDocumentLookup:
    def __init__(self, valid: set[str]) -> None:
        self.valid = valid
        self.asked: list[str] = []

    def has_valid_submitted_document(self, session: Session, lead_id: uuid.UUID, category: str) -> bool:
        self.asked.append(category)
        return category in self.valid


def test_document_gate_asks_the_lookup_once_per_required_category(db_session: Session) -> None:
    kyc = _add_step(db_session, "KYC", 1000, [Role.AGENT], documents=("pan_card", "electricity_bill"))
    lead = _add_lead(db_session)
    lookup = _FixedDocumentLookup({"pan_card"})
    timeline = TimelineEngine(documents=lookup)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(MissingDocumentsError) as exc_info:
        timeline.complete_step(db_session, lead.id, kyc.id, AGENT)

    assert exc_info.value.missing_categories == ["electricity_bill"]
    assert lookup.asked == ["electricity_bill", "pan_card"]


def test_has_valid_submitted_document_needs_a_submitted_valid_row_on_that_lead(db_session: Session) -> None:
    documents = DocumentService()
    lead = _add_lead(db_session)
    other = _add_lead(db_session)
    _add_document(db_session, lead.id, "aadhar_front", submitted=False)
    _add_document(db_session, lead.id, "pan_card", status=DocumentStatus.REPLACED)
    _add_document(db_session, other.id, "electricity_bill")

    assert documents.has_valid_submitted_document(db_session, lead.id, "aadhar_front") is False
    assert documents.has_valid_submitted_document(db_session, lead.id, "pan_card") is False
    assert documents.has_valid_submitted_document(db_session, lead.id, "electricity_bill") is False

    _add_document(db_session, lead.id, "pan_card")
    assert documents.has_valid_submitted_document(db_session, lead.id, "pan_card") is True


def test_missing_documents_rejection_logs_the_categories(
    db_session: Session, timeline: TimelineEngine, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    kyc = _add_step(db_session, "KYC", 1000, [Role.AGENT], documents=("pan_card", "aadhar_front"))
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(MissingDocumentsError):
        timeline.complete_step(db_session, lead.id, kyc.id, AGENT)

    rejected = [record for record in caplog.records if record.getMessage() == "timeline.rejected"]
    assert rejected
    assert getattr(rejected[-1], "status", None) == "missing_documents"
    assert getattr(rejected[-1], "missing_categories", None) == ["aadhar_front", "pan_card"]


def test_completion_activates_only_the_immediate_successor(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert _statuses(timeline, db_session, lead.id) == {
        "Site Survey": "completed",
        "System Design": "pending",
        "Installation": "upcoming",
    }


def test_successor_that_is_already_closed_is_left_alone(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    timeline.complete_step(db_session, lead.id, three_steps["design"].id, ADMIN, admin_override=True)
    assert _statuses(timeline, db_session, lead.id) == {
        "Site Survey": "pending",
        "System Design": "completed",
        "Installation": "pending",
    }

    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert _statuses(timeline, db_session, lead.id) == {
        "Site Survey": "completed",
        "System Design": "completed",
        "Installation": "pending",
    }


def test_second_completion_is_rejected_and_keeps_fields(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    first = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT, remarks="roof measured")

    with pytest.raises(AlreadyCompletedError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, OFFICE, remarks="again")

    after = timeline.list_steps(db_session, lead.id)[0]
    assert after.completed_by == first.completed_by == AGENT.user_id
    assert after.remarks == "roof measured"
    assert after.row_version == first.row_version
    assert after.completed_at is not None


def test_upcoming_step_needs_admin_override(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(StepNotActiveError):
        timeline.complete_step(db_session, lead.id, three_steps["design"].id, OFFICE)
    with pytest.raises(StepNotActiveError):
        timeline.complete_step(db_session, lead.id, three_steps["design"].id, ADMIN)


def test_remarks_required_rejects_blank_remarks(db_session: Session, timeline: TimelineEngine) -> None:
    survey = _add_step(db_session, "Site Survey", 1000, [Role.AGENT], remarks_required=True)
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    for remarks in (None, "", "   "):
        with pytest.raises(ValidationError):
            timeline.complete_step(db_session, lead.id, survey.id, AGENT, remarks=remarks)

    assert _statuses(timeline, db_session, lead.id)["Site Survey"] == "pending"

    step = timeline.complete_step(db_session, lead.id, survey.id, AGENT, remarks="  south-facing roof  ")
    assert step.remarks == "  south-facing roof  "


def test_attachments_rejected_when_step_does_not_accept_them(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(ValidationError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT, attachments=["survey.jpg"])

    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)
    timeline.complete_step(db_session, lead.id, three_steps["design"].id, OFFICE)
    step = timeline.complete_step(
        db_session, lead.id, three_steps["install"].id, INSTALLER, attachments=["panels.jpg", "inverter.jpg"]
    )
    assert step.attachments == ["panels.jpg", "inverter.jpg"]


def test_closed_lead_only_accepts_admin_actions(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    lead.status = LeadStatus.CLOSED.value
    db_session.commit()

    with pytest.raises(NotAuthorizedError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, ADMIN)
    assert step.status.value == "completed"


def test_override_and_skip_flags_are_admin_only(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(NotAuthorizedError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT, admin_override=True)
    with pytest.raises(NotAuthorizedError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT, skip=True)


def test_complete_with_skip_marks_step_skipped(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, ADMIN, skip=True, remarks="walk-in")

    assert step.status.value == "skipped"
    assert _statuses(timeline, db_session, lead.id)["System Design"] == "pending"
    assert _activity_actions(db_session, lead.id) == ["skip_step"]


def test_skip_step_is_admin_only_and_stores_remarks_verbatim(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)

    with pytest.raises(NotAuthorizedError):
        timeline.skip_step(db_session, lead.id, three_steps["survey"].id, OFFICE, remarks="no survey")

    step = timeline.skip_step(db_session, lead.id, three_steps["survey"].id, ADMIN, remarks="  customer had survey  ")

    assert step.status.value == "skipped"
    assert step.remarks == "  customer had survey  "
    assert step.completed_by == ADMIN.user_id
    assert _statuses(timeline, db_session, lead.id)["System Design"] == "pending"

    with pytest.raises(AlreadyCompletedError):
        timeline.skip_step(db_session, lead.id, three_steps["survey"].id, ADMIN)


def test_reopen_returns_closed_step_to_pending(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT, remarks="done")

    step = timeline.reopen_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert step.status.value == "pending"
    assert step.completed_by is None
    assert step.completed_at is None
    assert step.remarks is None
    assert _activity_actions(db_session, lead.id) == ["complete_step", "reopen_step"]

    with pytest.raises(StepNotActiveError):
        timeline.reopen_step(db_session, lead.id, three_steps["survey"].id, AGENT)


def test_admin_reopen_outside_allowed_roles_is_an_override(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    with pytest.raises(NotAuthorizedError):
        timeline.reopen_step(db_session, lead.id, three_steps["survey"].id, INSTALLER)

    timeline.reopen_step(db_session, lead.id, three_steps["survey"].id, ADMIN)

    assert _activity_actions(db_session, lead.id)[-1] == "admin_override_reopen"


def test_rewind_resets_target_and_every_later_step(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)
    timeline.complete_step(db_session, lead.id, three_steps["design"].id, OFFICE)

    with pytest.raises(NotAuthorizedError):
        timeline.rewind(db_session, lead.id, three_steps["design"].id, OFFICE)

    result = timeline.rewind(db_session, lead.id, three_steps["design"].id, ADMIN, remarks="redo layout")

    assert result.reset_count == 2
    assert _statuses(timeline, db_session, lead.id) == {
        "Site Survey": "completed",
        "System Design": "pending",
        "Installation": "upcoming",
    }
    design = timeline.list_steps(db_session, lead.id)[1]
    assert design.remarks == "redo layout"
    assert design.completed_by is None
    assert _activity_actions(db_session, lead.id)[-2:] == ["admin_override_reopen", "admin_override_reopen"]


def test_list_steps_flattens_definition_and_completer_name(
    db_session: Session, timeline: TimelineEngine, three_steps: dict[str, StepDefinition]
) -> None:
    db_session.add(User(id=AGENT.user_id, email="agent@example.com", name="Asha Agent", role="agent"))
    db_session.commit()
    lead = _add_lead(db_session)
    timeline.initialize(db_session, lead.id)
    timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    views = timeline.list_steps(db_session, lead.id)

    assert [view.order_index for view in views] == [1000, 2000, 3000]
    assert views[0].step_name == "Site Survey"
    assert views[0].completed_by_name == "Asha Agent"
    assert views[1].completed_by_name is None
    assert views[2].allowed_roles == ["installer"]
    assert views[2].attachments_allowed is True


def test_list_steps_for_unknown_lead_is_not_found(db_session: Session, timeline: TimelineEngine) -> None:
    with pytest.raises(NotFoundError):
        timeline.list_steps(db_session, uuid.uuid4())


class _FlakyRepository(LeadTimelineRepository):
    def __init__(self, failures: int) -> None:
        self.failures = failures

    def bump_lead_version(self, session: Session, lead: Lead) -> bool:
        if self.failures > 0:
            self.failures -= 1
            return False
        return super().bump_lead_version(session, lead)


def test_version_conflict_is_retried(
    db_session: Session, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    TimelineEngine().initialize(db_session, lead.id)
    timeline = TimelineEngine(repository=_FlakyRepository(failures=2))

    step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert step.status.value == "completed"
    assert _activity_actions(db_session, lead.id) == ["complete_step"]


def test_persistent_version_conflict_gives_up_without_mutation(
    db_session: Session, monkeypatch: pytest.MonkeyPatch, three_steps: dict[str, StepDefinition]
) -> None:
    monkeypatch.setenv("TIMELINE_MAX_RETRIES", "2")
    get_settings.cache_clear()
    lead = _add_lead(db_session)
    TimelineEngine().initialize(db_session, lead.id)
    timeline = TimelineEngine(repository=_FlakyRepository(failures=5))

    with pytest.raises(DatabaseError):
        timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert _statuses(timeline, db_session, lead.id)["Site Survey"] == "pending"
    assert _activity_actions(db_session, lead.id) == []


def test_step_completed_by_another_session_mid_transaction(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'timeline.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    setup = SessionLocal()
    kyc = _add_step(setup, "KYC", 1000, [Role.AGENT])
    install = _add_step(setup, "Install", 2000, [Role.INSTALLER])
    lead = _add_lead(setup)
    TimelineEngine().initialize(setup, lead.id)
    lead_id, kyc_id, install_id = lead.id, kyc.id, install.id
    setup.close()

    first = SessionLocal()
    second = SessionLocal()
    other_agent = Actor(user_id="agent-2", role=Role.AGENT)

    class _InterleavedRepository(LeadTimelineRepository):
        interleaved = False

        def bump_lead_version(self, session: Session, lead: Lead) -> bool:
            # the other session wins after this one has read the timeline
            if not self.interleaved:
                self.interleaved = True
                TimelineEngine().complete_step(second, lead_id, kyc_id, other_agent)
            return super().bump_lead_version(session, lead)

    try:
        with pytest.raises(AlreadyCompletedError):
            TimelineEngine(repository=_InterleavedRepository()).complete_step(first, lead_id, kyc_id, AGENT)

        check = SessionLocal()
        try:
            rows = {
                row.step_definition_id: row
                for row in check.scalars(select(LeadStep).where(LeadStep.lead_id == lead_id)).all()
            }
            assert rows[kyc_id].status == "completed"
            assert rows[kyc_id].completed_by == "agent-2"
            assert rows[install_id].status == "pending"
            assert rows[install_id].row_version == 2
            assert _activity_actions(check, lead_id) == ["complete_step"]
        finally:
            check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


class _BrokenRecorder(ActivityRecorder):
    def record(self, session: Session, entry: ActivityEntry) -> ActivityLog | None:
        return super().record(session, replace(entry, action=None))  # type: ignore[arg-type]


def test_activity_failure_does_not_undo_the_transition(
    db_session: Session, three_steps: dict[str, StepDefinition]
) -> None:
    lead = _add_lead(db_session)
    timeline = TimelineEngine(recorder=_BrokenRecorder())
    timeline.initialize(db_session, lead.id)

    step = timeline.complete_step(db_session, lead.id, three_steps["survey"].id, AGENT)

    assert step.status.value == "completed"
    assert _statuses(timeline, db_session, lead.id)["System Design"] == "pending"
    assert _activity_actions(db_session, lead.id) == []


def test_kyc_then_install_walkthrough(db_session: Session, timeline: TimelineEngine) -> None:
    kyc = _add_step(db_session, "KYC", 1, [Role.AGENT])
    install = _add_step(db_session, "Install", 2, [Role.INSTALLER])
    lead = _add_lead(db_session)

    timeline.initialize(db_session, lead.id)
    assert _statuses(timeline, db_session, lead.id) == {"KYC": "pending", "Install": "upcoming"}

    timeline.complete_step(db_session, lead.id, kyc.id, AGENT)
    assert _statuses(timeline, db_session, lead.id) == {"KYC": "completed", "Install": "pending"}

    with pytest.raises(NotAuthorizedError):
        timeline.complete_step(db_session, lead.id, install.id, AGENT)

    step = timeline.complete_step(db_session, lead.id, install.id, INSTALLER)
    assert step.status.value == "completed"
    assert _statuses(timeline, db_session, lead.id) == {"KYC": "completed", "Install": "completed"}
