from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from solar_crm.core.config import get_settings
from solar_crm.core.rbac import Actor
from solar_crm.crm.documents import DocumentService
from solar_crm.crm.models import Lead, LeadStatus, utcnow
from solar_crm.metrics import (
    observe_gate_rejection,
    observe_lock_conflict,
    observe_timeline_operation,
    observe_timeline_transition,
)
from solar_crm.services.activity import ActivityEntry, ActivityRecorder
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
from solar_crm.timeline.models import CLOSED_STEP_STATUSES, LeadStep, StepDefinition, StepStatus
from solar_crm.timeline.repository import LeadTimelineRepository, StepDefinitionRepository, completion_fields
from solar_crm.timeline.schemas import LeadStepRead, LeadStepView, TimelineInitializeResult, TimelineRewindResult


logger = logging.getLogger("solar_crm.timeline")
tracer = trace.get_tracer("solar_crm.timeline")

T = TypeVar("T")


class DocumentLookup(Protocol):
    def has_valid_submitted_document(self, session: Session, lead_id: uuid.UUID, category: str) -> bool:
        ...


class _VersionConflict(Exception):
    """Another transaction changed the lead timeline between read and write."""


@dataclass(slots=True)
class _Outcome:
    step_ids: list[uuid.UUID]
    activity: list[ActivityEntry]
    action: str
    target_id: uuid.UUID | None = None


@dataclass(slots=True)
class TimelineEngine:
    """Drives a lead through its ordered steps.

    Every mutating call locks the lead row, re-reads the timeline, runs its
    gates and writes inside one transaction. Optimistic version checks catch
    writers that slipped past the lock (or backends without row locks); the
    whole call is then replayed from scratch up to ``timeline_max_retries``
    times. Activity is recorded only after the mutation has committed.
    """

    documents: DocumentLookup = field(default_factory=DocumentService)
    recorder: ActivityRecorder = field(default_factory=ActivityRecorder)
    catalog: StepDefinitionRepository = field(default_factory=StepDefinitionRepository)
    repository: LeadTimelineRepository = field(default_factory=LeadTimelineRepository)
    clock: Callable[[], datetime] = utcnow

    def _run(self, session: Session, operation: str, lead_id: uuid.UUID, attempt_fn: Callable[[], T]) -> T:
        attempts = max(1, get_settings().timeline_max_retries)
        started = time.perf_counter()
        with tracer.start_as_current_span(f"timeline.{operation}") as span:
            span.set_attribute("lead_id", str(lead_id))
            try:
                for attempt in range(1, attempts + 1):
                    try:
                        result = attempt_fn()
                        session.commit()
                        return result
                    except (_VersionConflict, IntegrityError):
                        session.rollback()
                        observe_lock_conflict(operation)
                        logger.warning(
                            "timeline.version_conflict",
                            extra={"lead_id": str(lead_id), "action": operation, "attempt": attempt},
                        )
                raise DatabaseError(
                    f"Lead timeline kept changing concurrently; gave up after {attempts} attempts",
                    details={"lead_id": str(lead_id)},
                )
            except TimelineError as exc:
                session.rollback()
                observe_gate_rejection(exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                extra: dict[str, object] = {
                    "lead_id": str(lead_id),
                    "action": operation,
                    "status": exc.code,
                    "error": exc.message,
                }
                if isinstance(exc, MissingDocumentsError):
                    extra["missing_categories"] = exc.missing_categories
                logger.info("timeline.rejected", extra=extra)
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception(
                    "timeline.database_error",
                    extra={"lead_id": str(lead_id), "action": operation, "error": str(exc)},
                )
                raise DatabaseError(f"Failed to {operation.replace('_', ' ')}") from exc
            finally:
                observe_timeline_operation(operation, time.perf_counter() - started)

    def _lock(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = self.repository.lock_lead(session, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", details={"lead_id": str(lead_id)})
        return lead

    def _claim(self, session: Session, lead: Lead) -> None:
        if not self.repository.bump_lead_version(session, lead):
            raise _VersionConflict()

    def _find_step(self, steps: list[LeadStep], step_id: uuid.UUID, lead_id: uuid.UUID) -> LeadStep:
        for step in steps:
            if step.id == step_id or step.step_definition_id == step_id:
                return step
        raise NotFoundError(
            "Step not found on this lead's timeline",
            details={"lead_id": str(lead_id), "step_id": str(step_id)},
        )

    def _write(self, session: Session, step: LeadStep, **values: object) -> None:
        if not self.repository.update_step(session, step, **values):
            raise _VersionConflict()

    def _activate_successor(self, session: Session, steps: list[LeadStep], current: LeadStep) -> LeadStep | None:
        successor = self.repository.successor(steps, current)
        if successor is None or successor.status != StepStatus.UPCOMING.value:
            return None
        self._write(session, successor, status=StepStatus.PENDING.value)
        return successor

    def _check_role(self, actor: Actor, definition: StepDefinition) -> None:
        if actor.is_admin or actor.role.value in definition.allowed_roles:
            return
        raise NotAuthorizedError(
            f"Role '{actor.role.value}' cannot act on step '{definition.name}'",
            details={"allowed_roles": list(definition.allowed_roles)},
        )

    def _finish(self, session: Session, outcome: _Outcome, lead_id: uuid.UUID, actor: Actor) -> list[LeadStepRead]:
        steps = [LeadStepRead.model_validate(self.repository.get_step(session, lead_id, step_id)) for step_id in outcome.step_ids]
        observe_timeline_transition(outcome.action)
        logger.info(
            "timeline.transition",
            extra={
                "lead_id": str(lead_id),
                "step_id": str(outcome.step_ids[0]) if outcome.step_ids else None,
                "actor_id": actor.user_id,
                "actor_role": actor.role.value,
                "action": outcome.action,
            },
        )
        self.recorder.record_many(session, outcome.activity)
        return steps

    def initialize(self, session: Session, lead_id: uuid.UUID) -> TimelineInitializeResult:
        """Create one step per catalog entry; the first is pending, the rest upcoming.

        Calling it again for a lead that already has steps is a no-op.
        """

        def attempt() -> TimelineInitializeResult:
            lead = self._lock(session, lead_id)
            if self.repository.has_steps(session, lead_id):
                return TimelineInitializeResult(lead_id=lead_id, created_count=0, already_initialized=True)

            definitions = self.catalog.list_ordered(session)
            if not definitions:
                raise DatabaseError("Step catalog is empty; cannot initialize lead timeline", details={"lead_id": str(lead_id)})

            self._claim(session, lead)
            for position, definition in enumerate(definitions):
                session.add(
                    LeadStep(
                        lead_id=lead_id,
                        step_definition_id=definition.id,
                        status=StepStatus.PENDING.value if position == 0 else StepStatus.UPCOMING.value,
                        attachments=[],
                    )
                )
            session.flush()
            return TimelineInitializeResult(lead_id=lead_id, created_count=len(definitions), already_initialized=False)

        result = self._run(session, "initialize", lead_id, attempt)
        logger.info(
            "timeline.initialized",
            extra={"lead_id": str(lead_id), "created_count": result.created_count, "status": "initialized"},
        )
        return result

    def complete_step(
        self,
        session: Session,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        actor: Actor,
        *,
        remarks: str | None = None,
        attachments: list[str] | None = None,
        admin_override: bool = False,
        skip: bool = False,
    ) -> LeadStepRead:
        attachments = [item for item in (attachments or []) if item]
        remarks = remarks if remarks and remarks.strip() else None

        def attempt() -> _Outcome:
            lead = self._lock(session, lead_id)
            steps = self.repository.list_steps(session, lead_id)
            step = self._find_step(steps, step_id, lead_id)
            definition = step.step_definition

            if (admin_override or skip) and not actor.is_admin:
                raise NotAuthorizedError("Only admins can override or skip steps")
            if lead.status == LeadStatus.CLOSED.value and not actor.is_admin:
                raise NotAuthorizedError("Lead is closed", details={"lead_id": str(lead_id)})
            self._check_role(actor, definition)

            if step.status in CLOSED_STEP_STATUSES:
                raise AlreadyCompletedError(
                    f"Step '{definition.name}' is already {step.status}",
                    details={"status": step.status},
                )
            if step.status == StepStatus.UPCOMING.value and not admin_override:
                raise StepNotActiveError(f"Step '{definition.name}' is not active yet", details={"status": step.status})

            if definition.remarks_required and remarks is None:
                raise ValidationError(f"Remarks are required to complete '{definition.name}'")
            if attachments and not definition.attachments_allowed:
                raise ValidationError(f"Step '{definition.name}' does not accept attachments")

            if not admin_override:
                required = self.catalog.required_categories(session, definition.id)
                missing = [
                    category
                    for category in required
                    if not self.documents.has_valid_submitted_document(session, lead_id, category)
                ]
                if missing:
                    raise MissingDocumentsError(missing)

            if admin_override:
                action = "admin_override_skip" if skip else "admin_override_complete"
            else:
                action = "skip_step" if skip else "complete_step"
            new_status = StepStatus.SKIPPED.value if skip else StepStatus.COMPLETED.value
            previous_status = step.status

            self._claim(session, lead)
            self._write(
                session,
                step,
                **completion_fields(
                    status=new_status,
                    completed_by=actor.user_id,
                    completed_at=self.clock(),
                    remarks=remarks,
                    attachments=attachments,
                ),
            )
            successor = self._activate_successor(session, steps, step)
            entry = ActivityEntry(
                actor_id=actor.user_id,
                action=action,
                entity_type="lead_step",
                lead_id=lead_id,
                entity_id=str(step.id),
                old_value={"status": previous_status},
                new_value={
                    "status": new_status,
                    "step_name": definition.name,
                    "remarks": remarks,
                    "attachments": attachments,
                    "activated_step_id": str(successor.id) if successor is not None else None,
                },
            )
            return _Outcome(step_ids=[step.id], activity=[entry], action=action)

        outcome = self._run(session, "complete_step", lead_id, attempt)
        return self._finish(session, outcome, lead_id, actor)[0]

    def skip_step(
        self,
        session: Session,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        actor: Actor,
        *,
        remarks: str | None = None,
    ) -> LeadStepRead:
        """Admin-only terminal skip; remarks are stored exactly as given."""

        def attempt() -> _Outcome:
            if not actor.is_admin:
                raise NotAuthorizedError("Only admins can skip steps")
            lead = self._lock(session, lead_id)
            steps = self.repository.list_steps(session, lead_id)
            step = self._find_step(steps, step_id, lead_id)
            definition = step.step_definition
            if step.status in CLOSED_STEP_STATUSES:
                raise AlreadyCompletedError(
                    f"Step '{definition.name}' is already {step.status}",
                    details={"status": step.status},
                )

            previous_status = step.status
            self._claim(session, lead)
            self._write(
                session,
                step,
                **completion_fields(
                    status=StepStatus.SKIPPED.value,
                    completed_by=actor.user_id,
                    completed_at=self.clock(),
                    remarks=remarks,
                    attachments=[],
                ),
            )
            successor = self._activate_successor(session, steps, step)
            entry = ActivityEntry(
                actor_id=actor.user_id,
                action="skip_step",
                entity_type="lead_step",
                lead_id=lead_id,
                entity_id=str(step.id),
                old_value={"status": previous_status},
                new_value={
                    "status": StepStatus.SKIPPED.value,
                    "step_name": definition.name,
                    "remarks": remarks,
                    "activated_step_id": str(successor.id) if successor is not None else None,
                },
            )
            return _Outcome(step_ids=[step.id], activity=[entry], action="skip_step")

        outcome = self._run(session, "skip_step", lead_id, attempt)
        return self._finish(session, outcome, lead_id, actor)[0]

    def reopen_step(self, session: Session, lead_id: uuid.UUID, step_id: uuid.UUID, actor: Actor) -> LeadStepRead:
        """Return a completed or skipped step to pending and clear its completion fields."""

        def attempt() -> _Outcome:
            lead = self._lock(session, lead_id)
            steps = self.repository.list_steps(session, lead_id)
            step = self._find_step(steps, step_id, lead_id)
            definition = step.step_definition

            if lead.status == LeadStatus.CLOSED.value and not actor.is_admin:
                raise NotAuthorizedError("Lead is closed", details={"lead_id": str(lead_id)})
            self._check_role(actor, definition)
            if step.status not in CLOSED_STEP_STATUSES:
                raise StepNotActiveError(
                    f"Only completed or skipped steps can be reopened; '{definition.name}' is {step.status}",
                    details={"status": step.status},
                )

            overriding = actor.is_admin and actor.role.value not in definition.allowed_roles
            action = "admin_override_reopen" if overriding else "reopen_step"
            previous = {"status": step.status, "completed_by": step.completed_by, "remarks": step.remarks}

            self._claim(session, lead)
            self._write(
                session,
                step,
                **completion_fields(
                    status=StepStatus.PENDING.value,
                    completed_by=None,
                    completed_at=None,
                    remarks=None,
                    attachments=[],
                ),
            )
            entry = ActivityEntry(
                actor_id=actor.user_id,
                action=action,
                entity_type="lead_step",
                lead_id=lead_id,
                entity_id=str(step.id),
                old_value=previous,
                new_value={"status": StepStatus.PENDING.value, "step_name": definition.name},
            )
            return _Outcome(step_ids=[step.id], activity=[entry], action=action)

        outcome = self._run(session, "reopen_step", lead_id, attempt)
        return self._finish(session, outcome, lead_id, actor)[0]

    def rewind(
        self,
        session: Session,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        actor: Actor,
        *,
        remarks: str | None = None,
    ) -> TimelineRewindResult:
        """Move the timeline back to ``step_id``: it becomes pending, every later step upcoming."""

        def attempt() -> _Outcome:
            if not actor.is_admin:
                raise NotAuthorizedError("Only admins can move a timeline backward")
            lead = self._lock(session, lead_id)
            steps = self.repository.list_steps(session, lead_id)
            target = self._find_step(steps, step_id, lead_id)
            target_order = target.step_definition.order_index

            self._claim(session, lead)
            entries: list[ActivityEntry] = []
            reset_ids: list[uuid.UUID] = []
            for step in steps:
                order_index = step.step_definition.order_index
                if order_index < target_order:
                    continue
                new_status = StepStatus.PENDING.value if step.id == target.id else StepStatus.UPCOMING.value
                new_remarks = remarks if step.id == target.id else None
                unchanged = (
                    step.status == new_status
                    and step.completed_by is None
                    and step.completed_at is None
                    and step.remarks == new_remarks
                    and not step.attachments
                )
                if unchanged:
                    continue

                previous_status = step.status
                self._write(
                    session,
                    step,
                    **completion_fields(
                        status=new_status,
                        completed_by=None,
                        completed_at=None,
                        remarks=new_remarks,
                        attachments=[],
                    ),
                )
                reset_ids.append(step.id)
                entries.append(
                    ActivityEntry(
                        actor_id=actor.user_id,
                        action="admin_override_reopen",
                        entity_type="lead_step",
                        lead_id=lead_id,
                        entity_id=str(step.id),
                        old_value={"status": previous_status},
                        new_value={"status": new_status, "step_name": step.step_definition.name, "remarks": new_remarks},
                    )
                )
            return _Outcome(step_ids=reset_ids, activity=entries, action="admin_override_reopen", target_id=target.id)

        outcome = self._run(session, "rewind", lead_id, attempt)
        self._finish(session, outcome, lead_id, actor)
        return TimelineRewindResult(lead_id=lead_id, step_id=outcome.target_id or step_id, reset_count=len(outcome.step_ids))

    def list_steps(self, session: Session, lead_id: uuid.UUID) -> list[LeadStepView]:
        if session.get(Lead, lead_id) is None:
            raise NotFoundError("Lead not found", details={"lead_id": str(lead_id)})

        steps = self.repository.list_steps(session, lead_id)
        names = self.repository.user_names(session, {step.completed_by for step in steps if step.completed_by})
        views: list[LeadStepView] = []
        for step in steps:
            definition = step.step_definition
            base = LeadStepRead.model_validate(step).model_dump()
            views.append(
                LeadStepView(
                    **base,
                    step_name=definition.name,
                    order_index=definition.order_index,
                    allowed_roles=list(definition.allowed_roles),
                    remarks_required=definition.remarks_required,
                    attachments_allowed=definition.attachments_allowed,
                    customer_upload_allowed=definition.customer_upload_allowed,
                    completed_by_name=names.get(step.completed_by) if step.completed_by else None,
                )
            )
        return views


timeline_engine = TimelineEngine()
