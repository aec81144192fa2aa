from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from solar_crm.core.rbac import Actor, Role
from solar_crm.crm.models import Document, DocumentStatus, Lead
from solar_crm.crm.schemas import DocumentCreate, DocumentRead
from solar_crm.services.activity import ActivityEntry, ActivityRecorder


logger = logging.getLogger("solar_crm.documents")


@dataclass(slots=True)
class DocumentService:
    recorder: ActivityRecorder = field(default_factory=ActivityRecorder)

    def has_valid_submitted_document(self, session: Session, lead_id: uuid.UUID, category: str) -> bool:
        """True when the lead has a submitted document of ``category`` that is still marked valid."""
        stmt = select(Document.id).where(
            and_(
                Document.lead_id == lead_id,
                Document.document_category == category,
                Document.is_submitted.is_(True),
                Document.status == DocumentStatus.VALID.value,
            )
        )
        return session.scalar(stmt.limit(1)) is not None

    def _get_lead(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def get_document(self, session: Session, document_id: uuid.UUID) -> Document:
        document = session.get(Document, document_id)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document not found")
        return document

    def register(self, session: Session, actor: Actor, lead_id: uuid.UUID, dto: DocumentCreate) -> DocumentRead:
        self._get_lead(session, lead_id)
        document = Document(
            lead_id=lead_id,
            uploaded_by=actor.user_id,
            **dto.model_dump(mode="json"),
        )
        session.add(document)
        session.commit()
        session.refresh(document)

        self.recorder.record(
            session,
            ActivityEntry(
                actor_id=actor.user_id,
                action="upload_document",
                entity_type="document",
                lead_id=lead_id,
                entity_id=str(document.id),
                new_value={"document_category": document.document_category, "file_name": document.file_name},
            ),
        )
        return DocumentRead.model_validate(document)

    def list_for_lead(self, session: Session, lead_id: uuid.UUID) -> list[DocumentRead]:
        self._get_lead(session, lead_id)
        rows = session.scalars(
            select(Document).where(Document.lead_id == lead_id).order_by(Document.uploaded_at.desc())
        ).all()
        return [DocumentRead.model_validate(row) for row in rows]

    def submit(self, session: Session, actor: Actor, document_id: uuid.UUID) -> DocumentRead:
        document = self.get_document(session, document_id)
        if document.status != DocumentStatus.VALID.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="only valid documents can be submitted")
        if document.is_submitted:
            return DocumentRead.model_validate(document)

        document.is_submitted = True
        session.commit()
        session.refresh(document)
        self.recorder.record(
            session,
            ActivityEntry(
                actor_id=actor.user_id,
                action="submit_document",
                entity_type="document",
                lead_id=document.lead_id,
                entity_id=str(document.id),
                old_value={"is_submitted": False},
                new_value={"is_submitted": True},
            ),
        )
        return DocumentRead.model_validate(document)

    def set_status(
        self,
        session: Session,
        actor: Actor,
        document_id: uuid.UUID,
        new_status: DocumentStatus,
    ) -> DocumentRead:
        if actor.role not in {Role.ADMIN, Role.OFFICE}:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admin and office users can review documents")
        if new_status is DocumentStatus.VALID and not actor.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can mark a document valid")

        document = self.get_document(session, document_id)
        previous = document.status
        if previous == new_status.value:
            return DocumentRead.model_validate(document)

        document.status = new_status.value
        session.commit()
        session.refresh(document)
        logger.info(
            "document.status_changed",
            extra={"lead_id": str(document.lead_id), "actor_id": actor.user_id, "status": new_status.value},
        )
        self.recorder.record(
            session,
            ActivityEntry(
                actor_id=actor.user_id,
                action=f"mark_document_{new_status.value}",
                entity_type="document",
                lead_id=document.lead_id,
                entity_id=str(document.id),
                old_value={"status": previous},
                new_value={"status": new_status.value},
            ),
        )
        return DocumentRead.model_validate(document)


document_service = DocumentService()
