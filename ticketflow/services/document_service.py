"""
Document service — records uploads in ``documents`` and moves bytes through
the document store.

Write ordering: the blob is uploaded first, its key is handed to the
surrounding ``unit_of_work`` and the row is flushed; if anything later in the
operation fails the row rolls back and the blob is deleted. On delete the row
goes first and the blob after the commit.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from ticketflow.core.exceptions import PermissionDenied, ValidationError
from ticketflow.integrations.document_store import UploadedFile, get_document_store
from ticketflow.models import db
from ticketflow.models.audit import write_audit
from ticketflow.models.document import Document
from ticketflow.models.ticket import WorkflowStep
from ticketflow.services.permission import has_ticket_permission
from ticketflow.services.ticket_service import lock_ticket, resolve_actor, touch_ticket
from ticketflow.utils.helpers import discard_blobs, get_or_raise, unit_of_work

logger = logging.getLogger(__name__)


def _owner_key(ticket_id: int, step_id: int | None) -> str:
    if step_id is None:
        return f"tickets/{ticket_id}"
    return f"tickets/{ticket_id}/steps/{step_id}"


def store_document(
    ticket,
    upload: UploadedFile,
    actor,
    uploaded: list[str],
    *,
    step=None,
    is_mandatory: bool = False,
    is_completion_certificate: bool = False,
    requirement_name: str | None = None,
) -> Document:
    """Upload ``upload`` and add its Document row to the current transaction.

    The storage key is appended to ``uploaded`` so the caller's
    ``unit_of_work`` can delete the blob if the operation fails.
    """
    if not upload.data:
        raise ValidationError("Uploaded file is empty", {"file": upload.file_name})

    key = get_document_store().upload(upload, _owner_key(ticket.id, step.id if step else None))
    uploaded.append(key)

    doc = Document(
        ticket=ticket,
        step=step,
        storage_key=key,
        file_name=upload.file_name,
        content_type=upload.content_type,
        size_bytes=upload.size,
        requirement_name=requirement_name,
        is_mandatory=is_mandatory,
        is_completion_certificate=is_completion_certificate,
        uploaded_by_id=actor.id,
    )
    db.session.add(doc)
    db.session.flush()
    return doc


def _can_attach(actor, ticket, step) -> bool:
    if has_ticket_permission(actor, ticket, "edit"):
        return True
    if step is not None and step.assigned_to_id == actor.id:
        return True
    return actor.id in (ticket.assigned_to_id, ticket.finance_officer_id)


def upload_document(
    ticket_id,
    actor_id,
    upload: UploadedFile,
    *,
    step_id=None,
    is_mandatory: bool = False,
    is_completion_certificate: bool = False,
    requirement_name: str | None = None,
) -> dict:
    ticket = lock_ticket(ticket_id)
    actor = resolve_actor(actor_id)

    step = None
    if step_id is not None:
        step = get_or_raise(WorkflowStep, step_id)
        if step.ticket_id != ticket.id:
            raise ValidationError(
                f"Step {step_id} does not belong to ticket {ticket.id}",
                {"step_id": step_id, "ticket_id": ticket.id},
            )

    if not _can_attach(actor, ticket, step):
        raise PermissionDenied(actor.id, "upload_document", f"ticket {ticket.id}")

    with unit_of_work("Ticket", ticket.id) as uploaded:
        doc = store_document(
            ticket, upload, actor, uploaded,
            step=step,
            is_mandatory=is_mandatory,
            is_completion_certificate=is_completion_certificate,
            requirement_name=requirement_name,
        )
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id if step else None,
            action="DOCUMENT_UPLOADED",
            category="document_action",
            actor_id=actor.id,
            actor_name=actor.name,
            new_value=doc.file_name,
            description=f"Uploaded {doc.file_name}",
            metadata={
                "document_id": doc.id,
                "is_mandatory": is_mandatory,
                "is_completion_certificate": is_completion_certificate,
                "requirement_name": requirement_name,
                "size_bytes": doc.size_bytes,
            },
        )

    logger.info(
        "Document uploaded",
        extra={"ticket_id": ticket.id, "step_id": doc.step_id, "document_id": doc.id, "actor_id": actor.id},
    )
    return doc.to_dict()


def list_documents(ticket_id, step_id=None) -> list[dict]:
    stmt = select(Document).where(Document.ticket_id == ticket_id)
    if step_id is not None:
        stmt = stmt.where(Document.step_id == step_id)
    stmt = stmt.order_by(Document.uploaded_at, Document.id)
    return [d.to_dict() for d in db.session.execute(stmt).scalars().all()]


def download_document(document_id) -> tuple[Document, bytes]:
    doc = get_or_raise(Document, document_id)
    return doc, get_document_store().download(doc.storage_key)


def delete_document(document_id, actor_id) -> None:
    doc = get_or_raise(Document, document_id)
    ticket = lock_ticket(doc.ticket_id)
    actor = resolve_actor(actor_id)
    if doc.uploaded_by_id != actor.id and not has_ticket_permission(actor, ticket, "edit"):
        raise PermissionDenied(actor.id, "delete_document", f"document {doc.id}")

    key, file_name, step_id = doc.storage_key, doc.file_name, doc.step_id
    with unit_of_work("Ticket", ticket.id):
        db.session.delete(doc)
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step_id,
            action="DOCUMENT_DELETED",
            category="document_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=file_name,
            description=f"Deleted {file_name}",
            metadata={"document_id": document_id},
        )

    discard_blobs([key])
    logger.info(
        "Document deleted",
        extra={"ticket_id": ticket.id, "document_id": document_id, "actor_id": actor.id},
    )
