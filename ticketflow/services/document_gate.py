"""
Document gate.

Two predicates over a step's recorded documents:

    mandatory     count(is_mandatory docs) >= len(step.mandatory_documents)
                  (a counting gate: names are shown to users, not matched)
    certificate   required only when the step asks for one, the acting
                  role is a certificate role and the ticket does not waive
                  documents; satisfied by any is_completion_certificate doc

The predicates are advisory in step snapshots and hard blockers only when a
COMPLETED transition is attempted.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class DocumentCheck:
    """Outcome of evaluating the document gate for one step (or ticket)."""

    satisfied: bool
    mandatory_required: int
    mandatory_uploaded: int
    certificate_required: bool
    certificate_uploaded: bool
    missing: tuple[str, ...] = field(default_factory=tuple)

    @property
    def message(self) -> str:
        if self.satisfied:
            return ""
        return "Missing documents: " + ", ".join(self.missing)

    def to_dict(self) -> dict:
        return {
            "satisfied": self.satisfied,
            "mandatory_required": self.mandatory_required,
            "mandatory_uploaded": self.mandatory_uploaded,
            "certificate_required": self.certificate_required,
            "certificate_uploaded": self.certificate_uploaded,
            "missing": list(self.missing),
            "message": self.message,
        }


def certificate_required_for(role: str, certificate_roles: Iterable[str], *, waived: bool) -> bool:
    return not waived and (role or "").upper() in {r.upper() for r in certificate_roles}


def evaluate_step_documents(
    step,
    documents: Iterable,
    role: str,
    *,
    waived: bool,
    certificate_roles: Iterable[str],
) -> DocumentCheck:
    """Evaluate both document predicates for ``step``.

    Args:
        step: object with ``mandatory_documents`` and ``completion_certificate_required``.
        documents: the step's recorded documents.
        role: role of the user attempting completion.
        waived: True when the ticket does not require completion documents.
        certificate_roles: roles that must supply a completion certificate.
    """
    docs = list(documents)
    names = list(step.mandatory_documents or [])
    uploaded = sum(1 for d in docs if d.is_mandatory)
    has_certificate = any(d.is_completion_certificate for d in docs)

    cert_required = bool(step.completion_certificate_required) and certificate_required_for(
        role, certificate_roles, waived=waived,
    )

    missing: list[str] = []
    if uploaded < len(names):
        # Which names are still open is unknowable for a counting gate;
        # report the trailing ones so the count matches.
        missing.extend(names[uploaded:])
    if cert_required and not has_certificate:
        missing.append("Completion certificate")

    return DocumentCheck(
        satisfied=not missing,
        mandatory_required=len(names),
        mandatory_uploaded=uploaded,
        certificate_required=cert_required,
        certificate_uploaded=has_certificate,
        missing=tuple(missing),
    )


def evaluate_ticket_certificate(
    ticket,
    documents: Iterable,
    role: str,
    *,
    certificate_roles: Iterable[str],
    certificate_supplied: bool = False,
) -> DocumentCheck:
    """Ticket-level completion certificate check used when completing a ticket.

    ``documents`` are the ticket-level attachments (``step_id IS NULL``).
    """
    required = certificate_required_for(
        role, certificate_roles, waived=not ticket.completion_documents_required,
    )
    has_certificate = certificate_supplied or any(d.is_completion_certificate for d in documents)
    missing = ("Completion certificate",) if required and not has_certificate else ()
    return DocumentCheck(
        satisfied=not missing,
        mandatory_required=0,
        mandatory_uploaded=0,
        certificate_required=required,
        certificate_uploaded=has_certificate,
        missing=missing,
    )
