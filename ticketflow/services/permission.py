"""
Ticket permission table.

Maps (role, relation-to-ticket) to the verbs a user may perform. Evaluated
once per request from directory facts; services call
``check_ticket_permission`` / ``check_step_permission`` before touching any
transition table.

Relations:
    owner       the user created the ticket
    department  the user belongs to the ticket's department
    any         always present

Usage:
    from ticketflow.services.permission import check_ticket_permission

    check_ticket_permission(user, ticket, "complete")   # raises PermissionDenied
"""

from ticketflow.core.exceptions import PermissionDenied

TICKET_VERBS = frozenset({
    "submit",           # DRAFT → CREATED
    "reinstate",        # CANCELLED → CREATED
    "approve",
    "activate",
    "cancel",
    "complete",
    "send_to_finance",
    "edit",
    "change_status",    # any target outside the verb map below
})

STEP_VERBS = frozenset({"manage_steps", "progress_step"})

_ALL = TICKET_VERBS | STEP_VERBS

# (role, relation) → verbs. "*" matches any role.
PERMISSION_TABLE = {
    ("EO", "any"):        _ALL,
    ("DO", "department"): _ALL,
    ("*", "owner"):       frozenset({"submit", "edit"}),
}

# Verb required to reach each target status
_TARGET_VERBS = {
    "APPROVED": "approve",
    "ACTIVE": "activate",
    "CANCELLED": "cancel",
    "COMPLETED": "complete",
    "SENT_TO_FINANCE": "send_to_finance",
}


def transition_verb(from_status: str, to_status: str) -> str:
    """Return the permission verb for a ticket status change."""
    if to_status == "CREATED":
        return "reinstate" if from_status == "CANCELLED" else "submit"
    return _TARGET_VERBS.get(to_status, "change_status")


def relations_for(user, ticket) -> set[str]:
    relations = {"any"}
    if ticket.created_by_id == user.id:
        relations.add("owner")
    if user.department and user.department == ticket.department:
        relations.add("department")
    return relations


def allowed_verbs(user, ticket) -> frozenset:
    verbs: set[str] = set()
    for relation in relations_for(user, ticket):
        verbs |= PERMISSION_TABLE.get((user.role, relation), frozenset())
        verbs |= PERMISSION_TABLE.get(("*", relation), frozenset())
    return frozenset(verbs)


def _refusal(user, ticket, verb: str) -> str | None:
    verbs = allowed_verbs(user, ticket)
    if verb not in verbs:
        return f"role {user.role} on ticket {ticket.id}"
    if _is_manager(user, ticket):
        return None
    if verb == "submit" and ticket.status != "DRAFT":
        return f"ticket {ticket.id} is {ticket.status}, not DRAFT"
    if verb == "edit" and ticket.status not in ("DRAFT", "CREATED"):
        return f"ticket {ticket.id} is {ticket.status}"
    return None


def has_ticket_permission(user, ticket, verb: str) -> bool:
    return _refusal(user, ticket, verb) is None


def check_ticket_permission(user, ticket, verb: str) -> None:
    """Raise PermissionDenied unless ``user`` may perform ``verb`` on ``ticket``.

    Owner-only verbs are further limited unless a manager-level relation
    also grants them: ``submit`` to DRAFT tickets, ``edit`` to DRAFT and
    CREATED ones.
    """
    reason = _refusal(user, ticket, verb)
    if reason is not None:
        raise PermissionDenied(user.id, verb, reason)


def check_step_permission(user, ticket, verb: str, step=None) -> None:
    """Step verbs: managers hold both; the step assignee may progress their step."""
    if verb in allowed_verbs(user, ticket):
        return
    if verb == "progress_step" and step is not None and step.assigned_to_id == user.id:
        return
    raise PermissionDenied(user.id, verb, f"role {user.role} on ticket {ticket.id}")


def _is_manager(user, ticket) -> bool:
    return allowed_verbs(user, ticket) >= TICKET_VERBS
