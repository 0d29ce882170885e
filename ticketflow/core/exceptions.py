"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register a handler per
type once (see ``ticketflow.utils.errors.register_error_handlers``) and get
consistent HTTP status codes and ``{"error", "code", "details"}`` bodies.

Usage:
    from ticketflow.core.exceptions import NotFoundError, PreconditionFailed

    raise NotFoundError(resource="Ticket", resource_id=42)
    raise PreconditionFailed("Step 7 has unmet dependencies",
                             step_id=7, requirement="dependencies")

Nothing raised here is ever downgraded to a generic failure: the caller
always learns which gate refused and why.
"""


class TicketflowError(Exception):
    """Base class. ``details`` is always a dict safe to serialise as JSON."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(TicketflowError):
    """Raised when a ticket, step, approval, document or user id does not resolve.

    Args:
        resource: Human-readable entity name (e.g. "Ticket", "FinanceApproval").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class ValidationError(TicketflowError):
    """Malformed or out-of-range input (short remarks, non-positive cost, ...).

    Maps to HTTP 400. ``details`` carries field-level messages.
    """


class PermissionDenied(TicketflowError):
    """The actor's role/relation does not grant the verb, or the actor is not
    the finance officer assigned to an approval."""

    def __init__(self, user_id, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        msg = f"User {user_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {"user_id": user_id, "action": action, "reason": reason})


class InvalidTransition(TicketflowError):
    """The (from, to) status pair is not in the transition table."""

    def __init__(self, entity: str, from_status: str, to_status: str, reason: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        msg = f"Cannot move {entity} from {from_status} to {to_status}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {
            "entity": entity,
            "from_status": from_status,
            "to_status": to_status,
            "reason": reason,
        })


class PreconditionFailed(TicketflowError):
    """A completion gate (dependencies, documents, finance) is unmet.

    Always names the requirement and, for step gates, the blocking step.
    """

    def __init__(
        self,
        message: str,
        *,
        requirement: str,
        step_id: int | None = None,
        details: dict | None = None,
    ) -> None:
        self.requirement = requirement
        self.step_id = step_id
        payload = {"requirement": requirement, "step_id": step_id}
        payload.update(details or {})
        super().__init__(message, payload)


class InvalidState(TicketflowError):
    """The target entity is in a state that forbids the operation
    (approval already decided, a pending approval already exists, steps
    frozen while the ticket is with finance)."""


class StaleStateError(TicketflowError):
    """The caller acted on an outdated view of the ticket, or a concurrent
    request committed first. Maps to HTTP 409."""

    def __init__(self, resource: str, resource_id, expected: str | None = None, actual: str | None = None) -> None:
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected status {expected}, found {actual})"
        super().__init__(msg, {
            "resource": resource,
            "resource_id": resource_id,
            "expected": expected,
            "actual": actual,
        })


class DependencyUnavailable(TicketflowError):
    """The document store, user directory or database could not be reached."""

    def __init__(self, dependency: str, message: str | None = None) -> None:
        self.dependency = dependency
        super().__init__(message or f"{dependency} is unavailable", {"dependency": dependency})
