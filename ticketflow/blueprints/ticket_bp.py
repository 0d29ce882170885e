"""
Ticket Blueprint.

Endpoints:
    POST   /api/v1/tickets                          create (DRAFT)
    GET    /api/v1/tickets                          list; ?department=&status=&created_by_id=
    GET    /api/v1/tickets/<tid>                    snapshot with steps and documents
    PUT    /api/v1/tickets/<tid>                    edit non-status fields
    GET    /api/v1/tickets/<tid>/transitions        statuses the caller may request
    POST   /api/v1/tickets/<tid>/transition         change status
           JSON: {"new_status", "remarks", "current_status"?}
           multipart: same fields + file "completion_certificate"
           new_status=SENT_TO_FINANCE is routed to the finance submission
           and additionally needs tentative_cost, cost_deducted_from,
           finance_officer_id.

Layer contract:
    - Blueprint: parse input, read the actor from X-User-Id, call service.
    - NO db.session calls here; all writes owned by the services.
    - Errors are core exceptions mapped by register_error_handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from ticketflow.services import finance_service, ticket_lifecycle, ticket_service
from ticketflow.utils.errors import E, api_error, register_error_handlers
from ticketflow.utils.helpers import (
    current_actor_id,
    request_file,
    request_payload,
)

logger = logging.getLogger(__name__)

ticket_bp = Blueprint("tickets", __name__, url_prefix="/api/v1")
register_error_handlers(ticket_bp)


# ═════════════════════════════════════════════════════════════════════════
# Tickets
# ═════════════════════════════════════════════════════════════════════════


@ticket_bp.route("/tickets", methods=["POST"])
def create_ticket():
    data = request.get_json(silent=True) or {}
    snapshot = ticket_service.create_ticket(current_actor_id(), data)
    return jsonify(snapshot), 201


@ticket_bp.route("/tickets", methods=["GET"])
def list_tickets():
    items = ticket_service.list_tickets(
        department=request.args.get("department"),
        status=request.args.get("status"),
        created_by_id=request.args.get("created_by_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@ticket_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
def get_ticket(ticket_id):
    ticket = ticket_service.get_ticket(ticket_id)
    return jsonify(ticket_service.ticket_snapshot(ticket)), 200


@ticket_bp.route("/tickets/<int:ticket_id>", methods=["PUT"])
def update_ticket(ticket_id):
    data = request.get_json(silent=True) or {}
    snapshot = ticket_service.update_ticket(
        ticket_id, current_actor_id(), data, current_status=data.get("current_status"),
    )
    return jsonify(snapshot), 200


# ═════════════════════════════════════════════════════════════════════════
# Status transitions
# ═════════════════════════════════════════════════════════════════════════


@ticket_bp.route("/tickets/<int:ticket_id>/transitions", methods=["GET"])
def available_transitions(ticket_id):
    ticket = ticket_service.get_ticket(ticket_id)
    actor = ticket_service.resolve_actor(current_actor_id())
    return jsonify({
        "ticket_id": ticket.id,
        "current_status": ticket.status,
        "available_transitions": ticket_lifecycle.get_available_transitions(ticket, actor),
        "can_send_to_finance": ticket_lifecycle.can_send_to_finance(ticket),
    }), 200


@ticket_bp.route("/tickets/<int:ticket_id>/transition", methods=["POST"])
def transition_ticket(ticket_id):
    data = request_payload()
    new_status = (data.get("new_status") or "").strip().upper()
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "new_status is required")
    actor_id = current_actor_id()

    if new_status == "SENT_TO_FINANCE":
        result = finance_service.submit_to_finance(
            ticket_id,
            actor_id,
            tentative_cost=data.get("tentative_cost"),
            cost_deducted_from=data.get("cost_deducted_from"),
            finance_officer_id=data.get("finance_officer_id"),
            remarks=data.get("remarks"),
            current_status=data.get("current_status"),
        )
        return jsonify(result["ticket"]), 200

    snapshot = ticket_lifecycle.transition_ticket(
        ticket_id,
        new_status,
        actor_id,
        data.get("remarks"),
        current_status=data.get("current_status"),
        completion_certificate=request_file("completion_certificate"),
    )
    return jsonify(snapshot), 200
