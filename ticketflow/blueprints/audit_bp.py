"""Audit trail Blueprint (read only).

    GET /api/v1/tickets/<tid>/audit   ?category=&step_id=
"""

from flask import Blueprint, jsonify, request

from ticketflow.services import audit_service, ticket_service
from ticketflow.utils.errors import register_error_handlers

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")
register_error_handlers(audit_bp)


@audit_bp.route("/tickets/<int:ticket_id>/audit", methods=["GET"])
def ticket_audit(ticket_id):
    ticket_service.get_ticket(ticket_id)
    items = audit_service.list_ticket_audit(
        ticket_id,
        category=request.args.get("category"),
        step_id=request.args.get("step_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200
