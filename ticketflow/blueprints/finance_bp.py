"""
Finance Approval Blueprint.

Endpoints:
    POST   /api/v1/tickets/<tid>/finance
           Body: {"tentative_cost", "cost_deducted_from", "finance_officer_id",
                  "remarks", "current_status"?}
           Returns: 201 {"ticket": snapshot, "approval": approval}
    GET    /api/v1/tickets/<tid>/finance              history, newest first
    POST   /api/v1/finance/approvals/<aid>/approve
           JSON {"ticket_id"?, "remarks"?} or multipart + file "approval_document"
    POST   /api/v1/finance/approvals/<aid>/reject
           JSON {"ticket_id"?, "rejection_reason"} or multipart + file "approval_document"
    GET    /api/v1/finance/approvals/pending          ?finance_officer_id=
    GET    /api/v1/finance/officers
"""

import logging

from flask import Blueprint, jsonify, request

from ticketflow.services import finance_service, ticket_service
from ticketflow.utils.errors import register_error_handlers
from ticketflow.utils.helpers import current_actor_id, request_file, request_payload

logger = logging.getLogger(__name__)

finance_bp = Blueprint("finance", __name__, url_prefix="/api/v1")
register_error_handlers(finance_bp)


@finance_bp.route("/tickets/<int:ticket_id>/finance", methods=["POST"])
def submit(ticket_id):
    data = request.get_json(silent=True) or {}
    result = finance_service.submit_to_finance(
        ticket_id,
        current_actor_id(),
        tentative_cost=data.get("tentative_cost"),
        cost_deducted_from=data.get("cost_deducted_from"),
        finance_officer_id=data.get("finance_officer_id"),
        remarks=data.get("remarks"),
        current_status=data.get("current_status"),
    )
    return jsonify(result), 201


@finance_bp.route("/tickets/<int:ticket_id>/finance", methods=["GET"])
def history(ticket_id):
    ticket_service.get_ticket(ticket_id)
    items = finance_service.get_finance_history(ticket_id)
    return jsonify({"items": items, "total": len(items)}), 200


@finance_bp.route("/finance/approvals/<int:approval_id>/approve", methods=["POST"])
def approve(approval_id):
    data = request_payload()
    result = finance_service.approve_finance_request(
        approval_id,
        current_actor_id(),
        ticket_id=data.get("ticket_id"),
        remarks=data.get("remarks"),
        approval_document=request_file("approval_document"),
    )
    return jsonify(result), 200


@finance_bp.route("/finance/approvals/<int:approval_id>/reject", methods=["POST"])
def reject(approval_id):
    data = request_payload()
    result = finance_service.reject_finance_request(
        approval_id,
        current_actor_id(),
        rejection_reason=data.get("rejection_reason"),
        ticket_id=data.get("ticket_id"),
        approval_document=request_file("approval_document"),
    )
    return jsonify(result), 200


@finance_bp.route("/finance/approvals/pending", methods=["GET"])
def pending():
    items = finance_service.get_pending_approvals(
        finance_officer_id=request.args.get("finance_officer_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@finance_bp.route("/finance/officers", methods=["GET"])
def officers():
    return jsonify({"items": finance_service.list_finance_officers()}), 200
