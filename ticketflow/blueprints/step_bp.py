"""
Workflow Step Blueprint.

Endpoints:
    GET    /api/v1/tickets/<tid>/steps
    POST   /api/v1/tickets/<tid>/steps
    PUT    /api/v1/steps/<sid>                    progress-only edits allowed for the assignee
    DELETE /api/v1/steps/<sid>                    ?force=true loosens dependents
    POST   /api/v1/steps/<sid>/transition         {"new_status", "remarks"?}
    PUT    /api/v1/steps/<sid>/dependencies       {"depends_on_step_ids": [...]}
    POST   /api/v1/steps/<sid>/dependencies/lock
    GET    /api/v1/steps/<sid>/gates              dependency + document gate status
"""

from flask import Blueprint, jsonify, request

from ticketflow.services import step_service
from ticketflow.utils.errors import E, api_error, register_error_handlers
from ticketflow.utils.helpers import as_bool, current_actor_id

step_bp = Blueprint("steps", __name__, url_prefix="/api/v1")
register_error_handlers(step_bp)


@step_bp.route("/tickets/<int:ticket_id>/steps", methods=["GET"])
def list_steps(ticket_id):
    items = step_service.list_steps(ticket_id)
    return jsonify({"items": items, "total": len(items)}), 200


@step_bp.route("/tickets/<int:ticket_id>/steps", methods=["POST"])
def create_step(ticket_id):
    data = request.get_json(silent=True) or {}
    return jsonify(step_service.create_step(ticket_id, current_actor_id(), data)), 201


@step_bp.route("/steps/<int:step_id>", methods=["PUT"])
def update_step(step_id):
    data = request.get_json(silent=True) or {}
    return jsonify(step_service.update_step(step_id, current_actor_id(), data)), 200


@step_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def delete_step(step_id):
    result = step_service.delete_step(
        step_id, current_actor_id(), force=as_bool(request.args.get("force")),
    )
    return jsonify(result), 200


@step_bp.route("/steps/<int:step_id>/transition", methods=["POST"])
def transition_step(step_id):
    data = request.get_json(silent=True) or {}
    new_status = (data.get("new_status") or "").strip().upper()
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "new_status is required")
    result = step_service.transition_step(step_id, new_status, current_actor_id(), data.get("remarks"))
    return jsonify(result), 200


@step_bp.route("/steps/<int:step_id>/dependencies", methods=["PUT"])
def set_dependencies(step_id):
    data = request.get_json(silent=True) or {}
    if "depends_on_step_ids" not in data:
        return api_error(E.VALIDATION_REQUIRED, "depends_on_step_ids is required")
    result = step_service.set_step_dependencies(step_id, current_actor_id(), data["depends_on_step_ids"])
    return jsonify(result), 200


@step_bp.route("/steps/<int:step_id>/dependencies/lock", methods=["POST"])
def lock_dependencies(step_id):
    return jsonify(step_service.lock_step_dependencies(step_id, current_actor_id())), 200


@step_bp.route("/steps/<int:step_id>/gates", methods=["GET"])
def gate_status(step_id):
    return jsonify(step_service.get_step_gate_status(step_id, current_actor_id())), 200
