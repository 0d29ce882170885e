"""
Document Blueprint.

Endpoints:
    POST   /api/v1/tickets/<tid>/documents
           multipart: file "file"; form step_id?, is_mandatory?,
           is_completion_certificate?, requirement_name?
    GET    /api/v1/tickets/<tid>/documents        ?step_id=
    GET    /api/v1/documents/<did>                raw bytes
    DELETE /api/v1/documents/<did>
"""

import io
import logging

from flask import Blueprint, jsonify, request, send_file

from ticketflow.services import document_service, ticket_service
from ticketflow.utils.errors import E, api_error, register_error_handlers
from ticketflow.utils.helpers import as_bool, current_actor_id, request_file

logger = logging.getLogger(__name__)

document_bp = Blueprint("documents", __name__, url_prefix="/api/v1")
register_error_handlers(document_bp)


@document_bp.route("/tickets/<int:ticket_id>/documents", methods=["POST"])
def upload(ticket_id):
    upload_file = request_file("file")
    if upload_file is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")

    form = request.form
    step_id = form.get("step_id", type=int)
    doc = document_service.upload_document(
        ticket_id,
        current_actor_id(),
        upload_file,
        step_id=step_id,
        is_mandatory=as_bool(form.get("is_mandatory")),
        is_completion_certificate=as_bool(form.get("is_completion_certificate")),
        requirement_name=(form.get("requirement_name") or "").strip() or None,
    )
    return jsonify(doc), 201


@document_bp.route("/tickets/<int:ticket_id>/documents", methods=["GET"])
def list_documents(ticket_id):
    ticket_service.get_ticket(ticket_id)
    items = document_service.list_documents(ticket_id, request.args.get("step_id", type=int))
    return jsonify({"items": items, "total": len(items)}), 200


@document_bp.route("/documents/<int:document_id>", methods=["GET"])
def download(document_id):
    doc, data = document_service.download_document(document_id)
    return send_file(
        io.BytesIO(data),
        mimetype=doc.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=doc.file_name,
    )


@document_bp.route("/documents/<int:document_id>", methods=["DELETE"])
def delete(document_id):
    document_service.delete_document(document_id, current_actor_id())
    return jsonify({"deleted": True, "id": document_id}), 200
