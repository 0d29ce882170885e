"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   process is up; no dependency calls
    GET /api/v1/health/live    database, document store and user directory
                               status; 503 when a critical one is down
"""

from flask import Blueprint, current_app, jsonify

from ticketflow.middleware.diagnostics import check_dependencies

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    healthy, checks = check_dependencies(current_app)
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
