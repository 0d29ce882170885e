"""
Per-blueprint rate limits (Flask-Limiter).

The Limiter in ``ticketflow/__init__.py`` has no default limit; the table
below decides what each blueprint gets. Requests are keyed by the acting
user so that one noisy client behind a shared proxy does not throttle the
rest of the department.
"""

import logging

from flask import request

logger = logging.getLogger(__name__)

# blueprint name -> limit string; None means exempt
BLUEPRINT_LIMITS = {
    "tickets": "60/minute",
    "steps": "60/minute",
    "documents": "30/minute",
    "finance": "30/minute",
    "audit": "200/minute",
    "health": None,
}


def actor_rate_limit_key() -> str:
    actor = request.headers.get("X-User-Id")
    return f"user:{actor}" if actor else f"ip:{request.remote_addr or 'unknown'}"


def init_rate_limits(app, limiter):
    """Attach ``BLUEPRINT_LIMITS`` to the registered blueprints. No-op in tests."""
    if app.config.get("TESTING"):
        return

    applied = {}
    for name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(name)
        if bp is None:
            continue
        if limit is None:
            limiter.exempt(bp)
        else:
            limiter.limit(limit, key_func=actor_rate_limit_key)(bp)
        applied[name] = limit or "exempt"

    logger.info("Rate limits applied: %s", applied)
