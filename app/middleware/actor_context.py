"""
Actor Context Middleware — resolves the acting user for API requests.

Credential and session handling happen in front of this service; the
authenticating proxy forwards the user id in ``X-User-Id``.  This hook turns
it into ``g.actor`` (an ``Actor`` with a parsed role) for the route handlers.

Requests without the header, or with an unknown/inactive user, get
``g.actor = None``; routes that need an actor answer 401.

Chain order:
  timing.py  →  actor_context.py  →  route handler
"""

import logging

from flask import g, request

from app.models import db
from app.models.auth import User
from app.services.permission import Actor

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

# Paths that never need an actor
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_actor_context(app):
    """Register actor context middleware as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            return None
        if not raw.isdigit():
            logger.warning("Malformed %s header: %r", ACTOR_HEADER, raw)
            return None

        user = db.session.get(User, int(raw))
        if user is None or not user.is_active:
            logger.warning("%s %s does not resolve to an active user", ACTOR_HEADER, raw)
            return None

        g.actor = Actor.from_user(user)
        return None

    logger.info("Actor context middleware installed")
