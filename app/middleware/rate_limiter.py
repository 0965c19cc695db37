"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Evidence upload endpoint (multipart, fans out to storage)
UPLOAD_ENDPOINT = "indicator.submit_evidence"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Evidence uploads:  RATELIMIT_UPLOADS  (default 30/minute)
        - Indicator API:     RATELIMIT_DEFAULT  (default 300/minute)
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    upload_view = app.view_functions.get(UPLOAD_ENDPOINT)
    if upload_view:
        app.view_functions[UPLOAD_ENDPOINT] = limiter.limit(
            app.config["RATELIMIT_UPLOADS"])(upload_view)

    bp = app.blueprints.get("indicator")
    if bp:
        limiter.limit(app.config["RATELIMIT_DEFAULT"])(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — uploads: %s, indicator API: %s",
        app.config["RATELIMIT_UPLOADS"], app.config["RATELIMIT_DEFAULT"],
    )
