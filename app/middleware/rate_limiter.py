"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Counter increments and document creation mint protocol numbers
MINT_LIMIT = "30/minute"
WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - counters / documents:  30/minute   (each create burns a number)
        - chat / licitação:      120/minute  (editing and messaging)
        - assets:                300/minute
        - health check:          exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("counter", "document"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(MINT_LIMIT)(bp)

    for bp_name in ("chat", "licitacao"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("asset")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: mint %s, write %s, read %s",
        MINT_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
