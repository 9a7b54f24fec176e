"""Realtime layer: push channel (hub), presence, and the ORM change feed."""

from app.realtime.hub import (  # noqa: F401
    DELETE,
    INSERT,
    UPDATE,
    ChangeEvent,
    PresenceChannel,
    RealtimeHub,
    Subscription,
)
from app.realtime.change_feed import install_change_feed  # noqa: F401


def init_realtime(app, tables):
    """Create the app-owned hub and wire the change feed to it."""
    hub = RealtimeHub(delivery=app.config.get("REALTIME_DELIVERY", "thread"))
    app.extensions["realtime_hub"] = hub
    install_change_feed(app, tables)

    if hub.delivery == "deferred":
        @app.after_request
        def _drain_realtime(response):
            hub.drain()
            return response
    else:
        hub.start()
    return hub
