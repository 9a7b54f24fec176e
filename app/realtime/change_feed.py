"""
Change feed: turns committed ORM writes into RealtimeHub events.

Rows of tracked tables touched during a flush are collected on the
session (`session.info`) and published to the app's hub only after the
transaction commits. A rollback discards them, so subscribers never see
a row that does not exist.
"""

from __future__ import annotations

import logging

from flask import current_app, has_app_context
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from app.realtime.hub import DELETE, INSERT, UPDATE, ChangeEvent, RealtimeHub

logger = logging.getLogger(__name__)

_PENDING_KEY = "realtime_pending"
_installed = False


def _hub() -> RealtimeHub | None:
    if not has_app_context():
        return None
    return current_app.extensions.get("realtime_hub")


def _tracked_tables() -> set:
    return current_app.extensions.get("realtime_tables", set())


def _row(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    mapper = inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


def _previous_values(obj) -> dict:
    """Row as it was before this flush (only changed columns differ)."""
    old = _row(obj)
    state = inspect(obj)
    for attr in state.mapper.column_attrs:
        hist = state.attrs[attr.key].history
        if hist.deleted:
            old[attr.key] = hist.deleted[0]
    return old


# ── Session listeners ────────────────────────────────────────────────────────


def _after_flush(session, flush_context):
    if _hub() is None:
        return
    tables = _tracked_tables()
    pending = session.info.setdefault(_PENDING_KEY, [])

    for obj in session.new:
        table = getattr(obj, "__tablename__", None)
        if table in tables:
            pending.append(ChangeEvent(table, INSERT, new=_row(obj)))
    for obj in session.dirty:
        table = getattr(obj, "__tablename__", None)
        if table in tables and session.is_modified(obj, include_collections=False):
            pending.append(ChangeEvent(table, UPDATE, new=_row(obj), old=_previous_values(obj)))
    for obj in session.deleted:
        table = getattr(obj, "__tablename__", None)
        if table in tables:
            pending.append(ChangeEvent(table, DELETE, old=_row(obj)))


def _after_commit(session):
    events = session.info.pop(_PENDING_KEY, None)
    if not events:
        return
    hub = _hub()
    if hub is None:
        return
    for evt in events:
        hub.publish(evt)
    logger.debug("Published %d change event(s)", len(events))


def _after_rollback(session, previous_transaction):
    dropped = session.info.pop(_PENDING_KEY, None)
    if dropped:
        logger.debug("Discarded %d change event(s) on rollback", len(dropped))


# ── Installation ─────────────────────────────────────────────────────────────


def install_change_feed(app, tables) -> None:
    """Publish committed changes of *tables* to app.extensions["realtime_hub"].

    Listeners are registered once per process on the Session class; each
    app declares its own tracked tables.
    """
    global _installed
    app.extensions["realtime_tables"] = set(tables)
    if not _installed:
        event.listen(Session, "after_flush", _after_flush)
        event.listen(Session, "after_commit", _after_commit)
        event.listen(Session, "after_soft_rollback", _after_rollback)
        _installed = True
    logger.info("Change feed tracking %s", ", ".join(sorted(app.extensions["realtime_tables"])))
