"""
Chat blueprint: internal messaging between users and sectors.

Endpoint groups:
  Directory         GET  /api/v1/chat/users | /sectors | /recent?user_id=
  Queries           GET  /api/v1/chat/unread?user_id=&sector_id=
                    GET  /api/v1/chat/conversations/<type>/<id>?user_id=
                    DELETE /api/v1/chat/conversations/<type>/<id>?user_id=
  Messages          POST /api/v1/chat/messages
                    POST /api/v1/chat/messages/read
  Sessions          POST /api/v1/chat/sessions
                    GET/DELETE /api/v1/chat/sessions/<user_id>
                    POST /api/v1/chat/sessions/<user_id>/select | /send | /window
  Presence          GET  /api/v1/chat/presence

Sessions are the live, reconciled view of a user's chat (held in
app.extensions["chat_sessions"]); the query endpoints read the database
directly.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.core.exceptions import NotFoundError
from app.services import chat_service
from app.services.chat_reconciler import Attachment, ConversationSelector
from app.services.chat_session import PRESENCE_CHANNEL
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

chat_bp = Blueprint("chat", __name__, url_prefix="/api/v1/chat")
register_error_handlers(chat_bp)


def _registry():
    return current_app.extensions["chat_sessions"]


def _session(user_id):
    session = _registry().get(user_id)
    if session is None:
        raise NotFoundError(resource="ChatSession", resource_id=user_id)
    return session


# ── Directory ────────────────────────────────────────────────────────────────


@chat_bp.route("/users", methods=["GET"])
def list_users():
    return jsonify(chat_service.fetch_chat_users())


@chat_bp.route("/sectors", methods=["GET"])
def list_sectors():
    return jsonify(chat_service.fetch_chat_sectors())


@chat_bp.route("/recent", methods=["GET"])
def recent_conversations():
    user_id = request.args.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    return jsonify(chat_service.fetch_recent_conversations(user_id))


# ── Queries ──────────────────────────────────────────────────────────────────


@chat_bp.route("/unread", methods=["GET"])
def unread_count():
    user_id = request.args.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    count = chat_service.fetch_unread_count(user_id, request.args.get("sector_id"))
    return jsonify({"user_id": user_id, "unread": count})


@chat_bp.route("/conversations/<conv_type>/<conv_id>", methods=["GET"])
def get_conversation(conv_type, conv_id):
    user_id = request.args.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    return jsonify(chat_service.fetch_conversation(user_id, conv_type, conv_id))


@chat_bp.route("/conversations/<conv_type>/<conv_id>", methods=["DELETE"])
def delete_conversation(conv_type, conv_id):
    user_id = request.args.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    deleted = chat_service.delete_conversation(user_id, conv_id, conv_type)
    return jsonify({"deleted": deleted})


# ── Messages ─────────────────────────────────────────────────────────────────


@chat_bp.route("/messages", methods=["POST"])
def send_message():
    data = request.get_json(silent=True) or {}
    if not data.get("sender_id"):
        return api_error(E.VALIDATION_REQUIRED, "sender_id is required")
    row = chat_service.send_message(
        data["sender_id"],
        data.get("message", ""),
        receiver_id=data.get("receiver_id"),
        sector_id=data.get("sector_id"),
        attachment=data.get("attachment"),
    )
    return jsonify(row), 201


@chat_bp.route("/messages/read", methods=["POST"])
def mark_read():
    data = request.get_json(silent=True) or {}
    ids = data.get("ids") or []
    if not isinstance(ids, list):
        return api_error(E.VALIDATION_INVALID, "ids must be a list")
    return jsonify({"updated": chat_service.mark_as_read(ids)})


# ── Sessions ─────────────────────────────────────────────────────────────────


@chat_bp.route("/sessions", methods=["POST"])
def open_session():
    data = request.get_json(silent=True) or {}
    if not data.get("user_id"):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    session = _registry().open(
        data["user_id"],
        sector_id=data.get("sector_id"),
        meta={"user_id": data["user_id"], "name": data.get("name")},
    )
    return jsonify(session.snapshot()), 201


@chat_bp.route("/sessions/<user_id>", methods=["GET"])
def get_session(user_id):
    return jsonify(_session(user_id).snapshot())


@chat_bp.route("/sessions/<user_id>", methods=["DELETE"])
def close_session(user_id):
    if not _registry().close(user_id):
        raise NotFoundError(resource="ChatSession", resource_id=user_id)
    return jsonify({"closed": True})


@chat_bp.route("/sessions/<user_id>/select", methods=["POST"])
def select_conversation(user_id):
    session = _session(user_id)
    data = request.get_json(silent=True) or {}
    if not data.get("type") or not data.get("id"):
        return api_error(E.VALIDATION_REQUIRED, "type and id are required")
    try:
        selector = ConversationSelector(data["type"], data["id"], data.get("name") or "")
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    session.select_conversation(selector)
    return jsonify(session.snapshot())


@chat_bp.route("/sessions/<user_id>/send", methods=["POST"])
def send_in_session(user_id):
    session = _session(user_id)
    data = request.get_json(silent=True) or {}
    attachment = None
    if data.get("attachment"):
        att = data["attachment"]
        attachment = Attachment(url=att.get("url"), name=att.get("name") or "", mime_type=att.get("type"))
    placeholder = session.send(data.get("message", ""), attachment)
    return jsonify({"temp_id": placeholder.id, "session": session.snapshot()}), 202


@chat_bp.route("/sessions/<user_id>/window", methods=["POST"])
def window_state(user_id):
    session = _session(user_id)
    data = request.get_json(silent=True) or {}
    if "open" in data:
        if data["open"]:
            session.open_window()
        else:
            session.close_window()
    if "focused" in data:
        session.set_focus(data["focused"])
    return jsonify(session.snapshot())


@chat_bp.route("/presence", methods=["GET"])
def presence():
    hub = current_app.extensions["realtime_hub"]
    members = hub.presence(PRESENCE_CHANNEL).state()
    return jsonify({"online_users": sorted(members)})
