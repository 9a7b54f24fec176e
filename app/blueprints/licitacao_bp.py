"""
Licitação blueprint: stage editing of bidding processes.

Processes are created through /api/v1/documents/licitacao; this blueprint
drives the stage machine of an existing process.

Endpoints:
    GET  /api/v1/licitacoes/<id>                       process + stages + editor state
    POST /api/v1/licitacoes/<id>/view                  {"stage_index"}
    PUT  /api/v1/licitacoes/<id>/body                  {"body", "stage_index"?}
    POST /api/v1/licitacoes/<id>/advance               {"by"?}
    PUT  /api/v1/licitacoes/<id>/signer                initial stage signer
    POST /api/v1/licitacoes/<id>/signatures            inline signature tag
    DELETE /api/v1/licitacoes/<id>/signatures          {"marker"}
    POST /api/v1/licitacoes/<id>/status                {"status", "by"?, "note"?}
    GET  /api/v1/licitacoes/<id>/export                "Início"-only snapshot
"""

import logging

from flask import Blueprint, jsonify, request

from app.services import licitacao_service
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

licitacao_bp = Blueprint("licitacao", __name__, url_prefix="/api/v1/licitacoes")
register_error_handlers(licitacao_bp)


def _stage_index(data):
    value = data.get("stage_index")
    if value is None:
        return None, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, "stage_index must be an integer")


@licitacao_bp.route("/<process_id>", methods=["GET"])
def get_process(process_id):
    return jsonify(licitacao_service.get_process(process_id))


@licitacao_bp.route("/<process_id>/view", methods=["POST"])
def view_stage(process_id):
    data = request.get_json(silent=True) or {}
    index, err = _stage_index(data)
    if err:
        return err
    if index is None:
        return api_error(E.VALIDATION_REQUIRED, "stage_index is required")
    return jsonify(licitacao_service.view_stage(process_id, index))


@licitacao_bp.route("/<process_id>/body", methods=["PUT"])
def update_body(process_id):
    data = request.get_json(silent=True) or {}
    if "body" not in data:
        return api_error(E.VALIDATION_REQUIRED, "body is required")
    index, err = _stage_index(data)
    if err:
        return err
    return jsonify(licitacao_service.update_stage_body(process_id, data["body"], stage_index=index))


@licitacao_bp.route("/<process_id>/advance", methods=["POST"])
def advance(process_id):
    data = request.get_json(silent=True) or {}
    return jsonify(licitacao_service.advance_stage(process_id, by=data.get("by")))


@licitacao_bp.route("/<process_id>/signer", methods=["PUT"])
def set_signer(process_id):
    data = request.get_json(silent=True) or {}
    signature = data.get("signature")
    if signature is not None and not signature.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "signature.name is required")
    return jsonify(licitacao_service.set_initial_signer(process_id, signature))


@licitacao_bp.route("/<process_id>/signatures", methods=["POST"])
def add_signature(process_id):
    data = request.get_json(silent=True) or {}
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    return jsonify(licitacao_service.add_signature(process_id, data)), 201


@licitacao_bp.route("/<process_id>/signatures", methods=["DELETE"])
def remove_signature(process_id):
    data = request.get_json(silent=True) or {}
    if not data.get("marker"):
        return api_error(E.VALIDATION_REQUIRED, "marker is required")
    view, removed = licitacao_service.remove_signature(process_id, data["marker"])
    if not removed:
        return api_error(E.NOT_FOUND, "Signature tag not found in current stage")
    return jsonify(view)


@licitacao_bp.route("/<process_id>/status", methods=["POST"])
def update_status(process_id):
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(licitacao_service.update_status(
        process_id, data["status"], by=data.get("by"), note=data.get("note"),
    ))


@licitacao_bp.route("/<process_id>/export", methods=["GET"])
def export_initial_stage(process_id):
    return jsonify(licitacao_service.export_initial_stage(process_id))
