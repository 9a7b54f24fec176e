"""
Document blueprint: numbered documents per block type.

Block types: oficio, compras, diarias, licitacao, veiculos.

Endpoints:
    GET    /api/v1/documents/<block_type>/draft?sector_id=&year=   header defaults (peeked number)
    GET    /api/v1/documents/<block_type>                          list (search, status, user_id, page, per_page)
    POST   /api/v1/documents/<block_type>                          create (mints the protocol)
    GET    /api/v1/documents/<block_type>/<doc_id>
    PUT    /api/v1/documents/<block_type>/<doc_id>
    DELETE /api/v1/documents/<block_type>/<doc_id>
    POST   /api/v1/documents/<block_type>/<doc_id>/status          append to status history

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from app.services import document_service
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

document_bp = Blueprint("document", __name__, url_prefix="/api/v1/documents")
register_error_handlers(document_bp)


@document_bp.route("/<block_type>/draft", methods=["GET"])
def draft(block_type):
    return jsonify(document_service.draft_defaults(
        block_type,
        sector_id=request.args.get("sector_id"),
        year=request.args.get("year", type=int),
    ))


@document_bp.route("/<block_type>", methods=["GET"])
def list_documents(block_type):
    return jsonify(document_service.list_documents(
        block_type,
        search=request.args.get("search"),
        status=request.args.get("status"),
        user_id=request.args.get("user_id"),
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    ))


@document_bp.route("/<block_type>", methods=["POST"])
def create_document(block_type):
    data = request.get_json(silent=True) or {}
    if not data.get("user_id"):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")

    doc = document_service.create_document(
        block_type,
        sector_id=data.get("sector_id"),
        user_id=data["user_id"],
        user_name=data.get("user_name"),
        snapshot=data.get("document_snapshot"),
        title=data.get("title"),
        extra=data.get("fields"),
    )
    return jsonify(doc.to_dict()), 201


@document_bp.route("/<block_type>/<doc_id>", methods=["GET"])
def get_document(block_type, doc_id):
    return jsonify(document_service.get_document(block_type, doc_id).to_dict())


@document_bp.route("/<block_type>/<doc_id>", methods=["PUT"])
def update_document(block_type, doc_id):
    data = request.get_json(silent=True) or {}
    doc = document_service.update_document(block_type, doc_id, data)
    return jsonify(doc.to_dict())


@document_bp.route("/<block_type>/<doc_id>", methods=["DELETE"])
def delete_document(block_type, doc_id):
    document_service.delete_document(block_type, doc_id)
    return jsonify({"deleted": True}), 200


@document_bp.route("/<block_type>/<doc_id>/status", methods=["POST"])
def update_status(block_type, doc_id):
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    doc = document_service.update_status(
        block_type, doc_id, data["status"], by=data.get("by"), note=data.get("note"),
    )
    return jsonify(doc.to_dict())
