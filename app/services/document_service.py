"""
Document service: numbered documents (ofício, compras, diárias, licitação, frota).

Flow:
    draft_defaults()   peek the next number for the editor header (never mutates)
    create_document()  mint the number, stamp it into the snapshot, persist
                       through ProtocolWriter (re-mints on protocol collision)
    update/get/list/delete/update_status  plain CRUD on the block's table

A peek that fails leaves the number out of the draft ("Carregando...");
a failed mint on create raises ProtocolAllocationError.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import or_

from app.core.exceptions import NotFoundError, ProtocolAllocationError, ValidationError
from app.models import db
from app.models.documents import DOCUMENT_MODELS, DOCUMENT_STATUSES
from app.services.counter_service import format_number, increment_and_get, peek_next
from app.services.licitacao_stages import STAGE_CONTENT_KEYS
from app.services.protocol_service import (
    ProtocolWriter,
    display_ref,
    display_title,
    format_protocol,
    get_block,
    replace_number,
)
from app.utils.helpers import paginate_query, parse_datetime

logger = logging.getLogger(__name__)

LOADING_TEXT = "Carregando..."

# Base columns callers may not set through `extra`
_PROTECTED = {
    "id", "protocol", "title", "status", "status_history", "document_snapshot",
    "attachments", "user_id", "user_name", "created_at", "updated_at",
}
_DATETIME_FIELDS = {"departure_at", "return_at"}
_UPDATABLE = {"title", "document_snapshot", "attachments"}


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _model_for(block_type):
    get_block(block_type)
    return DOCUMENT_MODELS[block_type]


def _extra_columns(model, extra: dict | None) -> dict:
    if not extra:
        return {}
    columns = {c.name for c in model.__table__.columns} - _PROTECTED
    unknown = set(extra) - columns
    if unknown:
        raise ValidationError(
            f"Unknown fields for {model.__tablename__}: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )
    values = dict(extra)
    for key in _DATETIME_FIELDS & set(values):
        values[key] = parse_datetime(values[key])
    return values


# ── Drafts ───────────────────────────────────────────────────────────────────


def draft_defaults(block_type, sector_id=None, year=None):
    """Header texts for a new document, numbered with the peeked next value."""
    block = get_block(block_type)
    scope = block.scope_for(sector_id, year)
    value = peek_next(scope)

    draft = {
        "block_type": block.key,
        "sector_id": scope.sector_id,
        "year": scope.year,
        "next_number": value,
        "rightBlockText": block.right_block_text,
    }
    if value is None:
        draft.update({
            "protocol": None,
            "title": f"{block.title_label} {LOADING_TEXT}",
            "leftBlockText": LOADING_TEXT,
        })
    else:
        draft.update({
            "protocol": format_protocol(block.prefix, scope.year, value),
            "title": display_title(block, value, scope.year),
            "leftBlockText": display_ref(block, value, scope.year),
        })
    return draft


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create_document(block_type, sector_id, user_id, user_name, snapshot=None, title=None, extra=None):
    """Mint a protocol and persist a new document; returns the model instance."""
    block = get_block(block_type)
    model = DOCUMENT_MODELS[block_type]
    scope = block.scope_for(sector_id)
    columns = _extra_columns(model, extra)

    value = increment_and_get(scope)
    if value is None:
        raise ProtocolAllocationError(model.__tablename__, 0)

    protocol = format_protocol(block.prefix, scope.year, value)
    number = format_number(value, scope.year)

    snapshot = copy.deepcopy(snapshot or {})
    content = snapshot.setdefault("content", {})
    content["protocol"] = protocol
    content["title"] = replace_number(title or content.get("title") or display_title(block, value, scope.year), number)
    content["leftBlockText"] = replace_number(
        content.get("leftBlockText") or display_ref(block, value, scope.year), number
    )
    content.setdefault("rightBlockText", block.right_block_text)

    doc = model(
        id=str(uuid.uuid4()),
        protocol=protocol,
        title=content["title"],
        status="pending",
        status_history=[],
        document_snapshot=snapshot,
        attachments=[],
        user_id=user_id,
        user_name=user_name,
        **columns,
    )
    if block_type == "compras":
        doc.status_history = [{
            "status": "pending",
            "label": "Criação do Pedido",
            "date": _now_iso(),
            "by": user_name,
        }]
    if block_type == "diarias" and not doc.payment_status:
        doc.payment_status = "pending"
    if block_type == "licitacao":
        doc.stage = doc.stage or "Início"
        doc.requesting_sector = doc.requesting_sector or content.get("requesterSector")

    ProtocolWriter(scope, block).save(doc)
    logger.info(
        "Created %s %s", block_type, doc.protocol,
        extra={"protocol": doc.protocol, "user_id": user_id, "sector_id": scope.sector_id},
    )
    return doc


def get_document(block_type, doc_id):
    model = _model_for(block_type)
    doc = db.session.get(model, doc_id)
    if doc is None:
        raise NotFoundError(resource=model.__name__, resource_id=doc_id)
    return doc


def list_documents(block_type, search=None, status=None, user_id=None, page=1, per_page=20):
    """Newest first, filtered by free text (protocol, title, author, sector) and status."""
    model = _model_for(block_type)
    q = model.query
    if status:
        q = q.filter(model.status == status)
    if user_id:
        q = q.filter(model.user_id == user_id)
    if search:
        term = f"%{search.strip()}%"
        fields = [model.protocol.ilike(term), model.title.ilike(term), model.user_name.ilike(term)]
        if hasattr(model, "requesting_sector"):
            fields.append(model.requesting_sector.ilike(term))
        q = q.filter(or_(*fields))
    q = q.order_by(model.created_at.desc())

    items, total = paginate_query(q, page, per_page)
    return {
        "items": [d.to_dict() for d in items],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def update_document(block_type, doc_id, data):
    """Update editable fields. The protocol is owned by the system and kept in the snapshot."""
    doc = get_document(block_type, doc_id)
    data = dict(data or {})
    extra = {k: data.pop(k) for k in list(data) if k not in _UPDATABLE}
    columns = _extra_columns(type(doc), extra)

    if "title" in data:
        doc.title = data["title"] or ""
    if "attachments" in data:
        doc.attachments = list(data["attachments"] or [])
    if "document_snapshot" in data:
        snapshot = copy.deepcopy(data["document_snapshot"] or {})
        content = snapshot.setdefault("content", {})
        content["protocol"] = doc.protocol
        if block_type == "licitacao":
            _keep_stage_state(content, (doc.document_snapshot or {}).get("content") or {})
        doc.document_snapshot = snapshot
    for key, value in columns.items():
        setattr(doc, key, value)

    db.session.commit()
    return doc


def _keep_stage_state(content: dict, stored: dict) -> None:
    """Stage bodies, signatures and indices of a licitação change only through
    /api/v1/licitacoes/<id>/...; a generic update keeps the stored values."""
    ignored = []
    for key in STAGE_CONTENT_KEYS:
        if content.get(key) != stored.get(key):
            ignored.append(key)
        if key in stored:
            content[key] = copy.deepcopy(stored[key])
        else:
            content.pop(key, None)
    if ignored:
        logger.info("Ignored stage fields on licitação update: %s", ", ".join(ignored))


def update_status(block_type, doc_id, status, by=None, note=None):
    if status not in DOCUMENT_STATUSES:
        raise ValidationError(f"Invalid status: {status}", details={"status": sorted(DOCUMENT_STATUSES)})
    doc = get_document(block_type, doc_id)
    entry = {"status": status, "date": _now_iso(), "by": by}
    if note:
        entry["note"] = note
    doc.status_history = list(doc.status_history or []) + [entry]
    doc.status = status
    db.session.commit()
    logger.info("%s %s -> %s", block_type, doc.protocol, status, extra={"protocol": doc.protocol})
    return doc


def delete_document(block_type, doc_id):
    doc = get_document(block_type, doc_id)
    db.session.delete(doc)
    db.session.commit()
    logger.info("Deleted %s %s", block_type, doc.protocol, extra={"protocol": doc.protocol})
