"""
Protocolled document models: ofícios, compras, diárias, licitações, frota.

Every table carries a globally unique `protocol` minted from a sequential
counter (see counter_service / protocol_service). A unique-constraint
violation on `protocol` is the signal the protocol writer uses to re-mint
and retry.

`document_snapshot` holds the full editor state as JSON:
    {"content": {"title", "body", "protocol", "leftBlockText", ...}, "document": {...}}
"""

import uuid
from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_STATUSES = {
    "pending", "in_review", "approved", "in_progress", "finishing",
    "completed", "rejected", "cancelled",
}


def _utcnow():
    return datetime.now(timezone.utc)


class ProtocolledMixin:
    """Columns shared by every protocol-numbered document table."""

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    protocol = db.Column(db.String(60), nullable=False, unique=True)
    title = db.Column(db.String(300), nullable=False, default="")
    status = db.Column(db.String(30), nullable=False, default="pending")
    status_history = db.Column(db.JSON, default=list)
    document_snapshot = db.Column(db.JSON, default=dict)
    attachments = db.Column(db.JSON, default=list)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    user_name = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    block_type = None

    @property
    def content(self):
        return (self.document_snapshot or {}).get("content") or {}

    def to_dict(self):
        return {
            "id": self.id,
            "block_type": self.block_type,
            "protocol": self.protocol,
            "title": self.title,
            "status": self.status,
            "status_history": self.status_history or [],
            "document_snapshot": self.document_snapshot or {},
            "attachments": self.attachments or [],
            "user_id": self.user_id,
            "user_name": self.user_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.protocol}: {(self.title or '')[:40]}>"


class Oficio(ProtocolledMixin, db.Model):
    __tablename__ = "oficios"
    block_type = "oficio"

    description = db.Column(db.Text, nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d["description"] = self.description
        return d


class PurchaseOrder(ProtocolledMixin, db.Model):
    __tablename__ = "purchase_orders"
    block_type = "compras"


class ServiceRequest(ProtocolledMixin, db.Model):
    """Per-diem / travel reimbursement request (diárias)."""

    __tablename__ = "service_requests"
    block_type = "diarias"

    payment_status = db.Column(db.String(30), nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d["payment_status"] = self.payment_status
        return d


class LicitacaoProcess(ProtocolledMixin, db.Model):
    """Bidding / tender process; stage content lives in document_snapshot.content."""

    __tablename__ = "licitacao_processes"
    block_type = "licitacao"

    stage = db.Column(db.String(60), nullable=True, comment="Title of the current stage")
    requesting_sector = db.Column(db.String(200), nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d["stage"] = self.stage
        d["requesting_sector"] = self.requesting_sector
        return d


class VehicleSchedule(ProtocolledMixin, db.Model):
    """Fleet scheduling service order (OS)."""

    __tablename__ = "vehicle_schedules"
    block_type = "veiculos"

    vehicle_id = db.Column(db.String(64), nullable=True)
    driver_id = db.Column(db.String(64), nullable=True)
    destination = db.Column(db.String(300), nullable=True)
    departure_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d.update({
            "vehicle_id": self.vehicle_id,
            "driver_id": self.driver_id,
            "destination": self.destination,
            "departure_at": self.departure_at.isoformat() if self.departure_at else None,
            "return_at": self.return_at.isoformat() if self.return_at else None,
        })
        return d


DOCUMENT_MODELS = {
    model.block_type: model
    for model in (Oficio, PurchaseOrder, ServiceRequest, LicitacaoProcess, VehicleSchedule)
}
