"""
Sequential counter model.

One row per (sector_id, year) scope. `value` holds the last number issued
for that scope; a missing row means nothing was issued yet.
Only counter_service mutates this table, always through a single atomic
statement.
"""

from datetime import datetime, timezone

from app.models import db


class SectorCounter(db.Model):
    __tablename__ = "sector_counters"

    id = db.Column(db.Integer, primary_key=True)
    sector_id = db.Column(
        db.String(64), nullable=False,
        comment="Sector id, or a well-known scope id (licitacao / vehicle scheduling)",
    )
    year = db.Column(db.Integer, nullable=False)
    value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("sector_id", "year", name="uq_sector_counters_scope"),
    )

    def to_dict(self):
        return {
            "sector_id": self.sector_id,
            "year": self.year,
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SectorCounter {self.sector_id}/{self.year}={self.value}>"
