"""
Sequential Counter Service.

Issues per-scope, strictly increasing numbers (ofício / requisição /
processo numbers per sector and year).

Scope key = (sector_id, year). Two well-known non-sector scopes exist:
    - LICITACAO_GLOBAL_ID             bidding processes share one numbering
    - VEHICLE_SCHEDULING_COUNTER_ID   fleet service orders (OS)

Operations:
    peek_next(scope)          -> int | None   never mutates
    increment_and_get(scope)  -> int | None   atomic, single statement

Read-then-write from Python is never used for increments: PostgreSQL and
SQLite get `INSERT ... ON CONFLICT DO UPDATE ... RETURNING`, other
dialects a row lock (`SELECT ... FOR UPDATE`) inside one transaction.

Both operations return None on any database failure. Callers treat None as
"unknown, do not display a number yet", never as zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.counter import SectorCounter

logger = logging.getLogger(__name__)

LICITACAO_GLOBAL_ID = "11111111-1111-1111-1111-111111111111"
VEHICLE_SCHEDULING_COUNTER_ID = "vehicle_scheduling_protocol"

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class CounterScope:
    """(sector_id, year) composite key of a counter."""

    sector_id: str
    year: int

    @classmethod
    def parse(cls, raw) -> "CounterScope":
        """Build a scope from a CounterScope, a (sector_id, year) pair or "sector-2024".

        The year is taken after the *last* dash so sector ids may contain dashes
        (UUIDs do).
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, (tuple, list)) and len(raw) == 2:
            return cls(str(raw[0]), int(raw[1]))
        if isinstance(raw, str) and "-" in raw:
            sector_id, _, year = raw.rpartition("-")
            if sector_id and year.isdigit():
                return cls(sector_id, int(year))
        raise ValueError(f"Invalid counter scope: {raw!r}")

    def __str__(self) -> str:
        return f"{self.sector_id}-{self.year}"


def current_year() -> int:
    return datetime.now().year


def licitacao_scope(year: int | None = None) -> CounterScope:
    return CounterScope(LICITACAO_GLOBAL_ID, year or current_year())


def vehicle_scope(year: int | None = None) -> CounterScope:
    return CounterScope(VEHICLE_SCHEDULING_COUNTER_ID, year or current_year())


def format_number(value: int, year: int, width: int = 3) -> str:
    """Display form of a counter value: 3 -> "003/2024"."""
    return f"{value:0{width}d}/{year}"


# ── Public API ───────────────────────────────────────────────────────────────


def peek_next(scope) -> int | None:
    """Return what the next value would be, without reserving it."""
    scope = CounterScope.parse(scope)
    try:
        current = db.session.execute(
            select(SectorCounter.value).where(
                SectorCounter.sector_id == scope.sector_id,
                SectorCounter.year == scope.year,
            )
        ).scalar_one_or_none()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Counter peek failed", extra={"sector_id": scope.sector_id, "year": scope.year})
        return None
    return (current or 0) + 1


def increment_and_get(scope) -> int | None:
    """Atomically reserve and return the next value for *scope*.

    Concurrent callers never receive the same value: the increment happens
    inside the database in one statement (or under a row lock).
    """
    scope = CounterScope.parse(scope)
    try:
        dialect = db.engine.dialect.name
        if dialect in _UPSERT_DIALECTS:
            value = _upsert_increment(_UPSERT_DIALECTS[dialect], scope)
        else:
            value = _locked_increment(scope)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Counter increment failed", extra={"sector_id": scope.sector_id, "year": scope.year})
        return None

    logger.debug("Counter %s issued %d", scope, value)
    return value


def get_counter(scope) -> dict:
    """Return the raw counter state for admin screens (value 0 when unused)."""
    scope = CounterScope.parse(scope)
    row = SectorCounter.query.filter_by(sector_id=scope.sector_id, year=scope.year).first()
    if row is None:
        return {"sector_id": scope.sector_id, "year": scope.year, "value": 0, "updated_at": None}
    return row.to_dict()


# ── Internal helpers ─────────────────────────────────────────────────────────


def _upsert_increment(insert_fn, scope: CounterScope) -> int:
    table = SectorCounter.__table__
    now = datetime.now(timezone.utc)
    stmt = insert_fn(table).values(
        sector_id=scope.sector_id,
        year=scope.year,
        value=1,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.sector_id, table.c.year],
        set_={"value": table.c.value + 1, "updated_at": now},
    ).returning(table.c.value)
    return db.session.execute(stmt).scalar_one()


def _locked_increment(scope: CounterScope) -> int:
    row = db.session.execute(
        select(SectorCounter)
        .where(SectorCounter.sector_id == scope.sector_id, SectorCounter.year == scope.year)
        .with_for_update()
    ).scalar_one_or_none()
    if row is None:
        row = SectorCounter(sector_id=scope.sector_id, year=scope.year, value=0)
        db.session.add(row)
        db.session.flush()
    row.value = row.value + 1
    db.session.flush()
    return row.value
