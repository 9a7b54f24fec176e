"""
Optimistic Write Coordinator: protocol numbers with bounded retry.

Documents are written with a protocol minted from the sequential counter.
Two writers can still race (a number peeked for display, a counter reset,
a manually inserted row), so the unique index on `protocol` is the final
arbiter:

    write ──ok──────────────────────────────► done
      │
      └─ unique violation on `protocol`
            rollback → mint new value → rewrite protocol + display text → write again

At most `PROTOCOL_MAX_ATTEMPTS` writes (default 3). Exhausting them, or a
mint that returns None, raises ProtocolAllocationError. Any other failure
is rolled back and propagated unchanged.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ProtocolAllocationError, ValidationError
from app.models import db
from app.services.counter_service import (
    CounterScope,
    current_year,
    format_number,
    increment_and_get,
    licitacao_scope,
    vehicle_scope,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
UNIQUE_VIOLATION = "23505"

_NUMBER_RE = re.compile(r"nº\s*\d+/\d{4}")


# ── Block registry ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BlockSpec:
    """Per-document-type numbering and display rules."""

    key: str
    prefix: str
    title_label: str
    ref_label: str
    scope_kind: str = "sector"  # sector | licitacao | vehicle
    right_block_text: str = ""

    def scope_for(self, sector_id: str | None, year: int | None = None) -> CounterScope:
        if self.scope_kind == "licitacao":
            return licitacao_scope(year)
        if self.scope_kind == "vehicle":
            return vehicle_scope(year)
        if not sector_id:
            raise ValidationError(f"sector_id is required for {self.key}", details={"sector_id": "missing"})
        return CounterScope(sector_id, year or current_year())


BLOCKS = {
    "oficio": BlockSpec(
        "oficio", "OFC", "Ofício nº", "Ref: Ofício nº",
        right_block_text="Ao Excelentíssimo Senhor\nPrefeito Municipal",
    ),
    "compras": BlockSpec(
        "compras", "COM", "Requisição de Compras nº", "Ref: Requisição nº",
        right_block_text="Ao Departamento de Compras da\nPrefeitura Municipal",
    ),
    "diarias": BlockSpec(
        "diarias", "DIA", "Solicitação de Diária nº", "Ref: Solicitação nº",
        right_block_text="Ao Setor Financeiro da\nPrefeitura Municipal",
    ),
    "licitacao": BlockSpec(
        "licitacao", "LIC", "Processo Licitatório nº", "Ref: Processo nº",
        scope_kind="licitacao",
        right_block_text="À Comissão Permanente de Licitação",
    ),
    "veiculos": BlockSpec(
        "veiculos", "OS", "Ordem de Serviço nº", "Ref: OS nº",
        scope_kind="vehicle",
    ),
}


def get_block(block_type: str) -> BlockSpec:
    try:
        return BLOCKS[block_type]
    except KeyError:
        raise ValidationError(
            f"Unknown block type: {block_type}",
            details={"block_type": sorted(BLOCKS)},
        ) from None


# ── Formatting ───────────────────────────────────────────────────────────────


def format_protocol(prefix: str, year: int, value: int) -> str:
    """OFC, 2024, 3 -> "OFC-2024-003"."""
    return f"{prefix}-{year}-{value:03d}"


def display_title(block: BlockSpec, value: int, year: int) -> str:
    return f"{block.title_label} {format_number(value, year)}"


def display_ref(block: BlockSpec, value: int, year: int) -> str:
    return f"{block.ref_label} {format_number(value, year)}"


def replace_number(text, number: str):
    if not isinstance(text, str) or not text:
        return text
    return _NUMBER_RE.sub(f"nº {number}", text)


def rewrite_protocol(entity, block: BlockSpec, value: int, year: int) -> str:
    """Point *entity* at a freshly minted number.

    Updates the `protocol` column and every protocol-derived string in the
    snapshot (`content.protocol`, `content.title`, `content.leftBlockText`)
    plus the `title` column, so stored text never shows a stale number.
    """
    protocol = format_protocol(block.prefix, year, value)
    number = format_number(value, year)

    entity.protocol = protocol
    entity.title = replace_number(entity.title, number)

    snapshot = copy.deepcopy(entity.document_snapshot or {})
    content = snapshot.setdefault("content", {})
    content["protocol"] = protocol
    for key in ("title", "leftBlockText"):
        if key in content:
            content[key] = replace_number(content[key], number)
    # reassign so the JSON column is flagged dirty
    entity.document_snapshot = snapshot
    return protocol


def is_protocol_violation(exc: IntegrityError) -> bool:
    """True when *exc* is a unique violation on a `protocol` column."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code and code != UNIQUE_VIOLATION:
        return False

    constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if constraint:
        return "protocol" in constraint

    text = str(orig if orig is not None else exc).lower()
    return "protocol" in text and ("unique" in text or "duplicate" in text)


# ── Writer ───────────────────────────────────────────────────────────────────


def _default_write(entity):
    db.session.add(entity)
    db.session.commit()


def _configured_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("PROTOCOL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
    return DEFAULT_MAX_ATTEMPTS


class ProtocolWriter:
    """Persist a protocolled entity, re-minting on protocol collisions.

    Args:
        scope: Counter scope new values are minted from.
        block: BlockSpec (or block type key) controlling prefix and display text.
        mint: ``scope -> int | None``; defaults to counter_service.increment_and_get.
        write: ``entity -> None``; defaults to add + commit on db.session.
        max_attempts: Total write attempts, including the first.
    """

    def __init__(self, scope, block, mint=None, write=None, max_attempts=None):
        self.scope = CounterScope.parse(scope)
        self.block = block if isinstance(block, BlockSpec) else get_block(block)
        self._mint = mint or increment_and_get
        self._write = write or _default_write
        self.max_attempts = max_attempts or _configured_attempts()

    def save(self, entity):
        table = getattr(entity, "__tablename__", type(entity).__name__)
        attempt = 0
        while True:
            attempt += 1
            try:
                self._write(entity)
            except IntegrityError as exc:
                db.session.rollback()
                if not is_protocol_violation(exc):
                    raise
                logger.warning(
                    "Protocol collision on %s (attempt %d/%d)",
                    entity.protocol, attempt, self.max_attempts,
                    extra={"protocol": entity.protocol, "attempt": attempt},
                )
                if attempt >= self.max_attempts:
                    raise ProtocolAllocationError(table, attempt, entity.protocol) from exc
                self._remint(entity, table, attempt)
            except Exception:
                db.session.rollback()
                raise
            else:
                if attempt > 1:
                    logger.info(
                        "Saved %s with protocol %s after %d attempts",
                        table, entity.protocol, attempt,
                        extra={"protocol": entity.protocol, "attempt": attempt},
                    )
                return entity

    def _remint(self, entity, table, attempt):
        value = self._mint(self.scope)
        if value is None:
            raise ProtocolAllocationError(table, attempt, entity.protocol)
        rewrite_protocol(entity, self.block, value, self.scope.year)
