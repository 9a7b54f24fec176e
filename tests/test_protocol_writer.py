"""
Tests: optimistic protocol writes.

Covers:
    - collision on `protocol` re-mints and rewrites embedded display text
    - retry bound: fatal after exactly max_attempts writes
    - mint returning None is fatal
    - non-protocol integrity errors and other failures propagate unchanged
    - end-to-end collision against the real unique index
"""

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ProtocolAllocationError, ValidationError
from app.models import db as _db
from app.models.documents import Oficio
from app.services import document_service
from app.services.counter_service import CounterScope, current_year, peek_next
from app.services.protocol_service import (
    BLOCKS,
    ProtocolWriter,
    format_protocol,
    get_block,
    is_protocol_violation,
    replace_number,
    rewrite_protocol,
)


def _violation(message="UNIQUE constraint failed: oficios.protocol"):
    return IntegrityError("INSERT INTO oficios ...", {}, Exception(message))


def _oficio(value=1, year=2024):
    return Oficio(
        id=f"doc-{value}",
        protocol=format_protocol("OFC", year, value),
        title=f"Ofício nº {value:03d}/{year}",
        document_snapshot={"content": {
            "protocol": format_protocol("OFC", year, value),
            "title": f"Ofício nº {value:03d}/{year}",
            "leftBlockText": f"Ref: Ofício nº {value:03d}/{year}",
            "body": "<p>Texto</p>",
        }},
    )


class _Recorder:
    """Fake write/mint pair: the first `failures` writes collide."""

    def __init__(self, failures, start=2):
        self.failures = failures
        self.writes = []
        self.mints = 0
        self._next = start

    def write(self, entity):
        self.writes.append(entity.protocol)
        if len(self.writes) <= self.failures:
            raise _violation()

    def mint(self, scope):
        self.mints += 1
        value = self._next
        self._next += 1
        return value


# ═════════════════════════════════════════════════════════════════════════════
# RETRY LOOP
# ═════════════════════════════════════════════════════════════════════════════

class TestProtocolWriterRetry:
    def test_first_write_succeeds(self):
        rec = _Recorder(failures=0)
        writer = ProtocolWriter(CounterScope("adm", 2024), "oficio", mint=rec.mint, write=rec.write)
        entity = _oficio()
        assert writer.save(entity) is entity
        assert rec.writes == ["OFC-2024-001"]
        assert rec.mints == 0

    def test_collision_remints_and_rewrites_text(self):
        rec = _Recorder(failures=1, start=7)
        writer = ProtocolWriter(CounterScope("adm", 2024), "oficio", mint=rec.mint, write=rec.write)
        entity = writer.save(_oficio())

        assert rec.writes == ["OFC-2024-001", "OFC-2024-007"]
        assert entity.protocol == "OFC-2024-007"
        assert entity.title == "Ofício nº 007/2024"
        content = entity.document_snapshot["content"]
        assert content["protocol"] == "OFC-2024-007"
        assert content["title"] == "Ofício nº 007/2024"
        assert content["leftBlockText"] == "Ref: Ofício nº 007/2024"
        assert content["body"] == "<p>Texto</p>"

    def test_four_collisions_fail_after_three_writes(self):
        rec = _Recorder(failures=4)
        writer = ProtocolWriter(
            CounterScope("adm", 2024), "oficio", mint=rec.mint, write=rec.write, max_attempts=3,
        )
        with pytest.raises(ProtocolAllocationError) as exc_info:
            writer.save(_oficio())

        assert len(rec.writes) == 3
        assert rec.mints == 2
        assert exc_info.value.attempts == 3
        assert exc_info.value.table == "oficios"

    def test_max_attempts_defaults_to_config(self, app):
        writer = ProtocolWriter(CounterScope("adm", 2024), "oficio")
        assert writer.max_attempts == app.config["PROTOCOL_MAX_ATTEMPTS"] == 3

    def test_mint_failure_is_fatal(self):
        rec = _Recorder(failures=1)
        writer = ProtocolWriter(
            CounterScope("adm", 2024), "oficio", mint=lambda scope: None, write=rec.write,
        )
        with pytest.raises(ProtocolAllocationError):
            writer.save(_oficio())
        assert len(rec.writes) == 1

    def test_other_integrity_error_propagates(self):
        calls = []

        def write(entity):
            calls.append(entity.protocol)
            raise _violation("NOT NULL constraint failed: oficios.title")

        writer = ProtocolWriter(CounterScope("adm", 2024), "oficio", mint=lambda s: 99, write=write)
        with pytest.raises(IntegrityError):
            writer.save(_oficio())
        assert calls == ["OFC-2024-001"]

    def test_non_integrity_error_propagates(self):
        def write(entity):
            raise RuntimeError("disk full")

        writer = ProtocolWriter(CounterScope("adm", 2024), "oficio", mint=lambda s: 99, write=write)
        with pytest.raises(RuntimeError, match="disk full"):
            writer.save(_oficio())


# ═════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═════════════════════════════════════════════════════════════════════════════

class TestProtocolHelpers:
    def test_is_protocol_violation_sqlite_message(self):
        assert is_protocol_violation(_violation())

    def test_is_protocol_violation_other_column(self):
        assert not is_protocol_violation(_violation("UNIQUE constraint failed: profiles.username"))

    def test_is_protocol_violation_pg_constraint(self):
        class _Diag:
            constraint_name = "oficios_protocol_key"

        class _PgError(Exception):
            pgcode = "23505"
            diag = _Diag()

        assert is_protocol_violation(IntegrityError("INSERT", {}, _PgError("duplicate key")))

    def test_is_protocol_violation_pg_other_code(self):
        class _PgError(Exception):
            pgcode = "23502"

        assert not is_protocol_violation(IntegrityError("INSERT", {}, _PgError("protocol unique")))

    def test_replace_number(self):
        assert replace_number("Ref: Ofício nº 001/2024", "014/2024") == "Ref: Ofício nº 014/2024"
        assert replace_number("Sem número", "014/2024") == "Sem número"
        assert replace_number(None, "014/2024") is None

    def test_rewrite_protocol_keeps_unrelated_content(self):
        entity = _oficio()
        entity.document_snapshot["content"]["rightBlockText"] = "Ao Prefeito"
        rewrite_protocol(entity, BLOCKS["oficio"], 12, 2024)
        assert entity.protocol == "OFC-2024-012"
        assert entity.document_snapshot["content"]["rightBlockText"] == "Ao Prefeito"

    def test_get_block_unknown(self):
        with pytest.raises(ValidationError):
            get_block("memorando")

    def test_sector_block_requires_sector(self):
        with pytest.raises(ValidationError):
            BLOCKS["oficio"].scope_for(None)

    def test_licitacao_block_ignores_sector(self):
        scope = BLOCKS["licitacao"].scope_for("adm", 2024)
        assert scope.sector_id != "adm"


# ═════════════════════════════════════════════════════════════════════════════
# END TO END (real unique index)
# ═════════════════════════════════════════════════════════════════════════════

class TestCreateDocumentCollision:
    def test_collision_with_existing_row_remints(self):
        year = current_year()
        taken = _oficio(value=1, year=year)
        taken.id = "existing"
        _db.session.add(taken)
        _db.session.commit()

        doc = document_service.create_document("oficio", "adm", "u1", "Ana")

        assert doc.protocol == format_protocol("OFC", year, 2)
        assert doc.title == f"Ofício nº 002/{year}"
        assert doc.document_snapshot["content"]["leftBlockText"] == f"Ref: Ofício nº 002/{year}"
        assert Oficio.query.count() == 2
        assert peek_next(("adm", year)) == 3
