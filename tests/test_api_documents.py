"""
Tests: counter and document API.

Covers:
    - counter peek / increment endpoints and the 503 on failure
    - draft header defaults, "Carregando..." when the peek fails
    - document create per block type (protocol, snapshot text, block extras)
    - list search / status filter / pagination
    - update keeps the protocol, status history, delete
"""

import pytest

from app.services import counter_service
from app.services.counter_service import current_year


def _create(client, block_type="oficio", **kw):
    payload = {"user_id": "u1", "user_name": "Ana Souza", "sector_id": "adm"}
    payload.update(kw)
    res = client.post(f"/api/v1/documents/{block_type}", json=payload)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# COUNTERS
# ═════════════════════════════════════════════════════════════════════════════

class TestCounterAPI:
    def test_peek_increment_peek(self, client):
        res = client.get("/api/v1/counters/sectorA/2024/next")
        assert res.get_json()["next"] == 1

        res = client.post("/api/v1/counters/sectorA/2024/increment")
        assert res.status_code == 201
        assert res.get_json()["value"] == 1
        assert res.get_json()["display"] == "001/2024"

        res = client.get("/api/v1/counters/sectorA/2024/next")
        assert res.get_json()["next"] == 2

        res = client.get("/api/v1/counters/sectorA/2024")
        assert res.get_json()["value"] == 1

    def test_peek_failure_returns_null(self, client, monkeypatch):
        monkeypatch.setattr(counter_service, "peek_next", lambda scope: None)
        res = client.get("/api/v1/counters/sectorA/2024/next")
        assert res.status_code == 200
        assert res.get_json()["next"] is None
        assert res.get_json()["display"] is None

    def test_increment_failure_is_503(self, client, monkeypatch):
        monkeypatch.setattr(counter_service, "increment_and_get", lambda scope: None)
        res = client.post("/api/v1/counters/sectorA/2024/increment")
        assert res.status_code == 503
        assert res.get_json()["code"] == "ERR_COUNTER_UNAVAILABLE"


# ═════════════════════════════════════════════════════════════════════════════
# DRAFTS
# ═════════════════════════════════════════════════════════════════════════════

class TestDraft:
    def test_draft_uses_peeked_number(self, client):
        res = client.get("/api/v1/documents/oficio/draft?sector_id=adm&year=2024")
        data = res.get_json()
        assert data["protocol"] == "OFC-2024-001"
        assert data["title"] == "Ofício nº 001/2024"
        assert data["leftBlockText"] == "Ref: Ofício nº 001/2024"

    def test_draft_does_not_consume_numbers(self, client):
        client.get("/api/v1/documents/oficio/draft?sector_id=adm&year=2024")
        res = client.get("/api/v1/documents/oficio/draft?sector_id=adm&year=2024")
        assert res.get_json()["next_number"] == 1

    def test_draft_when_counter_unavailable(self, client, monkeypatch):
        from app.services import document_service
        monkeypatch.setattr(document_service, "peek_next", lambda scope: None)
        data = client.get("/api/v1/documents/oficio/draft?sector_id=adm").get_json()
        assert data["protocol"] is None
        assert data["leftBlockText"] == "Carregando..."

    def test_draft_requires_sector_for_sector_blocks(self, client):
        res = client.get("/api/v1/documents/oficio/draft")
        assert res.status_code == 422

    def test_unknown_block_type(self, client):
        res = client.get("/api/v1/documents/memorando/draft?sector_id=adm")
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

class TestDocumentCRUD:
    def test_create_stamps_protocol_into_snapshot(self, client):
        year = current_year()
        doc = _create(client, document_snapshot={"content": {"body": "<p>Texto</p>"}})
        content = doc["document_snapshot"]["content"]
        assert doc["protocol"] == f"OFC-{year}-001"
        assert doc["title"] == f"Ofício nº 001/{year}"
        assert content["protocol"] == doc["protocol"]
        assert content["leftBlockText"] == f"Ref: Ofício nº 001/{year}"
        assert content["body"] == "<p>Texto</p>"
        assert content["rightBlockText"]

    def test_sequential_creates_per_sector(self, client):
        year = current_year()
        assert _create(client)["protocol"] == f"OFC-{year}-001"
        assert _create(client)["protocol"] == f"OFC-{year}-002"
        assert _create(client, sector_id="edu")["protocol"] == f"OFC-{year}-001"

    def test_create_requires_user(self, client):
        res = client.post("/api/v1/documents/oficio", json={"sector_id": "adm"})
        assert res.status_code == 400

    def test_create_rejects_unknown_fields(self, client):
        res = client.post("/api/v1/documents/oficio", json={
            "user_id": "u1", "sector_id": "adm", "fields": {"priority": "high"},
        })
        assert res.status_code == 422
        assert res.get_json()["details"]["fields"] == ["priority"]

    def test_block_specific_defaults(self, client):
        compra = _create(client, "compras")
        assert compra["status_history"][0]["label"] == "Criação do Pedido"

        diaria = _create(client, "diarias")
        assert diaria["payment_status"] == "pending"

        lic = _create(client, "licitacao", sector_id=None, document_snapshot={
            "content": {"requesterSector": "Administração"},
        })
        assert lic["protocol"].startswith("LIC-")
        assert lic["stage"] == "Início"
        assert lic["requesting_sector"] == "Administração"

    def test_vehicle_schedule_fields(self, client):
        doc = _create(client, "veiculos", fields={
            "destination": "Capital", "departure_at": "10/06/2024 08:00",
        })
        assert doc["protocol"].startswith("OS-")
        assert doc["destination"] == "Capital"
        assert doc["departure_at"].startswith("2024-06-10T08:00")

    def test_get_missing(self, client):
        res = client.get("/api/v1/documents/oficio/nope")
        assert res.status_code == 404

    def test_update_keeps_protocol(self, client):
        doc = _create(client)
        res = client.put(f"/api/v1/documents/oficio/{doc['id']}", json={
            "title": "Ofício revisado",
            "document_snapshot": {"content": {"protocol": "HACK-1", "body": "<p>novo</p>"}},
            "description": "Resposta à Câmara",
        })
        data = res.get_json()
        assert res.status_code == 200
        assert data["title"] == "Ofício revisado"
        assert data["document_snapshot"]["content"]["protocol"] == doc["protocol"]
        assert data["description"] == "Resposta à Câmara"

    def test_status_history(self, client):
        doc = _create(client)
        res = client.post(f"/api/v1/documents/oficio/{doc['id']}/status", json={
            "status": "approved", "by": "Ana", "note": "ok",
        })
        data = res.get_json()
        assert data["status"] == "approved"
        assert data["status_history"][-1]["note"] == "ok"

        res = client.post(f"/api/v1/documents/oficio/{doc['id']}/status", json={"status": "lost"})
        assert res.status_code == 422

    def test_delete(self, client):
        doc = _create(client)
        assert client.delete(f"/api/v1/documents/oficio/{doc['id']}").status_code == 200
        assert client.get(f"/api/v1/documents/oficio/{doc['id']}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# LIST
# ═════════════════════════════════════════════════════════════════════════════

class TestDocumentList:
    @pytest.fixture()
    def docs(self, client):
        return [
            _create(client, title="Ofício nº 001/2024 Iluminação pública"),
            _create(client, title="Ofício nº 002/2024 Transporte escolar", user_name="Bruno Lima"),
            _create(client, title="Ofício nº 003/2024 Merenda"),
        ]

    def test_newest_first(self, client, docs):
        items = client.get("/api/v1/documents/oficio").get_json()["items"]
        assert [d["id"] for d in items] == [d["id"] for d in reversed(docs)]

    def test_search(self, client, docs):
        data = client.get("/api/v1/documents/oficio?search=escolar").get_json()
        assert data["total"] == 1
        data = client.get("/api/v1/documents/oficio?search=bruno").get_json()
        assert data["total"] == 1
        data = client.get(f"/api/v1/documents/oficio?search={docs[0]['protocol']}").get_json()
        assert data["items"][0]["id"] == docs[0]["id"]

    def test_status_filter_and_pagination(self, client, docs):
        client.post(f"/api/v1/documents/oficio/{docs[0]['id']}/status", json={"status": "completed"})
        data = client.get("/api/v1/documents/oficio?status=completed").get_json()
        assert data["total"] == 1

        page = client.get("/api/v1/documents/oficio?page=2&per_page=2").get_json()
        assert page["total"] == 3
        assert len(page["items"]) == 1
