#!/usr/bin/env python3
"""
Municipal Document & Workflow Platform: demo seed.

Creates a handful of sectors and profiles, one document per block and a
short chat history, so the chat sidebar and document lists have content.

Usage:
    python scripts/seed_demo_data.py            # seed on top of existing data
    python scripts/seed_demo_data.py --reset    # drop + recreate all tables first
"""

import argparse
import sys
import uuid

sys.path.insert(0, ".")

from app import create_app
from app.models import db
from app.models.directory import Profile, Sector
from app.services import chat_service, document_service

_uid = lambda: str(uuid.uuid4())


# ═══════════════════════════════════════════════════════════════════════════
# 1. DIRECTORY
# ═══════════════════════════════════════════════════════════════════════════

SECTORS = [
    ("adm", "Secretaria de Administração"),
    ("sau", "Secretaria de Saúde"),
    ("edu", "Secretaria de Educação"),
    ("obr", "Secretaria de Obras"),
]

PROFILES = [
    ("ana.souza", "Ana Souza", "Secretaria de Administração", "admin", "Secretária"),
    ("bruno.lima", "Bruno Lima", "Secretaria de Saúde", "user", "Assessor"),
    ("carla.dias", "Carla Dias", "Secretaria de Educação", "user", "Coordenadora"),
    ("diego.rocha", "Diego Rocha", "Secretaria de Obras", "user", "Engenheiro"),
]


def seed_directory():
    for sector_id, name in SECTORS:
        if db.session.get(Sector, sector_id) is None:
            db.session.add(Sector(id=sector_id, name=name))
    profiles = {}
    for username, name, sector, role, job_title in PROFILES:
        profile = Profile.query.filter_by(username=username).first()
        if profile is None:
            profile = Profile(
                id=_uid(), name=name, username=username,
                sector=sector, role=role, job_title=job_title,
            )
            db.session.add(profile)
        profiles[username] = profile
    db.session.commit()
    print(f"    sectors: {len(SECTORS)}  profiles: {len(profiles)}")
    return profiles


# ═══════════════════════════════════════════════════════════════════════════
# 2. DOCUMENTS
# ═══════════════════════════════════════════════════════════════════════════

def seed_documents(profiles):
    ana = profiles["ana.souza"]
    bruno = profiles["bruno.lima"]

    oficio = document_service.create_document(
        "oficio", "adm", ana.id, ana.name,
        snapshot={"content": {"body": "<p>Encaminhamos para ciência.</p>"}},
    )
    compra = document_service.create_document(
        "compras", "sau", bruno.id, bruno.name,
        snapshot={"content": {"body": "<p>Aquisição de material hospitalar.</p>"}},
    )
    licitacao = document_service.create_document(
        "licitacao", None, ana.id, ana.name,
        snapshot={"content": {
            "body": "<p>Abertura do processo de pregão eletrônico.</p>",
            "requesterSector": "Secretaria de Administração",
        }},
    )
    for doc in (oficio, compra, licitacao):
        print(f"    {doc.protocol:.<30} {doc.title}")


# ═══════════════════════════════════════════════════════════════════════════
# 3. CHAT
# ═══════════════════════════════════════════════════════════════════════════

def seed_chat(profiles):
    ana = profiles["ana.souza"]
    bruno = profiles["bruno.lima"]
    chat_service.send_message(ana.id, "Bom dia! O ofício já foi protocolado.", receiver_id=bruno.id)
    chat_service.send_message(bruno.id, "Obrigado, vou encaminhar.", receiver_id=ana.id)
    chat_service.send_message(ana.id, "Reunião às 14h na sala de licitações.", sector_id="adm")
    chat_service.send_message(bruno.id, "Atenção: atualização do sistema às 18h.", sector_id="global")
    print("    chat messages: 4")


def main():
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--reset", action="store_true", help="drop and recreate all tables")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        if args.reset:
            db.drop_all()
            db.create_all()
            print("  Tables recreated")
        print("  Directory")
        profiles = seed_directory()
        print("  Documents")
        seed_documents(profiles)
        print("  Chat")
        seed_chat(profiles)


if __name__ == "__main__":
    main()
