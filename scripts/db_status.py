#!/usr/bin/env python3
"""Show DB record counts and current protocol counters."""
import sys
sys.path.insert(0, ".")

from app import create_app
from app.models import db
from app.models.counter import SectorCounter

TABLES = [
    "sectors", "profiles", "sector_counters", "chat_messages",
    "oficios", "purchase_orders", "service_requests",
    "licitacao_processes", "vehicle_schedules",
]

app = create_app()
with app.app_context():
    total = 0
    for t in TABLES:
        c = db.session.execute(db.text(f"SELECT COUNT(*) FROM {t}")).scalar()
        total += c
        print(f"    {t:.<30} {c}")
    print(f"    {'TOTAL':.<30} {total}")

    print()
    for counter in SectorCounter.query.order_by(SectorCounter.sector_id, SectorCounter.year):
        print(f"    {counter.sector_id}-{counter.year:.<30} {counter.value}")
