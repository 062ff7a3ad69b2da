# scripts/setup/init_db.py
"""
Initialize database: creates all tables, optionally seeds zones and valets.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py [--seed]
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

import argparse
from datetime import time

from app.database import create_tables, engine
from app.config import settings
from sqlalchemy import inspect, text

# Zone code, slots, priority, name
SEED_ZONES = [
    ("A", 20, 1, "Basement A"),
    ("B", 30, 2, "Basement B"),
]

# Name, phone, employee id, shift start, shift end
SEED_VALETS = [
    ("Arjun", "9876500001", "V-001", time(8, 0), time(16, 0)),
    ("Rahul", "9876500002", "V-002", time(8, 0), time(16, 0)),
    ("Vijay", "9876500003", "V-003", time(16, 0), time(0, 0)),
    ("Suresh", "9876500004", "V-004", time(22, 0), time(6, 0)),
]


def seed():
    from app.container import build_container
    container = build_container("sql")

    existing = {z.zone_code for z in container.zones.list_zones()}
    for code, slots, priority, name in SEED_ZONES:
        if code in existing:
            print(f"   • zone {code} already present")
            continue
        container.zones.create_zone(code, slots, priority=priority, zone_name=name)
        print(f"   ✓ zone {code} ({slots} slots, priority {priority})")

    known = {v.employee_id for v in container.dispatcher.list_valets()}
    for name, phone, employee_id, start, end in SEED_VALETS:
        if employee_id in known:
            print(f"   • valet {employee_id} already present")
            continue
        container.dispatcher.create_valet(name, phone, employee_id, start, end)
        print(f"   ✓ valet {name} ({employee_id}) shift {start:%H:%M}-{end:%H:%M}")


def main():
    parser = argparse.ArgumentParser(description="Create valet tables")
    parser.add_argument("--seed", action="store_true", help="Add demo zones and valets")
    args = parser.parse_args()

    print("🗄️  Valet DB Initialization")
    print("=" * 40)
    print(f"📡 Database: {settings.DATABASE_URL}")

    # Test connection
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except Exception as e:
        print(f"❌ Cannot connect to database: {e}")
        print("\nMake sure PostgreSQL is running:")
        print("  docker-compose up -d db")
        print("  # or: sudo systemctl start postgresql")
        sys.exit(1)

    # Create all tables
    print("\n📋 Creating tables...")
    create_tables()
    print("✅ All tables created")

    tables = sorted(inspect(engine).get_table_names())
    print(f"\n📊 Tables in database ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    if args.seed:
        print("\n🌱 Seeding zones and valets...")
        seed()

    print("\n🎉 Database ready! You can now start the backend:")
    print("   uvicorn app.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    main()
