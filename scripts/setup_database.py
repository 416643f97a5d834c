#!/usr/bin/env python3
# scripts/setup_database.py
"""
Complete database setup script
- Verifies database connection
- Creates all fleet tables
- Lists the tables that exist afterwards
"""
import sys

from sqlalchemy import inspect

from groupfleet.core.config import DATABASE_URL
from groupfleet.db.session import engine, init_db, test_db_connection

EXPECTED_TABLES = ("whatsapp_connections", "group_series", "groups")


def setup():
    print("=" * 70)
    print("🚀 GROUPFLEET DATABASE SETUP")
    print("=" * 70)

    # Step 1: Test connection
    print("\n1️⃣  Testing database connection...")
    print(f"   Database: {DATABASE_URL.split('@')[1] if '@' in DATABASE_URL else 'hidden'}")

    if not test_db_connection():
        print("   ❌ Database connection failed!")
        print("   Please check:")
        print("   - PostgreSQL is running")
        print("   - Database exists")
        print("   - .env configuration is correct")
        return 1
    print("   ✅ Database connected successfully")

    # Step 2: Create tables
    print("\n2️⃣  Creating tables...")
    print("   (use 'alembic upgrade head' for managed migrations)")
    init_db()
    print("   ✅ Tables created")

    # Step 3: Verify tables
    print("\n3️⃣  Verifying database tables...")
    tables = set(inspect(engine).get_table_names())
    missing = [t for t in EXPECTED_TABLES if t not in tables]
    for table in EXPECTED_TABLES:
        print(f"   {'✅' if table in tables else '❌'} {table}")
    if missing:
        print(f"   ❌ Missing tables: {', '.join(missing)}")
        return 1

    print("\n" + "=" * 70)
    print("✅ SETUP COMPLETE")
    print("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(setup())
