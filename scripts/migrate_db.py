#!/usr/bin/env python3
"""
Database Migration — Create tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, no changes
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(db) -> list[str]:
    from sqlalchemy import text

    if db.dialect == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    async with db.engine.connect() as conn:
        result = await conn.execute(text(query))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings()
    db = Database(settings.database)
    await db.connect()
    try:
        defined = set(Base.metadata.tables.keys())
        print(f"Database: {db.dialect}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        if check_only:
            existing = await _existing_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await db.create_all()
        existing = await _existing_tables(db)
        print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")
        print("Migration complete. ✓")
        return 0
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Create campaign database tables")
    parser.add_argument("--check", action="store_true", help="Check status only, no changes")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
