#!/usr/bin/env python3
"""
Database Migration — Create the convoflow tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report status only
    python scripts/migrate_db.py --url sqlite:///./convoflow.db
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text  # noqa: E402


async def _existing_tables(conn, dialect: str) -> list[str]:
    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, url: str | None = None):
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import create_session_factory

    engine, _ = create_session_factory(url or settings.database.url)
    dialect = engine.dialect.name
    defined = list(Base.metadata.tables.keys())

    try:
        if check_only:
            print(f"Database: {dialect}")
            print(f"URL: {str(engine.url).split('@')[-1]}")
            print(f"Tables defined: {', '.join(defined)}")

            async with engine.connect() as conn:
                existing = await _existing_tables(conn, dialect)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")
        print("Migration complete.")
        return 0
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="convoflow database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
