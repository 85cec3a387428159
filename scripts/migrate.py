#!/usr/bin/env python3
"""Database migration script - creates the transfers table."""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from yieldbridge.config import get_settings
from yieldbridge.ledger.database import Database


async def main():
    """Create tables and check the connection."""
    settings = get_settings()
    db = Database(settings.database_url)

    print(f"Database URL: {settings._redact_url(settings.database_url)}")
    print("Creating database tables...")

    try:
        await db.init()
        await db.ping()
        print("Database tables created successfully!")
    except Exception as e:
        print(f"Error creating tables: {e}")
        raise
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
