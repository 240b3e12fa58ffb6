"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database built from the production
schema in db/database.py (categories are seeded; nothing else is).
"""
import pytest
import aiosqlite

from db.database import SCHEMA


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.executescript(SCHEMA)
        yield conn
