import logging
import aiosqlite
import os

logger = logging.getLogger("kvitto.db")
DB_PATH = os.environ.get("DB_PATH", "/data/kvitto.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db

async def init_db():
    """Create all tables if they don't exist."""
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- ── Product categories (keys are what the parser and AI emit) ─────────────
CREATE TABLE IF NOT EXISTS categories (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    key         TEXT NOT NULL UNIQUE,
    label       TEXT NOT NULL,                     -- Swedish display name
    is_disabled INTEGER NOT NULL DEFAULT 0,        -- 1 = hidden from picker / AI
    sort_order  INTEGER NOT NULL DEFAULT 100
);

INSERT OR IGNORE INTO categories (key, label, sort_order) VALUES
    ('frukt_gront',      'Frukt & grönt',       10),
    ('mejeri',           'Mejeri',              20),
    ('kott_fagel_chark', 'Kött, fågel & chark', 30),
    ('brod_bageri',      'Bröd & bageri',       40),
    ('drycker',          'Drycker',             50),
    ('sotsaker_snacks',  'Sötsaker & snacks',   60),
    ('fardigmat',        'Färdigmat',           70),
    ('hushall_hygien',   'Hushåll & hygien',    80),
    ('delikatess',       'Delikatess',          90),
    ('pant',             'Pant',               100),
    ('other',            'Övrigt',             110);

-- Parsed receipts, owned by one user
CREATE TABLE IF NOT EXISTS receipts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT NOT NULL,
    store_name      TEXT NOT NULL,
    receipt_date    TEXT,                  -- ISO date, if the client sent one
    total_amount    REAL NOT NULL DEFAULT 0,
    fallback_used   INTEGER NOT NULL DEFAULT 0,
    raw_text        TEXT,
    created_at      TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_receipts_user ON receipts(user_id, created_at);

-- Line items on a receipt
CREATE TABLE IF NOT EXISTS receipt_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    receipt_id      INTEGER NOT NULL REFERENCES receipts(id) ON DELETE CASCADE,
    position        INTEGER NOT NULL DEFAULT 0,
    name            TEXT NOT NULL,
    price           REAL NOT NULL,
    quantity        REAL DEFAULT 1,
    category        TEXT DEFAULT 'other',
    discount        REAL,
    category_source TEXT DEFAULT 'parser', -- 'parser' | 'manual'
    corrected       INTEGER DEFAULT 0      -- 1 if user manually changed category
);

-- Anomalies recorded while parsing, feeds the parser health views
CREATE TABLE IF NOT EXISTS parser_anomalies (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    receipt_id      INTEGER NOT NULL REFERENCES receipts(id) ON DELETE CASCADE,
    anomaly_type    TEXT NOT NULL,
    description     TEXT NOT NULL,
    severity        TEXT NOT NULL,         -- low | medium | high | critical
    affected_item   TEXT,                  -- JSON {name, price, quantity}
    created_at      TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_anomalies_type ON parser_anomalies(anomaly_type);

-- Learned name→category mappings, per user
CREATE TABLE IF NOT EXISTS product_mappings (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT NOT NULL,
    normalized_key  TEXT NOT NULL,
    display_name    TEXT NOT NULL,
    category        TEXT NOT NULL,
    times_seen      INTEGER DEFAULT 1,
    last_seen       TEXT DEFAULT (datetime('now')),
    created_at      TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, normalized_key)
);
"""
