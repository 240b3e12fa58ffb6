"""
Receipt store — persistence of parsed receipts, their items and anomalies.

Every read and write is scoped to the owning user; another user's receipt
id behaves exactly like a missing one.
"""
import json
import logging
from typing import Optional

import aiosqlite

from models.schemas import ParsedReceipt
from services.categorize_service import save_mapping

logger = logging.getLogger("kvitto.store")


async def save_parsed_receipt(
    db: aiosqlite.Connection,
    user_id: str,
    parsed: ParsedReceipt,
    raw_text: Optional[str] = None,
    receipt_date: Optional[str] = None,
) -> int:
    """Insert the receipt, its items and its anomalies.  Returns the new receipt id."""
    cur = await db.execute(
        """INSERT INTO receipts (user_id, store_name, receipt_date, total_amount, fallback_used, raw_text)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, parsed.store_name, receipt_date, float(parsed.total_amount),
         int(parsed.fallback_used), raw_text),
    )
    receipt_id = cur.lastrowid

    for pos, item in enumerate(parsed.items):
        await db.execute(
            """INSERT INTO receipt_items (receipt_id, position, name, price, quantity, category, discount)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (receipt_id, pos, item.name, float(item.price), float(item.quantity), item.category,
             float(item.discount) if item.discount is not None else None),
        )

    for a in parsed.anomalies:
        affected = a.affected_item.model_dump(mode="json") if a.affected_item else None
        await db.execute(
            """INSERT INTO parser_anomalies (receipt_id, anomaly_type, description, severity, affected_item)
               VALUES (?, ?, ?, ?, ?)""",
            (receipt_id, a.type, a.description, a.severity,
             json.dumps(affected, ensure_ascii=False) if affected else None),
        )

    await db.commit()
    logger.info("Saved receipt %d for %s: %s, %d items, %d anomalies",
                receipt_id, user_id, parsed.store_name, len(parsed.items), len(parsed.anomalies))
    return receipt_id


async def list_receipts(db: aiosqlite.Connection, user_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    async with db.execute(
        """
        SELECT r.id, r.store_name, r.receipt_date, r.created_at, r.total_amount, r.fallback_used,
               (SELECT COUNT(*) FROM receipt_items i WHERE i.receipt_id = r.id) AS item_count,
               (SELECT COUNT(*) FROM parser_anomalies a WHERE a.receipt_id = r.id) AS anomaly_count
        FROM receipts r
        WHERE r.user_id = ?
        ORDER BY r.created_at DESC, r.id DESC
        LIMIT ? OFFSET ?
        """,
        (user_id, limit, offset),
    ) as cur:
        rows = await cur.fetchall()
    return [{**dict(r), "fallback_used": bool(r["fallback_used"])} for r in rows]


async def get_receipt(db: aiosqlite.Connection, user_id: str, receipt_id: int) -> Optional[dict]:
    async with db.execute(
        "SELECT * FROM receipts WHERE id = ? AND user_id = ?", (receipt_id, user_id)
    ) as cur:
        row = await cur.fetchone()
    if not row:
        return None
    receipt = {**dict(row), "fallback_used": bool(row["fallback_used"])}

    async with db.execute(
        "SELECT * FROM receipt_items WHERE receipt_id = ? ORDER BY position, id", (receipt_id,)
    ) as cur:
        receipt["items"] = [{**dict(r), "corrected": bool(r["corrected"])} for r in await cur.fetchall()]

    async with db.execute(
        """SELECT anomaly_type, description, severity, affected_item, created_at
           FROM parser_anomalies WHERE receipt_id = ? ORDER BY id""",
        (receipt_id,),
    ) as cur:
        receipt["anomalies"] = [
            {
                **dict(r),
                "affected_item": json.loads(r["affected_item"]) if r["affected_item"] else None,
                "store_name": receipt["store_name"],
            }
            for r in await cur.fetchall()
        ]
    return receipt


async def delete_receipt(db: aiosqlite.Connection, user_id: str, receipt_id: int) -> bool:
    """Delete a receipt with its items and anomalies.  False when the user has no such receipt."""
    cur = await db.execute(
        "DELETE FROM receipts WHERE id = ? AND user_id = ?", (receipt_id, user_id)
    )
    await db.commit()
    return cur.rowcount > 0


async def update_item_category(
    db: aiosqlite.Connection,
    user_id: str,
    item_id: int,
    category: str,
) -> bool:
    """
    Manual category correction.  Updates the item and teaches the user's
    product mapping so the suggest service picks it up next time.
    Returns False when the item does not exist for this user.
    """
    async with db.execute("SELECT id FROM categories WHERE key = ?", (category,)) as cur:
        if not await cur.fetchone():
            raise ValueError(f"Unknown category: {category!r}")

    async with db.execute(
        """SELECT i.name FROM receipt_items i
           JOIN receipts r ON r.id = i.receipt_id
           WHERE i.id = ? AND r.user_id = ?""",
        (item_id, user_id),
    ) as cur:
        row = await cur.fetchone()
    if not row:
        return False

    await db.execute(
        "UPDATE receipt_items SET category = ?, category_source = 'manual', corrected = 1 WHERE id = ?",
        (category, item_id),
    )
    await save_mapping(db, user_id, row["name"], category)
    await db.commit()
    return True
