"""
Category suggestion service

Two-stage approach:
  1. Check the user's learned product_mappings first (fast, zero API cost)
  2. For unknown names, call Claude in a single batched request

The parser itself only assigns "other" (or "pant"); refinement happens here.
Learned mappings are written when the user corrects a category, see
receipt_store.update_item_category.
"""
import json
import logging
import os
import re
from typing import Optional

import anthropic
import aiosqlite

logger = logging.getLogger("kvitto.categorize")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
SUGGEST_MODEL = os.environ.get("SUGGEST_MODEL", "claude-haiku-4-5")


class CategorizationError(Exception):
    """Raised when Claude API categorization fails (network, auth, parse error)."""
    pass

# Fallback list used only when the categories table is empty
BUILTIN_CATEGORIES = [
    "frukt_gront", "mejeri", "kott_fagel_chark", "brod_bageri", "drycker",
    "sotsaker_snacks", "fardigmat", "hushall_hygien", "delikatess", "pant", "other",
]


async def get_categories(db: aiosqlite.Connection) -> list[str]:
    """Return enabled category keys ordered by sort_order."""
    async with db.execute(
        "SELECT key FROM categories WHERE is_disabled = 0 ORDER BY sort_order, key"
    ) as cur:
        rows = await cur.fetchall()
    return [r["key"] for r in rows] if rows else BUILTIN_CATEGORIES


async def _build_system_prompt(db: aiosqlite.Connection) -> str:
    cats = await get_categories(db)
    return f"""You categorize Swedish grocery products.
Assign each product name to exactly one of these category keys:
{', '.join(cats)}

Rules:
- Use only the listed keys, spelled exactly as shown.
- Names come from Swedish receipts and may be abbreviated ("Mjölk Arla Eko 3%", "OLW Chips").
- Bottle deposits ("Pant", "PANT 1kr") are "pant".
- When unsure, prefer a specific category over "other".
- Return ONLY a JSON array. No prose, no markdown fences.

Input format: JSON array of objects with "id" and "name".
Output format: JSON array of objects with "id", "category", and "confidence" (0.0–1.0).
"""


def normalize_key(name: str) -> str:
    """Produce a stable lookup key from a product name.

    Package sizes ("175g", "33cl", "1,5l") and standalone numbers are dropped
    and spaces collapsed, so "Kiwi Guava Nocco Bcaa 33cl" and
    "KiwiGuava Nocco BCAA" share the key "kiwiguavanoccobcaa".
    """
    key = name.lower()
    key = re.sub(r'\d+([.,]\d+)?\s*(kg|g|ml|cl|dl|l|st|pack|p|%)(?![a-zåäö])', '', key)
    key = re.sub(r'\b\d+\b', '', key)
    letters_only = re.sub(r'[^a-zåäöéü]', '', key)
    if letters_only:
        return letters_only
    # Symbol-heavy names like "1/2 & 1/2" keep their digits
    if re.search(r'[^a-z0-9åäö\s]', name.lower()):
        return re.sub(r'[^a-z0-9]', '', name.lower())
    return ''


def find_best_match(key: str, mappings: dict[str, str]) -> Optional[str]:
    """
    Exact key first, then the longest learned key that contains (or is
    contained in) this one.

    A substring match is only accepted when the shorter key is at least half
    the length of the longer, so a short seed like "mjolk" does not swallow
    "havremjolkbarista".
    """
    if not key:
        return None
    if key in mappings:
        return mappings[key]
    best_key = ""
    best_category = None
    for learned_key, category in mappings.items():
        if not learned_key or not (learned_key in key or key in learned_key):
            continue
        if min(len(learned_key), len(key)) / max(len(learned_key), len(key)) < 0.5:
            continue
        if len(learned_key) > len(best_key):
            best_key, best_category = learned_key, category
    return best_category


async def load_mappings(db: aiosqlite.Connection, user_id: str) -> dict[str, str]:
    """Learned name→category mappings for one user, excluding disabled categories."""
    async with db.execute(
        """SELECT m.normalized_key, m.category
           FROM product_mappings m
           JOIN categories c ON c.key = m.category
           WHERE m.user_id = ? AND c.is_disabled = 0""",
        (user_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return {row["normalized_key"]: row["category"] for row in rows}


async def save_mapping(
    db: aiosqlite.Connection,
    user_id: str,
    raw_name: str,
    category: str,
):
    """Upsert a learned mapping from a manual correction.  The latest correction wins."""
    await db.execute(
        """
        INSERT INTO product_mappings (user_id, normalized_key, display_name, category, times_seen)
        VALUES (?, ?, ?, ?, 1)
        ON CONFLICT(user_id, normalized_key) DO UPDATE SET
            category     = excluded.category,
            display_name = excluded.display_name,
            times_seen   = times_seen + 1,
            last_seen    = datetime('now')
        """,
        (user_id, normalize_key(raw_name), raw_name.strip(), category),
    )


async def suggest_categories(
    db: aiosqlite.Connection,
    user_id: str,
    names: list[str],
) -> list[dict]:
    """
    Suggest a category for each name, in input order.
    Returns dicts with 'name', 'category', 'confidence' and 'source'
    ('learned' or 'ai').  Raises CategorizationError when Claude is needed
    and fails.
    """
    mappings = await load_mappings(db, user_id)
    results: dict[int, dict] = {}
    unknown: list[tuple[int, str]] = []

    # Stage 1 — learned mappings
    for i, name in enumerate(names):
        matched = find_best_match(normalize_key(name), mappings)
        if matched:
            results[i] = {"name": name, "category": matched, "confidence": 1.0, "source": "learned"}
        else:
            unknown.append((i, name))

    # Stage 2 — Claude for the rest
    if unknown:
        valid = set(await get_categories(db))
        ai_results = await _call_claude([{"id": i, "name": n} for i, n in unknown], db)
        by_id = {r.get("id"): r for r in ai_results if isinstance(r, dict)}
        for i, name in unknown:
            ai = by_id.get(i, {})
            category = ai.get("category")
            if category not in valid:
                category = "other"
            results[i] = {
                "name": name,
                "category": category,
                "confidence": float(ai.get("confidence", 0.0 if not ai else 0.7)),
                "source": "ai",
            }

    logger.info("Suggested %d categories (%d learned, %d ai)",
                len(names), len(names) - len(unknown), len(unknown))
    return [results[i] for i in range(len(names))]


async def _call_claude(items: list[dict], db: aiosqlite.Connection) -> list[dict]:
    """
    Send a batch of unknown names to Claude.
    Returns list of {id, category, confidence}.
    """
    if not ANTHROPIC_API_KEY:
        logger.warning("ANTHROPIC_API_KEY not set — skipping AI categorization")
        raise CategorizationError("ANTHROPIC_API_KEY not set")

    system_prompt = await _build_system_prompt(db)
    client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
    try:
        message = await client.messages.create(
            model=SUGGEST_MODEL,
            max_tokens=1024,
            system=system_prompt,
            messages=[{"role": "user", "content": json.dumps(items, ensure_ascii=False)}],
        )
        raw = message.content[0].text.strip()
        raw = re.sub(r'^```[a-z]*\n?', '', raw)
        raw = re.sub(r'\n?```$', '', raw)
        data = json.loads(raw)
        if not isinstance(data, list):
            raise CategorizationError("Claude returned JSON that is not a list")
        return data
    except CategorizationError:
        raise
    except Exception as e:
        logger.error("Claude API error: %s", e)
        raise CategorizationError(str(e)) from e
