"""
AI fallback parser

Called by the receipt parser when the store grammar cannot be trusted: too
few lines were recognised, or a multi-buy line was unreadable.  Claude gets
the receipt text (or only the deferred lines) and returns items as JSON.

Errors are raised as FallbackError; the parser turns them into a
``fallback_failed`` anomaly and keeps the structured items.
"""
import json
import logging
import os
import re
from typing import Optional

import anthropic

from services.categorize_service import BUILTIN_CATEGORIES
from services.receipt_parser import FallbackError, FallbackParser

logger = logging.getLogger("kvitto.fallback")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
FALLBACK_MODEL = os.environ.get("FALLBACK_MODEL", "claude-sonnet-4-5")


def build_prompt(raw_text: str) -> str:
    return f"""You are a Swedish grocery receipt parser. Read the receipt text below and output its line items as JSON.

RULES:
1. Lines starting with "*" are products with an active discount. The discount line follows the price line.
2. A discount line ends in a negative amount, e.g. "Kampanj -5,00".  final price = price - abs(discount).
3. Multi-buy lines look like "<label> <N>F<bundle price> -<amount>" (e.g. "OLW 4F89 -40,80").
   The item price is the bundle price (89,00), NOT a per-unit fraction.
   discount = original price - bundle price, never below 0.  Ignore the printed "-40,80".
4. The item name is the product line text followed by the discount label
   ("OLW Chips Sourcream 175g" + "OLW" → "OLW Chips Sourcream 175g OLW").
5. Lines with text but no numbers continue the previous product name.
6. Weighted items ("0,842kg*169,00kr/kg 142,30"): quantity is the weight, price is the rightmost amount.
7. PANT is a bottle deposit.  Use category "pant".
8. Skip totals, VAT (Moms), payment and card lines.
9. Amounts use comma decimals on the receipt; output plain JSON numbers with a dot.

Categories (use exactly one of these keys): {', '.join(BUILTIN_CATEGORIES)}

<receipt_text>
{raw_text.strip()}
</receipt_text>

Output ONLY this JSON (no prose, no markdown):

{{
  "items": [
    {{
      "name": "product text + discount label",
      "price": number,
      "quantity": number,
      "category": "category key",
      "discount": number or null
    }}
  ],
  "anomalies": [
    {{
      "type": "short_snake_case_type",
      "description": "what looked wrong on the receipt",
      "severity": "low | medium | high"
    }}
  ]
}}"""


def _decode(raw: str) -> dict:
    raw = raw.strip()
    # Strip markdown fences if present
    raw = re.sub(r'^```[a-z]*\n?', '', raw)
    raw = re.sub(r'\n?```$', '', raw)
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise FallbackError("Claude returned JSON that is not an object")
    data.setdefault("anomalies", [])
    return data


async def parse_with_claude(raw_text: str) -> dict:
    """
    Ask Claude to parse receipt text.  Returns ``{"items": [...], "anomalies": [...]}``.
    Raises FallbackError when the key is missing, the call fails, or the reply is not JSON.
    """
    if not ANTHROPIC_API_KEY:
        logger.warning("ANTHROPIC_API_KEY not set — AI fallback unavailable")
        raise FallbackError("ANTHROPIC_API_KEY not set")
    if not raw_text.strip():
        return {"items": [], "anomalies": []}

    logger.info("Sending %d lines to Claude fallback (%s)", len(raw_text.splitlines()), FALLBACK_MODEL)
    client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
    try:
        message = await client.messages.create(
            model=FALLBACK_MODEL,
            max_tokens=4096,
            messages=[{"role": "user", "content": build_prompt(raw_text)}],
        )
        return _decode(message.content[0].text)
    except FallbackError:
        raise
    except Exception as e:
        logger.error("Claude fallback error: %s", e)
        raise FallbackError(str(e)) from e


def get_fallback() -> Optional[FallbackParser]:
    """The fallback to wire into the parser, or None when no API key is configured."""
    return parse_with_claude if ANTHROPIC_API_KEY else None
