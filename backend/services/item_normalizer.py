"""
Item normalizer — turns a resolved window (or a fallback row) into the
ReceiptItem that leaves the parser.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from models.schemas import ReceiptItem
from services.anomalies import AnomalyReporter
from services.categorize_service import BUILTIN_CATEGORIES
from services.multibuy import Resolution, ZERO
from services.receipt_lines import ItemNamePayload, money

logger = logging.getLogger("kvitto.normalizer")

DEFAULT_CATEGORY = "other"
ONE = Decimal("1")
_PANT_RE = re.compile(r"\bpant\b", re.IGNORECASE)


def default_category(name: str) -> str:
    """Refinement is left to the suggest oracle; only deposit rows are recognised here."""
    return "pant" if _PANT_RE.search(name) else DEFAULT_CATEGORY


def infer_quantity(item: ItemNamePayload, resolution: Resolution,
                   printed_quantity: Optional[Decimal] = None) -> Decimal:
    """
    Bundle lines are always quantity 1.  Otherwise use what the receipt printed:
    a "2st*" or weight figure, then the trailing piece count on the name line.
    """
    if resolution.bundle_quantity is not None:
        return ONE
    quantity = printed_quantity or item.quantity
    if quantity is None and item.printed_count:
        quantity = Decimal(item.printed_count)
    if quantity is None or quantity <= 0:
        return ONE
    return quantity


def normalize_item(item: ItemNamePayload, resolution: Resolution,
                   printed_quantity: Optional[Decimal] = None) -> ReceiptItem:
    return ReceiptItem(
        name=resolution.name,
        price=resolution.price,
        quantity=infer_quantity(item, resolution, printed_quantity),
        category=default_category(resolution.name),
        discount=resolution.discount,
    )


def _decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).replace(",", "."))
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def normalize_fallback_item(row: dict, reporter: AnomalyReporter) -> Optional[ReceiptItem]:
    """
    Validate one item returned by the AI fallback.  Rows without a name or a
    readable price are dropped; negative figures are clamped to zero and reported.
    """
    name = str(row.get("name") or "").strip()
    price = _decimal(row.get("price"))
    if not name or price is None:
        reporter.add("invalid_fallback_item", f"Fallback returned an unusable item: {row!r}", "low")
        return None

    price = money(price)
    if price < 0:
        reporter.add("negative_price", f"Fallback price {price} for {name!r} clamped to 0.00", "high")
        price = ZERO

    discount = _decimal(row.get("discount"))
    if discount is not None:
        discount = money(discount)
        if discount < 0:
            reporter.add("negative_discount", f"Fallback discount {discount} for {name!r} clamped to 0.00", "medium")
            discount = ZERO

    quantity = _decimal(row.get("quantity"))
    if quantity is None or quantity <= 0:
        quantity = ONE

    category = str(row.get("category") or "").strip()
    if category not in BUILTIN_CATEGORIES:
        category = default_category(name)

    return ReceiptItem(name=name, price=price, quantity=quantity, category=category, discount=discount)
