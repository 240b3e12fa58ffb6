"""
Anomaly reporter — per-parse collector of non-fatal irregularities.

A reporter is created for each parse call and drained into the ParsedReceipt;
nothing is shared between parses.
"""
import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from models.schemas import AffectedItem, Anomaly, ReceiptItem, Severity

logger = logging.getLogger("kvitto.anomalies")

MIN_UNIT_PRICE = Decimal("0.50")
MAX_QUANTITY = Decimal("50")
TOTAL_TOLERANCE = Decimal("1.50")


class AnomalyReporter:
    def __init__(self):
        self._anomalies: List[Anomaly] = []

    def record(self, anomaly: Anomaly) -> None:
        logger.debug("Anomaly %s (%s): %s", anomaly.type, anomaly.severity, anomaly.description)
        self._anomalies.append(anomaly)

    def extend(self, anomalies: Iterable[Anomaly]) -> None:
        for a in anomalies:
            self.record(a)

    def add(self, type: str, description: str, severity: Severity,
            item: Optional[ReceiptItem] = None) -> Anomaly:
        anomaly = Anomaly(
            type=type,
            description=description,
            severity=severity,
            affected_item=item.affected() if item is not None else None,
        )
        self.record(anomaly)
        return anomaly

    def drain(self) -> List[Anomaly]:
        drained, self._anomalies = self._anomalies, []
        return drained

    def __len__(self):
        return len(self._anomalies)


def _is_pant(item: ReceiptItem) -> bool:
    return item.category == "pant"


def check_items(items: List[ReceiptItem], printed_total: Optional[Decimal] = None) -> List[Anomaly]:
    """Sanity checks over normalised items.  Deposit (pant) rows are exempt from the per-item checks."""
    found: List[Anomaly] = []
    for item in items:
        if _is_pant(item):
            continue
        if item.quantity > 1 and item.price > 0 and item.price / item.quantity < MIN_UNIT_PRICE:
            found.append(Anomaly(
                type="absurd_unit_price",
                description=(
                    f"{item.name}: {item.price} for {item.quantity} units is "
                    f"{(item.price / item.quantity):.2f} kr each"
                ),
                severity="high",
                affected_item=item.affected(),
            ))
        if item.quantity > MAX_QUANTITY:
            found.append(Anomaly(
                type="high_quantity",
                description=f"{item.name}: unusually high quantity {item.quantity}",
                severity="medium",
                affected_item=item.affected(),
            ))

    if printed_total is not None:
        item_sum = sum((i.price for i in items), Decimal("0.00"))
        if abs(item_sum - printed_total) > TOTAL_TOLERANCE:
            found.append(Anomaly(
                type="math_mismatch",
                description=f"Items sum to {item_sum:.2f} but the receipt total is {printed_total:.2f}",
                severity="medium",
            ))
    return found


# ── Constructors for the parser's own anomaly types ───────────────────────────

def orphan_line(text: str, line_no: int, severity: Severity = "low") -> Anomaly:
    return Anomaly(
        type="orphan_line",
        description=f"Line {line_no + 1} could not be attached to an item: {text!r}",
        severity=severity,
    )


def pattern_fallback(text: str, line_no: int, token: str) -> Anomaly:
    return Anomaly(
        type="pattern_fallback",
        description=(
            f"Line {line_no + 1} has an unreadable multi-buy token {token!r}: {text!r}; "
            f"item deferred to AI fallback"
        ),
        severity="medium",
    )


def fallback_used(reason: str, item_count: int) -> Anomaly:
    return Anomaly(
        type="fallback_used",
        description=f"AI fallback used ({reason}); {item_count} item(s) returned",
        severity="low",
    )


def fallback_failed(reason: str) -> Anomaly:
    return Anomaly(type="fallback_failed", description=f"AI fallback failed: {reason}", severity="critical")


def parse_failed(reason: str) -> Anomaly:
    return Anomaly(type="parse_failed", description=f"Receipt could not be parsed: {reason}", severity="critical")
