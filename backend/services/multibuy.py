"""
Multi-buy discount resolution.

ICA prints a bundle promotion as a separate line under the item:

    *OLW Chips Sourcream 175g 4
     129,80
    OLW 4F89 -40,80

The printed "-40,80" is not trusted.  The bundle price (89,00) becomes the
item price and the discount is recomputed from the unit price line, never
going below zero.
"""
import logging
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from models.schemas import AffectedItem, Anomaly
from services.receipt_lines import DiscountPayload, MultiBuyPromo, money

logger = logging.getLogger("kvitto.multibuy")

ZERO = Decimal("0.00")


class Resolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    price: Decimal
    discount: Optional[Decimal] = None
    bundle_quantity: Optional[int] = None    # N from "<N>F<price>"; not exposed as quantity
    anomalies: tuple[Anomaly, ...] = ()


def join_name(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def resolve_multi_buy(product_text: str, original_price: Decimal, promo: MultiBuyPromo) -> Resolution:
    original = money(original_price)
    bundle = money(promo.bundle_price)
    name = join_name(product_text, promo.promo_label)
    discount = max(ZERO, money(original - bundle))

    anomalies = ()
    if bundle > original:
        logger.debug("Bundle %s exceeds unit price %s for %r, discount clamped", bundle, original, name)
        anomalies = (Anomaly(
            type="discount_clamped",
            description=(
                f"Bundle price {bundle} is higher than the unit price {original}; "
                f"discount set to 0.00"
            ),
            severity="medium",
            affected_item=AffectedItem(name=name, price=bundle, quantity=Decimal("1")),
        ),)

    return Resolution(
        name=name,
        price=bundle,
        discount=discount,
        bundle_quantity=promo.quantity,
        anomalies=anomalies,
    )


def apply_plain_discounts(product_text: str, original_price: Decimal,
                          discounts: Sequence[DiscountPayload]) -> Resolution:
    """Subtract one or more printed discounts.  Labels are appended to the name in order."""
    price = money(original_price)
    total = ZERO
    for d in discounts:
        total += money(d.printed_discount)
        price -= money(d.printed_discount)
    name = join_name(product_text, *(d.label for d in discounts))

    anomalies = ()
    if price < 0:
        anomalies = (Anomaly(
            type="negative_price",
            description=f"Discount {total} exceeds the price {money(original_price)}; price set to 0.00",
            severity="high",
            affected_item=AffectedItem(name=name, price=ZERO, quantity=Decimal("1")),
        ),)
        price = ZERO

    return Resolution(
        name=name,
        price=money(price),
        discount=money(total) if discounts else None,
        anomalies=anomalies,
    )


def resolve(product_text: str, original_price: Decimal,
            discounts: Sequence[DiscountPayload] = ()) -> Resolution:
    """
    Resolve an item window.  A multi-buy promotion is only honoured as the
    single discount of its window; anything else is treated as plain discounts.
    """
    if len(discounts) == 1 and discounts[0].promo is not None:
        return resolve_multi_buy(product_text, original_price, discounts[0].promo)
    if any(d.is_malformed for d in discounts):
        raise ValueError("Malformed multi-buy lines must be deferred, not resolved")
    return apply_plain_discounts(product_text, original_price, discounts)
