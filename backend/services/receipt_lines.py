"""
Receipt lines — tokenizer and the typed classification a store grammar
assigns to each line.

Every classification carries a payload whose type is fixed by its kind;
the pairing is checked when the classification is built so the rest of the
parser never has to re-inspect raw strings.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

CENT = Decimal("0.01")

# "41,90", "1 234,50", "129.80"
_AMOUNT_RE = re.compile(r'^-?\d{1,3}(?:[ \u00a0]\d{3})*(?:[,.]\d{1,2})?$|^-?\d+(?:[,.]\d{1,2})?$')


def money(value) -> Decimal:
    """Quantize to öre, rounding half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(text: str) -> Decimal:
    """Parse a Swedish printed amount ("41,90", "1 234,50") into a Decimal."""
    cleaned = text.strip().replace("\u2212", "-")
    if not _AMOUNT_RE.match(cleaned):
        raise ValueError(f"Not an amount: {text!r}")
    cleaned = cleaned.replace(" ", "").replace("\u00a0", "").replace(",", ".")
    try:
        return money(cleaned)
    except InvalidOperation as e:
        raise ValueError(f"Not an amount: {text!r}") from e


def parse_quantity(text: str) -> Decimal:
    """Parse a piece count or weight ("2", "0,842")."""
    try:
        return Decimal(text.strip().replace(",", "."))
    except InvalidOperation as e:
        raise ValueError(f"Not a quantity: {text!r}") from e


# ── Tokenizer ─────────────────────────────────────────────────────────────────

class RawLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    text: str

    @property
    def clean(self) -> str:
        return self.text.strip()

    @property
    def is_blank(self) -> bool:
        return not self.clean


def tokenize(text: str) -> list[RawLine]:
    """
    Split receipt text into lines, keeping blank lines in place so that
    "the line directly after" keeps meaning what it says.
    """
    if not text:
        return []
    return [RawLine(index=i, text=line.rstrip("\r")) for i, line in enumerate(text.split("\n"))]


# ── Classification ────────────────────────────────────────────────────────────

class LineKind(str, Enum):
    ITEM_NAME = "item_name"
    UNIT_PRICE = "unit_price"
    DISCOUNT_PROMO = "discount_promo"
    TOTAL = "total"
    METADATA = "metadata"
    UNKNOWN = "unknown"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class ItemNamePayload(_Payload):
    product_text: str = Field(min_length=1)
    marked: bool = False                       # leading "*": a discount line follows
    printed_count: Optional[int] = None        # trailing piece count, e.g. "Påse 2"
    inline_price: Optional[Decimal] = None     # single-line formats carry the price
    quantity: Optional[Decimal] = None         # "2st*17,90" or "0,842kg*169,00kr/kg"
    article_number: Optional[str] = None       # EAN column of the ICA table layout


class PricePayload(_Payload):
    amount: Decimal
    quantity: Optional[Decimal] = None         # weight line under a name-only line


class MultiBuyPromo(_Payload):
    quantity: int = Field(gt=0)
    bundle_price: Decimal = Field(ge=0)
    promo_label: str = ""


class DiscountPayload(_Payload):
    label: str = ""
    printed_discount: Decimal = Field(ge=0)
    promo: Optional[MultiBuyPromo] = None
    malformed_token: Optional[str] = None      # looked like "<N>F<price>" but N was unusable

    @property
    def is_malformed(self) -> bool:
        return self.malformed_token is not None


class TotalPayload(_Payload):
    amount: Decimal


class TextPayload(_Payload):
    text: str


Payload = Union[ItemNamePayload, PricePayload, DiscountPayload, TotalPayload, TextPayload]

_PAYLOAD_FOR_KIND = {
    LineKind.ITEM_NAME: ItemNamePayload,
    LineKind.UNIT_PRICE: PricePayload,
    LineKind.DISCOUNT_PROMO: DiscountPayload,
    LineKind.TOTAL: TotalPayload,
    LineKind.METADATA: TextPayload,
    LineKind.UNKNOWN: TextPayload,
}


class LineClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    line: RawLine
    kind: LineKind
    payload: Payload
    rule: Optional[str] = None

    @model_validator(mode="after")
    def _payload_matches_kind(self):
        expected = _PAYLOAD_FOR_KIND[self.kind]
        if type(self.payload) is not expected:
            raise ValueError(
                f"{self.kind.value} line needs {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
        return self

    @classmethod
    def unknown(cls, line: RawLine) -> "LineClassification":
        return cls(line=line, kind=LineKind.UNKNOWN, payload=TextPayload(text=line.clean))

    def as_unknown(self) -> "LineClassification":
        """Reclassify a line whose window could not be resolved."""
        return LineClassification.unknown(self.line)
