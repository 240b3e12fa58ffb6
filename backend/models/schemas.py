from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

# Decimals stay exact inside the parser and become plain JSON numbers on the wire.
JsonDecimal = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(v), return_type=float, when_used="json"),
]

Severity = Literal["low", "medium", "high", "critical"]


# ── Parser output ──────────────────────────────────────
class AffectedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    price: JsonDecimal
    quantity: JsonDecimal


class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    description: str
    severity: Severity
    affected_item: Optional[AffectedItem] = None


class ReceiptItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    price: JsonDecimal = Field(ge=0)
    quantity: JsonDecimal = Field(default=Decimal("1"), gt=0)
    category: str = "other"
    discount: Optional[JsonDecimal] = Field(default=None, ge=0)

    def affected(self) -> AffectedItem:
        return AffectedItem(name=self.name, price=self.price, quantity=self.quantity)


class ParsedReceipt(BaseModel):
    """Result of one parse call. Serialized with ``to_payload``."""
    store_name: str
    items: List[ReceiptItem] = Field(default_factory=list)
    total_amount: JsonDecimal = Decimal("0.00")
    anomalies: List[Anomaly] = Field(default_factory=list)
    fallback_used: bool = False

    def to_payload(self) -> dict:
        """JSON shape consumed by the regression harness and health dashboard."""
        return {
            "store_name": self.store_name,
            "total_amount": float(self.total_amount),
            "items": [i.model_dump(mode="json", exclude_none=True) for i in self.items],
            "parser_metadata": {
                "anomalies": [
                    a.model_dump(mode="json", exclude_none=True) for a in self.anomalies
                ],
                "fallback_used": self.fallback_used,
            },
        }


class ParserMetadata(BaseModel):
    anomalies: List[dict]
    fallback_used: bool


class ParsedReceiptOut(BaseModel):
    store_name: str
    total_amount: float
    items: List[dict]
    parser_metadata: ParserMetadata


# ── Requests ───────────────────────────────────────────
class ParseRequest(BaseModel):
    raw_text: str
    store_id: str = ""
    receipt_date: Optional[str] = None   # YYYY-MM-DD, kept with the saved receipt


class CategoryUpdate(BaseModel):
    category: str


class SuggestRequest(BaseModel):
    names: List[str] = Field(min_length=1)


# ── Stored receipts ────────────────────────────────────
class StoredItem(BaseModel):
    id: int
    receipt_id: int
    name: str
    price: float
    quantity: float = 1.0
    category: str = "other"
    discount: Optional[float] = None
    category_source: str = "parser"
    corrected: bool = False

    class Config:
        from_attributes = True


class StoredAnomaly(BaseModel):
    anomaly_type: str
    description: str
    severity: Severity
    affected_item: Optional[dict] = None
    store_name: Optional[str] = None
    created_at: str


class StoredReceipt(BaseModel):
    id: int
    user_id: str
    store_name: str
    receipt_date: Optional[str] = None
    total_amount: float
    fallback_used: bool = False
    created_at: str
    raw_text: Optional[str] = None
    items: List[StoredItem] = []
    anomalies: List[StoredAnomaly] = []

    class Config:
        from_attributes = True


class ReceiptSummary(BaseModel):
    id: int
    store_name: str
    receipt_date: Optional[str]
    created_at: str
    total_amount: float
    item_count: int
    anomaly_count: int
    fallback_used: bool


class SaveResult(BaseModel):
    receipt_id: int
    receipt: ParsedReceiptOut


# ── Category suggestions ───────────────────────────────
class CategorySuggestion(BaseModel):
    name: str
    category: str
    confidence: float
    source: str          # 'learned' | 'ai'


# ── Parser health ──────────────────────────────────────
class ParserHealthMetric(BaseModel):
    month: str           # e.g. "2026-10"
    total_receipts: int
    receipts_with_anomalies: int
    fallback_receipts: int
    health_score: int


class AnomalyTypeStats(BaseModel):
    anomaly_type: str
    occurrence_count: int
    last_seen: str
