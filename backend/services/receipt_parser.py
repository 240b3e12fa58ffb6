"""
Receipt parser — drives one receipt through the structured grammar and,
when the grammar cannot be trusted, through the AI fallback.

States:

    Idle → Tokenizing → Classifying → Resolving → Normalizing → Done
                             │             │
                             └──→ AIFallback ──→ Done

The fallback is entered when too few content lines were recognised, or when
a multi-buy line could not be read.  Whatever happens, ``parse`` returns a
ParsedReceipt; only a caller passing something other than text gets an
exception.
"""
import asyncio
import logging
import os
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError

from models.schemas import Anomaly, ParsedReceipt, ReceiptItem
from services import anomalies as anomaly_types
from services.anomalies import AnomalyReporter, check_items
from services.item_normalizer import normalize_fallback_item, normalize_item
from services.multibuy import resolve
from services.receipt_lines import (
    DiscountPayload,
    ItemNamePayload,
    LineClassification,
    LineKind,
    money,
    tokenize,
)
from services.store_grammars import DEFAULT_REGISTRY, GrammarRegistry, StoreGrammar, detect_store

logger = logging.getLogger("kvitto.parser")

MIN_CLASSIFIED_RATIO = float(os.environ.get("PARSER_MIN_CLASSIFIED_RATIO", "0.6"))
AI_FALLBACK_TIMEOUT = float(os.environ.get("AI_FALLBACK_TIMEOUT", "50"))
UNKNOWN_STORE = "Unknown Store"

FallbackParser = Callable[[str], Awaitable[dict]]


class ParserInputError(TypeError):
    """Raised when parse() is called with something other than text."""
    pass


class FallbackError(Exception):
    """Raised by (or on behalf of) the AI fallback when it cannot produce items."""
    pass


class ParseState(str, Enum):
    IDLE = "idle"
    TOKENIZING = "tokenizing"
    CLASSIFYING = "classifying"
    RESOLVING = "resolving"
    NORMALIZING = "normalizing"
    AI_FALLBACK = "ai_fallback"
    DONE = "done"


_TRANSITIONS = {
    ParseState.IDLE:        {ParseState.TOKENIZING, ParseState.DONE},
    ParseState.TOKENIZING:  {ParseState.CLASSIFYING, ParseState.DONE},
    ParseState.CLASSIFYING: {ParseState.RESOLVING, ParseState.AI_FALLBACK, ParseState.DONE},
    ParseState.RESOLVING:   {ParseState.NORMALIZING, ParseState.AI_FALLBACK, ParseState.DONE},
    ParseState.NORMALIZING: {ParseState.DONE},
    ParseState.AI_FALLBACK: {ParseState.DONE},
    ParseState.DONE:        set(),
}

LOW_CONFIDENCE = "low_confidence"
UNREADABLE_PROMO = "unreadable_promo"


class _Window:
    """An item line with its price and attached discount lines."""

    def __init__(self, item: ItemNamePayload, price: Decimal, quantity: Optional[Decimal],
                 discounts: List[DiscountPayload], lines: List[LineClassification]):
        self.item = item
        self.price = price
        self.quantity = quantity
        self.discounts = discounts
        self.lines = lines

    @property
    def is_deferred(self) -> bool:
        return any(d.is_malformed for d in self.discounts)


class _Run:
    """Per-call parse state.  Never shared between calls."""

    def __init__(self, raw_text: str, store_id: str):
        self.raw_text = raw_text
        self.store_id = store_id
        self.state = ParseState.IDLE
        self.reporter = AnomalyReporter()
        self.store_name = store_id or UNKNOWN_STORE
        self.classified: List[LineClassification] = []
        self.windows: List[_Window] = []
        self.deferred: List[LineClassification] = []
        self.items: List[ReceiptItem] = []
        self.printed_total: Optional[Decimal] = None
        self.fallback_reason: Optional[str] = None
        self.fallback_used = False

    def to(self, state: ParseState):
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal parser transition {self.state.value} → {state.value}")
        logger.debug("%s → %s", self.state.value, state.value)
        self.state = state

    @property
    def deferred_text(self) -> str:
        return "\n".join(c.line.text for c in self.deferred)


def classified_ratio(classified: List[LineClassification]) -> float:
    """Share of content lines (not blank, not metadata) a grammar rule recognised."""
    content = [c for c in classified if c.kind != LineKind.METADATA and not c.line.is_blank]
    if not content:
        return 1.0
    recognised = sum(1 for c in content if c.kind != LineKind.UNKNOWN)
    return recognised / len(content)


def _continue_name(item: ItemNamePayload, classified: List[LineClassification], j: int,
                   lines: List[LineClassification]):
    """
    Table rows wrap long names onto the next line(s).  A bare name line that
    is not followed by its own price line belongs to the row above.
    """
    n = len(classified)
    while j < n:
        c = classified[j]
        if c.kind != LineKind.ITEM_NAME or c.payload.inline_price is not None or c.payload.marked:
            break
        if j + 1 < n and classified[j + 1].kind == LineKind.UNIT_PRICE:
            break
        item = item.model_copy(update={"product_text": f"{item.product_text} {c.line.clean}"})
        lines.append(c)
        j += 1
    return item, j


def assemble_windows(classified: List[LineClassification], reporter: AnomalyReporter):
    """
    Walk the classified lines left to right and group them into item windows.

    Returns (windows, deferred_lines, printed_total).  Windows with an
    unreadable multi-buy line are returned as deferred lines, reclassified
    unknown, instead of as windows.
    """
    windows: List[_Window] = []
    deferred: List[LineClassification] = []
    printed_total: Optional[Decimal] = None
    n = len(classified)
    i = 0

    while i < n:
        c = classified[i]

        if c.kind == LineKind.ITEM_NAME:
            item: ItemNamePayload = c.payload
            lines = [c]
            if item.inline_price is not None:
                price, quantity, j = item.inline_price, item.quantity, i + 1
                if item.article_number:
                    item, j = _continue_name(item, classified, j, lines)
            elif i + 1 < n and classified[i + 1].kind == LineKind.UNIT_PRICE:
                price_line = classified[i + 1]
                price, quantity, j = price_line.payload.amount, price_line.payload.quantity, i + 2
                lines.append(price_line)
            else:
                reporter.record(anomaly_types.orphan_line(c.line.clean, c.line.index, "low"))
                i += 1
                continue

            discounts: List[DiscountPayload] = []
            while j < n and classified[j].kind == LineKind.DISCOUNT_PROMO:
                d: DiscountPayload = classified[j].payload
                is_bundle = d.promo is not None or d.is_malformed
                if is_bundle and discounts:
                    break
                discounts.append(d)
                lines.append(classified[j])
                j += 1
                if is_bundle:
                    break

            window = _Window(item, price, quantity, discounts, lines)
            if window.is_deferred:
                bad = next(l for l in lines if l.kind == LineKind.DISCOUNT_PROMO and l.payload.is_malformed)
                reporter.record(anomaly_types.pattern_fallback(bad.line.clean, bad.line.index, bad.payload.malformed_token))
                deferred.extend(l.as_unknown() for l in lines)
                logger.debug("Window at line %d deferred: %r", c.line.index, bad.line.clean)
            else:
                windows.append(window)
                logger.debug("Window at line %d: %r, %s, %d discount(s)",
                             c.line.index, item.product_text, price, len(discounts))
            i = j
            continue

        if c.kind == LineKind.DISCOUNT_PROMO and c.payload.is_malformed:
            reporter.record(anomaly_types.pattern_fallback(c.line.clean, c.line.index, c.payload.malformed_token))
            deferred.append(c.as_unknown())
        elif c.kind == LineKind.DISCOUNT_PROMO:
            reporter.record(anomaly_types.orphan_line(c.line.clean, c.line.index, "medium"))
        elif c.kind == LineKind.UNIT_PRICE:
            reporter.record(anomaly_types.orphan_line(c.line.clean, c.line.index, "medium"))
        elif c.kind == LineKind.TOTAL and printed_total is None:
            printed_total = c.payload.amount
        i += 1

    return windows, deferred, printed_total


def _normalize_windows(windows: List[_Window], reporter: AnomalyReporter) -> List[ReceiptItem]:
    items = []
    for w in windows:
        resolution = resolve(w.item.product_text, w.price, w.discounts)
        reporter.extend(resolution.anomalies)
        items.append(normalize_item(w.item, resolution, w.quantity))
    return items


class ReceiptParser:
    """
    Structured receipt parser with an optional async AI fallback.

    ``fallback`` is any coroutine function taking receipt text and returning
    ``{"items": [...], "anomalies": [...]}``.
    """

    def __init__(
        self,
        registry: GrammarRegistry = DEFAULT_REGISTRY,
        fallback: Optional[FallbackParser] = None,
        min_classified_ratio: float = MIN_CLASSIFIED_RATIO,
        fallback_timeout: float = AI_FALLBACK_TIMEOUT,
    ):
        self.registry = registry
        self.fallback = fallback
        self.min_classified_ratio = min_classified_ratio
        self.fallback_timeout = fallback_timeout

    # ── Public API ────────────────────────────────────────────────────────────

    async def parse(self, raw_text: str, store_id: str = "") -> ParsedReceipt:
        _check_input(raw_text, store_id)
        run = _Run(raw_text, store_id.strip())
        try:
            self._structured(run)
            if run.state == ParseState.AI_FALLBACK:
                await self._fallback(run)
            return self._finish(run)
        except Exception as e:
            logger.exception("Parser failed on %d chars of %r", len(raw_text), store_id)
            return _failed(run, e)

    def parse_structured(self, raw_text: str, store_id: str = "") -> ParsedReceipt:
        """Parse without calling the fallback.  A receipt that needed it gets ``fallback_failed``."""
        _check_input(raw_text, store_id)
        run = _Run(raw_text, store_id.strip())
        try:
            self._structured(run)
            if run.state == ParseState.AI_FALLBACK:
                self._fallback_failed(run, "no fallback parser configured")
            return self._finish(run)
        except Exception as e:
            logger.exception("Parser failed on %d chars of %r", len(raw_text), store_id)
            return _failed(run, e)

    # ── Stages ────────────────────────────────────────────────────────────────

    def _grammar_for(self, run: _Run) -> StoreGrammar:
        store_id = run.store_id
        if not store_id:
            store_id = detect_store(run.raw_text) or ""
            if store_id:
                logger.debug("Detected store %r", store_id)
        run.store_id = store_id
        return self.registry.grammar_for(store_id)

    def _structured(self, run: _Run):
        run.to(ParseState.TOKENIZING)
        lines = tokenize(run.raw_text)
        grammar = self._grammar_for(run)
        run.store_name = grammar.store_header(lines) or run.store_id or UNKNOWN_STORE

        run.to(ParseState.CLASSIFYING)
        run.classified = [grammar.classify(line) for line in lines]
        ratio = classified_ratio(run.classified)
        logger.debug("Grammar %s recognised %.0f%% of content lines", grammar.name, ratio * 100)

        run.windows, run.deferred, run.printed_total = assemble_windows(run.classified, run.reporter)

        if ratio < self.min_classified_ratio:
            run.fallback_reason = LOW_CONFIDENCE
            run.to(ParseState.AI_FALLBACK)
            return

        run.to(ParseState.RESOLVING)
        items = _normalize_windows(run.windows, run.reporter)
        if run.deferred:
            run.items = items
            run.fallback_reason = UNREADABLE_PROMO
            run.to(ParseState.AI_FALLBACK)
            return

        run.to(ParseState.NORMALIZING)
        run.items = items

    async def _fallback(self, run: _Run):
        if self.fallback is None:
            self._fallback_failed(run, "no fallback parser configured")
            return

        replace = run.fallback_reason == LOW_CONFIDENCE
        text = run.raw_text if replace else run.deferred_text
        logger.warning("Using AI fallback for %s receipt (%s)", run.store_name, run.fallback_reason)
        try:
            result = await asyncio.wait_for(self.fallback(text), timeout=self.fallback_timeout)
            rows, extra = _fallback_rows(result)
        except asyncio.TimeoutError:
            self._fallback_failed(run, f"timed out after {self.fallback_timeout:g}s")
            return
        except Exception as e:
            self._fallback_failed(run, str(e) or type(e).__name__)
            return

        fallback_items = [
            item for item in (normalize_fallback_item(r, run.reporter) for r in rows) if item is not None
        ]
        run.items = fallback_items if replace else run.items + fallback_items
        run.reporter.extend(extra)
        run.reporter.record(anomaly_types.fallback_used(run.fallback_reason, len(fallback_items)))
        run.fallback_used = True

    def _fallback_failed(self, run: _Run, reason: str):
        logger.warning("AI fallback failed for %s: %s", run.store_name, reason)
        if run.fallback_reason == LOW_CONFIDENCE:
            # Keep whatever the grammar could recover.
            run.items = _normalize_windows(run.windows, run.reporter)
        run.reporter.record(anomaly_types.fallback_failed(reason))

    def _finish(self, run: _Run) -> ParsedReceipt:
        run.reporter.extend(check_items(run.items, run.printed_total))
        run.to(ParseState.DONE)
        total = money(sum((i.price for i in run.items), Decimal("0")))
        receipt = ParsedReceipt(
            store_name=run.store_name,
            items=run.items,
            total_amount=total,
            anomalies=run.reporter.drain(),
            fallback_used=run.fallback_used,
        )
        logger.info(
            "Parsed %s: %d items, total %s, %d anomalies%s",
            receipt.store_name, len(receipt.items), receipt.total_amount,
            len(receipt.anomalies), " (fallback)" if receipt.fallback_used else "",
        )
        return receipt


def _check_input(raw_text, store_id):
    if not isinstance(raw_text, str):
        raise ParserInputError(f"raw_text must be str, got {type(raw_text).__name__}")
    if not isinstance(store_id, str):
        raise ParserInputError(f"store_id must be str, got {type(store_id).__name__}")


def _fallback_rows(result) -> tuple[list, List[Anomaly]]:
    """Validate the collaborator's reply shape.  Malformed anomaly entries are dropped."""
    if not isinstance(result, dict) or not isinstance(result.get("items"), list):
        raise FallbackError("fallback returned no item list")
    rows = [r for r in result["items"] if isinstance(r, dict)]
    extra: List[Anomaly] = []
    for a in result.get("anomalies") or []:
        try:
            extra.append(Anomaly.model_validate(a))
        except ValidationError:
            logger.warning("Dropping malformed fallback anomaly: %r", a)
    return rows, extra


def _failed(run: _Run, error: Exception) -> ParsedReceipt:
    return ParsedReceipt(
        store_name=run.store_name,
        anomalies=[anomaly_types.parse_failed(f"{type(error).__name__}: {error}")],
    )

