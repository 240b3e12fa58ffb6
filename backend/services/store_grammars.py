"""
Store Grammar Registry

Each supported chain prints its receipts differently.  A StoreGrammar is an
ordered list of line rules; the first rule whose pattern matches a line
decides its classification.  The registry is built once at import time and
never mutated afterwards, so a single instance is shared by every parse.

  ICA      : name line / price line / optional discount or multi-buy line, and the
             columnar "Name ArticleNo UnitPrice Qty Summa" table rows
  Willys   : single-line items, "2st*17,90" and "0,842kg*169,00kr/kg" forms,
             "Rabatt:" and "Willys Plus:" discounts under the item
  generic  : name / price / plain discount only, no multi-buy grammar
"""
import logging
import re
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from services.receipt_lines import (
    DiscountPayload,
    ItemNamePayload,
    LineClassification,
    LineKind,
    MultiBuyPromo,
    Payload,
    PricePayload,
    RawLine,
    TextPayload,
    TotalPayload,
    parse_amount,
    parse_quantity,
)

logger = logging.getLogger("kvitto.grammar")

AMOUNT = r'\d+(?:[ \u00a0]\d{3})*[,.]\d{2}'
_NO_TRAILING_AMOUNT = r'(?!.*\d[,.]\d{2}\s*(?:kr)?\s*$)'
_HAS_LETTER = r'.*?[^\W\d_].*?'

HEADER_LINES = 6   # store header rules only look at the top of the receipt


class PatternRule(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    kind: LineKind
    pattern: re.Pattern
    priority: int
    build: Callable[[re.Match], Payload]
    max_line: Optional[int] = None

    def applies_to(self, line: RawLine) -> Optional[re.Match]:
        if self.max_line is not None and line.index > self.max_line:
            return None
        return self.pattern.match(line.clean)


class StoreGrammar(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    header: Optional[re.Pattern] = None     # chain name, optional format and location
    rules: tuple[PatternRule, ...]
    multi_buy: bool = False

    def classify(self, line: RawLine) -> LineClassification:
        """First matching rule wins.  A rule whose payload cannot be built is skipped."""
        if line.is_blank:
            return LineClassification(
                line=line, kind=LineKind.METADATA, payload=TextPayload(text=""), rule="blank",
            )
        for rule in self.rules:
            m = rule.applies_to(line)
            if not m:
                continue
            try:
                payload = rule.build(m)
            except ValueError as e:
                logger.debug("Rule %s matched line %d but payload failed: %s", rule.name, line.index, e)
                continue
            return LineClassification(line=line, kind=rule.kind, payload=payload, rule=rule.name)
        return LineClassification.unknown(line)

    def store_header(self, lines: list[RawLine]) -> Optional[str]:
        """Return the printed store header (e.g. "ICA Kvantum Liljeholmen") if present."""
        if self.header is None:
            return None
        for line in [l for l in lines if not l.is_blank][:10]:
            if self.header.match(line.clean):
                return line.clean
        return None


def _rule(name, kind, pattern, priority, build, max_line=None) -> PatternRule:
    return PatternRule(
        name=name, kind=kind, pattern=re.compile(pattern, re.IGNORECASE),
        priority=priority, build=build, max_line=max_line,
    )


def _grammar(name, rules, header=None, multi_buy=False) -> StoreGrammar:
    return StoreGrammar(
        name=name,
        header=re.compile(header, re.IGNORECASE) if header else None,
        rules=tuple(sorted(rules, key=lambda r: r.priority)),
        multi_buy=multi_buy,
    )


# ── Payload builders ──────────────────────────────────────────────────────────

def _text(m: re.Match) -> TextPayload:
    return TextPayload(text=m.group(0).strip())


def _total(m: re.Match) -> TotalPayload:
    return TotalPayload(amount=parse_amount(m.group("amount")))


def _price(m: re.Match) -> PricePayload:
    return PricePayload(amount=parse_amount(m.group("amount")))


def _weight_price(m: re.Match) -> PricePayload:
    return PricePayload(amount=parse_amount(m.group("amount")), quantity=parse_quantity(m.group("weight")))


def _item_name(m: re.Match) -> ItemNamePayload:
    count = m.group("count")
    return ItemNamePayload(
        product_text=m.group("name").strip(),
        marked=bool(m.group("mark")),
        printed_count=int(count) if count else None,
    )


def _inline_item(m: re.Match) -> ItemNamePayload:
    groups = m.groupdict()
    quantity = groups.get("qty") or groups.get("weight")
    return ItemNamePayload(
        product_text=groups["name"].strip(),
        inline_price=parse_amount(groups["amount"]),
        quantity=parse_quantity(quantity) if quantity else None,
    )


def _columnar_item(m: re.Match) -> ItemNamePayload:
    return ItemNamePayload(
        product_text=m.group("name").strip(),
        marked=bool(m.group("mark")),
        inline_price=parse_amount(m.group("amount")),
        quantity=parse_quantity(m.group("qty")),
        article_number=m.group("article"),
    )


def _plain_discount(m: re.Match) -> DiscountPayload:
    return DiscountPayload(
        label=(m.groupdict().get("label") or "").strip(),
        printed_discount=parse_amount(m.group("amount")),
    )


def _unlabelled_discount(m: re.Match) -> DiscountPayload:
    return DiscountPayload(label="", printed_discount=parse_amount(m.group("amount")))


def _multi_buy(m: re.Match) -> DiscountPayload:
    label = " ".join(p for p in (m.group("label").strip(), m.group("trailing")) if p)
    qty = m.group("qty")
    token = m.group("token")
    printed = parse_amount(m.group("amount"))
    if not qty.isdigit() or int(qty) == 0:
        return DiscountPayload(label=label, printed_discount=printed, malformed_token=token)
    return DiscountPayload(
        label=label,
        printed_discount=printed,
        promo=MultiBuyPromo(
            quantity=int(qty),
            bundle_price=parse_amount(m.group("bundle")),
            promo_label=label,
        ),
    )


# ── Shared patterns ───────────────────────────────────────────────────────────

_UNIT_PRICE_RE = rf'^(?P<amount>{AMOUNT})\s*(?:kr|SEK)?$'
_PLAIN_DISCOUNT_RE = rf'^(?P<label>.*?)\s*-\s?(?P<amount>{AMOUNT})$'
_ITEM_NAME_RE = rf'^{_NO_TRAILING_AMOUNT}(?P<mark>\*)?\s*(?P<name>{_HAS_LETTER})(?:\s+(?P<count>\d{{1,3}}))?$'
# "<label> <N>F<price> -<printed>", also "3/45" and "2för90 rabatt -25,00";
# the token must stand on its own.
_MULTI_BUY_RE = (
    rf'^(?P<label>.*?)(?:^|\s+)(?P<token>(?P<qty>\S*?)(?:för|f|/)(?P<bundle>\d+(?:[,.]\d{{1,2}})?)(?:kr)?)'
    rf'(?:\s+(?!pris\b)(?P<trailing>[^\W\d_]+))?\s+-\s?(?P<amount>{AMOUNT})$'
)
# "Name [ArticleNo] [UnitPrice] Qty [st|kg] Summa" rows of the columnar ICA layouts
_COLUMNAR_ITEM_RE = (
    rf'^(?P<mark>\*)?\s*(?P<name>{_HAS_LETTER})(?:\s+(?P<article>\d{{8,13}}))?(?:\s+{AMOUNT})?'
    rf'\s+(?P<qty>\d+(?:[,.]\d{{1,3}})?)\s*(?:st|kg)?\s+(?P<amount>{AMOUNT})$'
)
_ICA_HEADER_RE = r'^ICA(?:\s+(?:Kvantum|Maxi|Nära|Supermarket)\b[^\d]*)?$'
_WILLYS_HEADER_RE = r'^Willys(?:\s+Hemma)?(?:\s+[^\W\d_]+){0,2}$'
_FOOTER_RE = (
    r'^(?:Moms|Kort|Netto|Brutto|Betalat|Betalningsinformation|Erhållen rabatt|'
    r'Avrundning|Öresavrundning|Returkod|Öppettider|Org\.?\s*nr|Kassa|Kvitto|Kassör|'
    r'Datum|Tel|Mottaget|Växel|Bankkort|Kontokort)\b'
)


def _common_rules(total_words: str) -> list[PatternRule]:
    return [
        _rule("total", LineKind.TOTAL,
              rf'^(?:{total_words})\b[^\d\-]*?(?P<amount>{AMOUNT})\s*(?:kr|SEK)?$', 10, _total),
        _rule("footer", LineKind.METADATA, _FOOTER_RE, 15, _text),
        _rule("date", LineKind.METADATA, r'^\d{4}-\d{2}-\d{2}\b', 16, _text),
        _rule("unit_price", LineKind.UNIT_PRICE, _UNIT_PRICE_RE, 60, _price),
    ]


def build_ica_grammar() -> StoreGrammar:
    return _grammar("ica", _common_rules("Totalt|Att betala|Summa") + [
        _rule("multi_buy", LineKind.DISCOUNT_PROMO, _MULTI_BUY_RE, 20, _multi_buy),
        _rule("plain_discount", LineKind.DISCOUNT_PROMO, _PLAIN_DISCOUNT_RE, 30, _plain_discount),
        _rule("store_header", LineKind.METADATA, _ICA_HEADER_RE, 35, _text, max_line=HEADER_LINES),
        _rule("table_header", LineKind.METADATA, r'^Beskrivning\b', 38, _text),
        _rule("columnar_item", LineKind.ITEM_NAME, _COLUMNAR_ITEM_RE, 55, _columnar_item),
        _rule("item_name", LineKind.ITEM_NAME, _ITEM_NAME_RE, 80, _item_name),
    ], header=_ICA_HEADER_RE, multi_buy=True)


def build_willys_grammar() -> StoreGrammar:
    return _grammar("willys", _common_rules("Totalt|Att betala") + [
        _rule("willys_discount", LineKind.DISCOUNT_PROMO,
              rf'^(?:Rabatt|Willys Plus)\s*:.*?\s-\s?(?P<amount>{AMOUNT})$', 20, _unlabelled_discount),
        _rule("store_header", LineKind.METADATA, _WILLYS_HEADER_RE, 35, _text, max_line=HEADER_LINES),
        _rule("self_scan", LineKind.METADATA, r'^(?:Start|Slut)\s+Självscanning\b', 36, _text),
        _rule("deposit_return", LineKind.METADATA, rf'^PANTRETUR\s+-?{AMOUNT}$', 37, _text),
        _rule("weight_line", LineKind.UNIT_PRICE,
              rf'^(?P<weight>\d+[,.]\d+)\s*kg\s*\*\s*{AMOUNT}\s*kr/kg\s+(?P<amount>{AMOUNT})$',
              50, _weight_price),
        _rule("weighted_item", LineKind.ITEM_NAME,
              rf'^(?P<name>{_HAS_LETTER})\s+(?P<weight>\d+[,.]\d+)\s*kg\s*\*\s*{AMOUNT}\s*kr/kg\s+(?P<amount>{AMOUNT})$',
              65, _inline_item),
        _rule("multi_piece_item", LineKind.ITEM_NAME,
              rf'^(?P<name>{_HAS_LETTER})\s+(?P<qty>\d+)\s*st\s*\*\s*{AMOUNT}\s+(?P<amount>{AMOUNT})$',
              66, _inline_item),
        _rule("single_line_item", LineKind.ITEM_NAME,
              rf'^(?P<name>{_HAS_LETTER})\s+(?P<amount>{AMOUNT})$', 70, _inline_item),
        _rule("item_name", LineKind.ITEM_NAME, _ITEM_NAME_RE, 80, _item_name),
    ], header=_WILLYS_HEADER_RE, multi_buy=False)


def build_generic_grammar() -> StoreGrammar:
    return _grammar("generic", _common_rules("Totalt|Total|Att betala|Summa") + [
        _rule("plain_discount", LineKind.DISCOUNT_PROMO, _PLAIN_DISCOUNT_RE, 30, _plain_discount),
        _rule("item_name", LineKind.ITEM_NAME, _ITEM_NAME_RE, 80, _item_name),
    ])


# ── Registry ──────────────────────────────────────────────────────────────────

def normalize_store_id(store_id: str) -> str:
    return " ".join(store_id.lower().split())


class GrammarRegistry:
    """Read-only store id → grammar lookup."""

    def __init__(self, grammars: Mapping[str, StoreGrammar], generic: StoreGrammar):
        self._grammars = MappingProxyType(
            {normalize_store_id(k): g for k, g in grammars.items()}
        )
        self.generic = generic

    def grammar_for(self, store_id: str) -> StoreGrammar:
        """
        Exact key first, then the longest registered key the id starts with
        ("ica kvantum liljeholmen" → ICA).  Anything else gets the generic grammar.
        """
        key = normalize_store_id(store_id)
        if key in self._grammars:
            return self._grammars[key]
        prefixes = [k for k in self._grammars if key.startswith(k + " ")]
        if prefixes:
            return self._grammars[max(prefixes, key=len)]
        return self.generic

    def rules_for(self, store_id: str) -> tuple[PatternRule, ...]:
        return self.grammar_for(store_id).rules

    def store_ids(self) -> list[str]:
        return sorted(self._grammars)


def build_default_registry() -> GrammarRegistry:
    ica = build_ica_grammar()
    willys = build_willys_grammar()
    return GrammarRegistry(
        {
            "ica": ica,
            "ica kvantum": ica,
            "ica maxi": ica,
            "ica nära": ica,
            "ica supermarket": ica,
            "willys": willys,
            "willys hemma": willys,
        },
        generic=build_generic_grammar(),
    )


DEFAULT_REGISTRY = build_default_registry()


# ── Store detection ───────────────────────────────────────────────────────────

# Keyword pattern → canonical store id.  Specific ICA formats before plain "ICA".
KNOWN_STORES: list[tuple[str, str]] = [
    (r'\bica\s+kvantum\b',     "ICA Kvantum"),
    (r'\bica\s+maxi\b',        "ICA Maxi"),
    (r'\bica\s+nära\b',        "ICA Nära"),
    (r'\bica\s+supermarket\b', "ICA Supermarket"),
    (r'\bwilly',               "Willys"),
    (r'självscanning',         "Willys"),
    (r'\bcoop\b',              "Coop"),
    (r'\bhemköp\b',            "Hemköp"),
    (r'\blidl\b',              "Lidl"),
    (r'\bcity\s+gross\b',      "City Gross"),
    (r'\bica\b',               "ICA"),
]


def detect_store(text: str) -> Optional[str]:
    """Scan the whole receipt for a known chain.  Returns the canonical id or None."""
    for pattern, name in KNOWN_STORES:
        if re.search(pattern, text, re.IGNORECASE):
            return name
    return None
