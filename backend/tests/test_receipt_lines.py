"""
Tests for receipt line primitives — amount parsing, the tokenizer, and the
kind/payload pairing enforced on LineClassification.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from services.receipt_lines import (
    DiscountPayload,
    ItemNamePayload,
    LineClassification,
    LineKind,
    MultiBuyPromo,
    PricePayload,
    RawLine,
    TextPayload,
    money,
    parse_amount,
    parse_quantity,
    tokenize,
)


# ── Amounts ──────────────────────────────────────────────────────────────────

class TestParseAmount:

    def test_comma_decimal(self):
        assert parse_amount("41,90") == Decimal("41.90")

    def test_dot_decimal(self):
        assert parse_amount("129.80") == Decimal("129.80")

    def test_thousands_separator(self):
        assert parse_amount("1 234,50") == Decimal("1234.50")

    def test_whole_number(self):
        assert parse_amount("25") == Decimal("25.00")

    def test_surrounding_whitespace(self):
        assert parse_amount("  18,00 ") == Decimal("18.00")

    def test_unicode_minus(self):
        assert parse_amount("−5,00") == Decimal("-5.00")

    def test_rejects_text(self):
        with pytest.raises(ValueError):
            parse_amount("Kampanj")

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            parse_amount("")


class TestMoney:

    def test_rounds_half_up(self):
        assert money(Decimal("2.675")) == Decimal("2.68")
        assert money(Decimal("0.005")) == Decimal("0.01")

    def test_quantizes_to_two_places(self):
        assert str(money(Decimal("25"))) == "25.00"


class TestParseQuantity:

    def test_weight(self):
        assert parse_quantity("0,842") == Decimal("0.842")

    def test_count(self):
        assert parse_quantity("2") == Decimal("2")

    def test_rejects_text(self):
        with pytest.raises(ValueError):
            parse_quantity("st")


# ── Tokenizer ────────────────────────────────────────────────────────────────

class TestTokenize:

    def test_empty_input(self):
        assert tokenize("") == []

    def test_keeps_blank_lines_in_place(self):
        lines = tokenize("*Äpplen Pink Lady\n\n 18,00")
        assert [l.index for l in lines] == [0, 1, 2]
        assert lines[1].is_blank
        assert lines[2].clean == "18,00"

    def test_strips_carriage_returns(self):
        lines = tokenize("Mjölk\r\n 25,00\r\n")
        assert lines[0].text == "Mjölk"
        assert lines[1].text == " 25,00"

    def test_whitespace_only_line_is_blank(self):
        assert RawLine(index=0, text="   \t").is_blank

    def test_preserves_original_text(self):
        lines = tokenize(" 41,90")
        assert lines[0].text == " 41,90"
        assert lines[0].clean == "41,90"


# ── LineClassification ───────────────────────────────────────────────────────

class TestLineClassification:

    def line(self, text="x"):
        return RawLine(index=0, text=text)

    def test_matching_payload_accepted(self):
        c = LineClassification(
            line=self.line(" 41,90"), kind=LineKind.UNIT_PRICE,
            payload=PricePayload(amount=Decimal("41.90")),
        )
        assert c.payload.amount == Decimal("41.90")

    def test_mismatched_payload_rejected(self):
        with pytest.raises(ValidationError):
            LineClassification(
                line=self.line(), kind=LineKind.ITEM_NAME,
                payload=PricePayload(amount=Decimal("1.00")),
            )

    def test_unknown_carries_text(self):
        c = LineClassification.unknown(self.line("  Frukt F27 -9,00 "))
        assert c.kind == LineKind.UNKNOWN
        assert c.payload == TextPayload(text="Frukt F27 -9,00")

    def test_as_unknown_keeps_line(self):
        c = LineClassification(
            line=self.line("*Kiwi"), kind=LineKind.ITEM_NAME,
            payload=ItemNamePayload(product_text="Kiwi", marked=True),
        )
        u = c.as_unknown()
        assert u.kind == LineKind.UNKNOWN
        assert u.line == c.line

    def test_classification_is_frozen(self):
        c = LineClassification.unknown(self.line())
        with pytest.raises(ValidationError):
            c.kind = LineKind.TOTAL


class TestPayloads:

    def test_multi_buy_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            MultiBuyPromo(quantity=0, bundle_price=Decimal("25"))

    def test_bundle_price_not_negative(self):
        with pytest.raises(ValidationError):
            MultiBuyPromo(quantity=2, bundle_price=Decimal("-1"))

    def test_malformed_flag(self):
        d = DiscountPayload(label="Frukt", printed_discount=Decimal("9"), malformed_token="F27")
        assert d.is_malformed
        assert not DiscountPayload(printed_discount=Decimal("5")).is_malformed

    def test_item_name_requires_text(self):
        with pytest.raises(ValidationError):
            ItemNamePayload(product_text="")
