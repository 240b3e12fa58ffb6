"""
Tests for the anomaly reporter and the item-level sanity checks.
"""
from decimal import Decimal

from models.schemas import Anomaly, ReceiptItem
from services.anomalies import AnomalyReporter, check_items, orphan_line, pattern_fallback


def item(name="Ost", price="10.00", quantity="1", category="other"):
    return ReceiptItem(name=name, price=Decimal(price), quantity=Decimal(quantity), category=category)


class TestAnomalyReporter:

    def test_record_and_drain(self):
        r = AnomalyReporter()
        r.record(Anomaly(type="orphan_line", description="x", severity="low"))
        r.add("math_mismatch", "y", "medium")
        assert len(r) == 2
        drained = r.drain()
        assert [a.type for a in drained] == ["orphan_line", "math_mismatch"]
        assert len(r) == 0
        assert r.drain() == []

    def test_add_with_item(self):
        r = AnomalyReporter()
        a = r.add("negative_price", "clamped", "high", item("Sallad", "0.00"))
        assert a.affected_item.name == "Sallad"
        assert a.affected_item.quantity == Decimal("1")

    def test_reporters_are_independent(self):
        a, b = AnomalyReporter(), AnomalyReporter()
        a.add("orphan_line", "x", "low")
        assert len(b) == 0


class TestCheckItems:

    def test_clean_items(self):
        assert check_items([item(), item("Bröd", "32.90")]) == []

    def test_absurd_unit_price(self):
        found = check_items([item("Godis", "1.00", "4")])
        assert [a.type for a in found] == ["absurd_unit_price"]
        assert found[0].severity == "high"

    def test_zero_price_is_not_absurd(self):
        assert check_items([item("Gratis", "0.00", "3")]) == []

    def test_high_quantity(self):
        found = check_items([item("Servetter", "600.00", "60")])
        assert [a.type for a in found] == ["high_quantity"]
        assert found[0].severity == "medium"

    def test_pant_is_exempt(self):
        assert check_items([item("Pant", "1.00", "60", category="pant")]) == []

    def test_total_within_tolerance(self):
        assert check_items([item(price="25.00")], Decimal("26.50")) == []

    def test_total_mismatch(self):
        found = check_items([item(price="25.00")], Decimal("26.51"))
        assert [a.type for a in found] == ["math_mismatch"]
        assert found[0].affected_item is None

    def test_pant_still_counts_towards_total(self):
        items = [item(price="20.00"), item("Pant", "2.00", category="pant")]
        assert check_items(items, Decimal("22.00")) == []


class TestAnomalyConstructors:

    def test_orphan_line_uses_one_based_line_numbers(self):
        a = orphan_line("41,90", 0, "medium")
        assert a.type == "orphan_line"
        assert "Line 1" in a.description
        assert a.severity == "medium"

    def test_pattern_fallback(self):
        a = pattern_fallback("Frukt F27 -9,00", 4, "F27")
        assert a.type == "pattern_fallback"
        assert "F27" in a.description
