"""Tests for text price parsing and candidate construction."""

import sys
import unittest
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pricetracker.price_parser import (
    apply_cents_heuristic,
    first_price_fragment,
    fragment_values,
    make_candidate,
    parse_price,
    price_fragments,
)
from pricetracker.results import SourceTag


class TestParsePrice(unittest.TestCase):
    def test_thousands_comma_with_decimal_dot(self):
        self.assertEqual(parse_price("1,234.56"), Decimal("1234.56"))

    def test_comma_is_decimal_point_without_dot(self):
        self.assertEqual(parse_price("99,90"), Decimal("99.90"))

    def test_empty_and_non_numeric_text(self):
        self.assertIsNone(parse_price(""))
        self.assertIsNone(parse_price(None))
        self.assertIsNone(parse_price("Call for price"))

    def test_currency_symbols_and_spaces_are_ignored(self):
        self.assertEqual(parse_price("$ 49.99"), Decimal("49.99"))
        self.assertEqual(parse_price("£1,299.00"), Decimal("1299.00"))
        self.assertEqual(parse_price("€ 12,50"), Decimal("12.50"))

    def test_squashed_numbers_use_leading_prefix(self):
        self.assertEqual(parse_price("12.34.56"), Decimal("12.34"))

    def test_reparsing_canonical_output_is_stable(self):
        samples = ["1,234.56", "99,90", "$49.99", "£ 1,000", "0.5", "12.34.56", "$ 7", "2,499.00 USD"]
        for text in samples:
            with self.subTest(text=text):
                first = parse_price(text)
                self.assertIsNotNone(first)
                self.assertEqual(parse_price(str(first)), first)


class TestFragmentsAndCandidates(unittest.TestCase):
    def test_price_fragments_split_element_text(self):
        fragments = list(price_fragments("Now $49.99 was $59.99"))
        self.assertEqual(fragments, ["$49.99", "$59.99"])
        self.assertEqual(first_price_fragment("Price: $1,299.00 incl. tax"), "$1,299.00")
        self.assertIsNone(first_price_fragment("no digits here"))

    def test_cents_heuristic_only_for_large_integral_values(self):
        self.assertEqual(apply_cents_heuristic(Decimal("4999")), Decimal("4999"))
        self.assertEqual(apply_cents_heuristic(Decimal("12999")), Decimal("129.99"))
        self.assertEqual(apply_cents_heuristic(Decimal("12999.50")), Decimal("12999.50"))

    def test_make_candidate_discards_out_of_range_values(self):
        self.assertIsNone(make_candidate(Decimal("0"), SourceTag.SELECTOR))
        self.assertIsNone(make_candidate(Decimal("100000.5"), SourceTag.SELECTOR))
        self.assertIsNone(make_candidate(None, SourceTag.SELECTOR))

        candidate = make_candidate(Decimal("24999"), SourceTag.INLINE_JSON, 42)
        self.assertEqual(candidate.value, Decimal("249.99"))
        self.assertEqual(candidate.source, SourceTag.INLINE_JSON)
        self.assertEqual(candidate.position, 42)

    def test_fragment_values_rounds_and_filters(self):
        self.assertEqual(
            fragment_values("$19.999 or 4 payments of $5.00"),
            [Decimal("20.00"), Decimal("4.00"), Decimal("5.00")],
        )
        self.assertEqual(fragment_values(""), [])

    def test_fragment_values_skips_digit_runs_too_long_to_round(self):
        self.assertEqual(fragment_values("SKU 1234567890123456789012345678901"), [])
        self.assertEqual(
            fragment_values("EAN 1234567890123456789012345678901 now $19.99"),
            [Decimal("19.99")],
        )


if __name__ == "__main__":
    unittest.main()
