"""Tests for scale normalization and candidate fusion."""

import sys
import unittest
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pricetracker.normalizer import normalize
from pricetracker.results import PriceCandidate, SourceTag
from pricetracker.selection import (
    fuse_candidates,
    lock_json_price,
    rank_proximity_groups,
    select_price,
)


def _d(values):
    return [Decimal(str(v)) for v in values]


def _candidates(source, values, start=0):
    return [
        PriceCandidate(value=Decimal(str(v)), source=source, position=start + i * 100)
        for i, v in enumerate(values)
    ]


class TestNormalize(unittest.TestCase):
    def test_cents_encoded_outlier_is_divided(self):
        self.assertEqual(normalize(_d([4900, 49, 51])), _d([49, 49, 51]))

    def test_values_near_the_median_are_untouched(self):
        self.assertEqual(normalize(_d([49, 51, 52])), _d([49, 51, 52]))

    def test_large_value_next_to_small_one_is_divided(self):
        self.assertEqual(normalize(_d([2599, 25.99])), _d(["25.99", "25.99"]))

    def test_consistent_large_prices_are_kept(self):
        self.assertEqual(normalize(_d([1200, 1250, 1300])), _d([1200, 1250, 1300]))

    def test_order_and_length_preserved(self):
        values = _d([10, 5000, 12, 15])
        result = normalize(values)
        self.assertEqual(len(result), len(values))
        self.assertEqual(result[1], Decimal("50"))
        self.assertEqual(result[0], Decimal("10"))

    def test_empty_pool(self):
        self.assertEqual(normalize([]), [])


class TestSelectPrice(unittest.TestCase):
    def test_tie_goes_to_smaller_value(self):
        self.assertEqual(select_price(_d([49.99] * 3 + [59.99] * 3)), Decimal("49.99"))

    def test_frequency_beats_smaller_value(self):
        self.assertEqual(select_price(_d([29.99] + [45.00] * 4)), Decimal("45.00"))

    def test_fractional_value_wins_a_count_tie(self):
        self.assertEqual(select_price(_d([40, 44.99])), Decimal("44.99"))

    def test_values_grouped_at_two_decimals(self):
        self.assertEqual(select_price(_d(["19.999", "20.001", "15.00"])), Decimal("20.00"))

    def test_empty_pool(self):
        self.assertIsNone(select_price([]))


class TestJsonLock(unittest.TestCase):
    def test_dominant_json_value_locks(self):
        candidates = _candidates(SourceTag.INLINE_JSON, [19.99, 19.99, 24.99, 19.99])
        self.assertEqual(lock_json_price(candidates), Decimal("19.99"))

    def test_values_within_epsilon_share_a_group(self):
        candidates = _candidates(SourceTag.STRUCTURED_DATA, [19.99, 20.02, 19.97])
        self.assertEqual(lock_json_price(candidates), Decimal("19.99"))

    def test_no_lock_without_dominance(self):
        candidates = _candidates(SourceTag.INLINE_JSON, [19.99, 19.99, 24.99])
        self.assertIsNone(lock_json_price(candidates))

    def test_later_group_takes_over_when_it_dominates_the_first(self):
        candidates = _candidates(SourceTag.INLINE_JSON, [9.99] + [34.50] * 3)
        self.assertEqual(lock_json_price(candidates), Decimal("34.50"))

    def test_other_sources_are_ignored(self):
        candidates = _candidates(SourceTag.SELECTOR, [10, 10, 10])
        self.assertIsNone(lock_json_price(candidates))

    def test_lock_overrides_frequency_ranking(self):
        pool = _candidates(SourceTag.INLINE_JSON, [19.99, 19.99, 19.99]) + _candidates(
            SourceTag.FULLTEXT, [24.99] * 5, start=1000
        )
        self.assertEqual(fuse_candidates(pool), Decimal("19.99"))

    def test_fusion_falls_back_to_frequency(self):
        pool = _candidates(SourceTag.INLINE_JSON, [19.99, 24.99]) + _candidates(
            SourceTag.SELECTOR, [24.99, 24.99]
        )
        self.assertEqual(fuse_candidates(pool), Decimal("24.99"))

    def test_fusion_normalizes_before_ranking(self):
        pool = _candidates(SourceTag.NETWORK_JSON, [4999]) + _candidates(
            SourceTag.SELECTOR, ["49.99", 12]
        )
        self.assertEqual(fuse_candidates(pool), Decimal("49.99"))

    def test_empty_pool(self):
        self.assertIsNone(fuse_candidates([]))


class TestProximityRanking(unittest.TestCase):
    def test_values_near_the_buy_button_rank_first(self):
        fragments = [
            (Decimal("49.99"), 400),
            (Decimal("49.99"), 420),
            (Decimal("79.99"), 1500),
        ]
        groups = rank_proximity_groups(fragments, anchor=450)
        self.assertEqual(groups[0].value, Decimal("49.99"))
        self.assertEqual(groups[0].count, 2)
        self.assertGreater(groups[0].score, groups[1].score)

    def test_distance_outweighs_count_when_far_enough(self):
        fragments = [(Decimal("12.00"), 3000)] * 2 + [(Decimal("30.00"), 100)]
        groups = rank_proximity_groups(fragments, anchor=90)
        self.assertEqual(groups[0].value, Decimal("30.00"))

    def test_without_anchor_score_is_count(self):
        fragments = [(Decimal("5.00"), None), (Decimal("7.00"), 10), (Decimal("7.00"), 900)]
        groups = rank_proximity_groups(fragments, anchor=None)
        self.assertEqual([g.value for g in groups], [Decimal("7.00"), Decimal("5.00")])
        self.assertEqual(groups[0].score, 2.0)


if __name__ == "__main__":
    unittest.main()
