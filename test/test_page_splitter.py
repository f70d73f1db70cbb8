from __future__ import annotations

import random
import threading
import unittest
from collections import Counter
from decimal import Decimal
from typing import Any, List, Sequence, Tuple

from page_balancer import (
    FanOutCancelled,
    InvalidConfiguration,
    InvalidWeight,
    PageSplitter,
    PartitionSettings,
    StructuredLogger,
    partition,
)
from page_balancer.page_splitter import (
    CandidateAssignment,
    WeightedItem,
    evaluate_candidate,
    score_for,
    search_space,
    select_candidate,
)


def _named(weights: Sequence[float]) -> List[Tuple[str, float]]:
    return [(f"item-{idx}", float(weight)) for idx, weight in enumerate(weights)]


def _weight(item: Tuple[str, float]) -> float:
    return item[1]


def _candidate(group_count: int, score: float) -> CandidateAssignment[Any]:
    return CandidateAssignment(group_count=group_count, groups=(), group_weights=(), deviation=1.0, score=score)


class PageSplitterTests(unittest.TestCase):
    def setUp(self) -> None:
        StructuredLogger.configure(sinks=[{"type": "memory", "name": "splitter"}], level="DEBUG")
        self.splitter = PageSplitter(PartitionSettings(round_deviation_up_to=0.0, max_groups=4, degree_of_parallelism=2))

    def tearDown(self) -> None:
        StructuredLogger.reset_context()

    def test_equal_weights_pick_one_item_per_group(self) -> None:
        items = _named([10, 10, 10, 10])
        plan = self.splitter.plan(items, _weight, round_deviation_up_to=0.0, max_groups=4)
        self.assertEqual(plan.winner.group_count, 4)
        self.assertEqual(plan.groups, [[items[0]], [items[1]], [items[2]], [items[3]]])
        self.assertEqual(plan.winner.deviation, 0.0)
        self.assertEqual(plan.winner.score, float("inf"))
        self.assertEqual(plan.candidates[2].score, float("inf"))
        self.assertAlmostEqual(plan.candidates[3].score, 0.3)
        self.assertAlmostEqual(plan.metrics.imbalance_ratio, 1.0)
        self.assertAlmostEqual(plan.metrics.weight_gini, 0.0)

    def test_heavy_item_stays_alone(self) -> None:
        items = _named([100] + [1] * 9)
        plan = self.splitter.plan(items, _weight, round_deviation_up_to=0.0, max_groups=4)
        self.assertEqual(sorted(plan.candidates), [2, 3, 4])
        for candidate in plan.candidates.values():
            heavy_group = next(group for group in candidate.groups if any(entry.weight == 100 for entry in group))
            self.assertEqual(len(heavy_group), 1)
            self.assertEqual(max(candidate.group_weights), 100.0)
        deviations = [plan.candidates[k].deviation for k in (2, 3, 4)]
        self.assertEqual(deviations, [91.0, 96.0, 97.0])
        self.assertEqual(plan.winner.group_count, 4)
        self.assertEqual(plan.groups[0], [items[0]])

    def test_perfect_splits_tie_on_larger_group_count(self) -> None:
        items = _named([8, 7, 6, 5, 4, 3, 2, 1])
        plan = self.splitter.plan(items, _weight, round_deviation_up_to=0.0, max_groups=4)
        self.assertEqual(plan.candidates[2].deviation, 0.0)
        self.assertEqual(plan.candidates[3].deviation, 2.0)
        self.assertEqual(plan.candidates[4].deviation, 0.0)
        self.assertEqual(plan.winner.group_count, 4)
        self.assertEqual([sum(weight for _, weight in group) for group in plan.groups], [9.0, 9.0, 9.0, 9.0])
        self.assertEqual(plan.groups[0], [items[0], items[7]])

    def test_tied_weights_give_even_group_sizes(self) -> None:
        for count, max_groups in ((7, 5), (7, 7), (11, 4), (3, 16)):
            with self.subTest(count=count, max_groups=max_groups):
                items = _named([1] * count)
                groups = self.splitter.partition(items, _weight, max_groups=max_groups)
                sizes = [len(group) for group in groups]
                self.assertLessEqual(max(sizes) - min(sizes), 1)
                self.assertEqual(len(groups), min(count, max_groups))

    def test_no_loss_no_duplication(self) -> None:
        rng = random.Random(7)
        items = [(f"item-{idx}", rng.uniform(0.0, 50.0)) for idx in range(60)]
        items += items[:5]  # duplicated values must survive as a multiset
        groups = partition(items, _weight, round_deviation_up_to=0.5, max_groups=9)
        flattened = [item for group in groups for item in group]
        self.assertEqual(Counter(flattened), Counter(items))
        self.assertTrue(all(group for group in groups))

    def test_fewer_than_two_items(self) -> None:
        self.assertEqual(partition([], _weight, 0.0, 4), [[]])
        single = [("only", 3.0)]
        self.assertEqual(partition(single, _weight, 0.0, 4), [single])
        plan = self.splitter.plan(single, _weight)
        self.assertEqual(plan.winner.group_count, 1)
        self.assertEqual(plan.candidates, {})

    def test_deterministic_repeated_calls(self) -> None:
        rng = random.Random(11)
        items = [(f"item-{idx}", float(rng.randint(1, 20))) for idx in range(40)]
        first = self.splitter.plan(items, _weight, max_groups=8)
        second = self.splitter.plan(items, _weight, max_groups=8)
        self.assertEqual(first.plan_id, second.plan_id)
        self.assertEqual(first.groups, second.groups)
        self.assertEqual(first.winner.group_count, second.winner.group_count)

    def test_deviation_never_below_floor(self) -> None:
        items = _named([10, 10, 10, 10, 3, 3])
        plan = self.splitter.plan(items, _weight, round_deviation_up_to=5.0, max_groups=4)
        for candidate in plan.candidates.values():
            self.assertGreaterEqual(candidate.deviation, 5.0)
        equal = self.splitter.plan(_named([10, 10, 10, 10]), _weight, round_deviation_up_to=5.0, max_groups=4)
        self.assertEqual(equal.candidates[2].deviation, 5.0)
        self.assertAlmostEqual(equal.candidates[4].score, 0.8)
        self.assertEqual(equal.winner.group_count, 4)

    def test_invalid_configuration_before_any_weighing(self) -> None:
        calls: List[Any] = []

        def weight(item: Tuple[str, float]) -> float:
            calls.append(item)
            return item[1]

        with self.assertRaises(InvalidConfiguration):
            partition(_named([1, 2, 3]), weight, 0.0, 1)
        with self.assertRaises(InvalidConfiguration):
            partition(_named([1, 2, 3]), weight, -1.0, 4)
        with self.assertRaises(InvalidConfiguration):
            self.splitter.plan(_named([1, 2, 3]), weight, max_groups=0)
        self.assertEqual(calls, [])

    def test_invalid_weight_identifies_item(self) -> None:
        items = [("a", 1.0), ("b", None), ("c", 2.0)]

        def lookup(item: Tuple[str, Any]) -> float:
            if item[1] is None:
                raise KeyError(item[0])
            return item[1]

        with self.assertRaises(InvalidWeight) as ctx:
            self.splitter.partition(items, lookup)
        self.assertEqual(ctx.exception.index, 1)
        self.assertEqual(ctx.exception.item, ("b", None))
        self.assertIsInstance(ctx.exception.__cause__, KeyError)

        for bad in (-1.0, float("nan"), float("inf"), "heavy", True):
            with self.subTest(weight=bad):
                with self.assertRaises(InvalidWeight) as bad_ctx:
                    self.splitter.partition([("x", 1.0), ("y", bad)], _weight)
                self.assertEqual(bad_ctx.exception.index, 1)

    def test_overflowing_total_weight_is_rejected(self) -> None:
        with self.assertRaises(InvalidWeight) as ctx:
            partition([1e308] * 4, lambda weight: weight, 0.0, 2)
        self.assertEqual(ctx.exception.index, 1)
        self.assertIn("overflow", ctx.exception.reason)

    def test_decimal_weights_are_accepted(self) -> None:
        items = [Decimal("3"), Decimal("1.5"), Decimal("1.5")]
        groups = self.splitter.partition(items, lambda weight: weight, max_groups=4)
        self.assertEqual(groups, [[Decimal("3")], [Decimal("1.5"), Decimal("1.5")]])
        with self.assertRaises(InvalidWeight):
            self.splitter.partition([Decimal("1"), Decimal("NaN")], lambda weight: weight)

    def test_zero_weights_are_balanced(self) -> None:
        groups = self.splitter.partition(_named([0, 0, 0]), _weight, max_groups=4)
        self.assertEqual(len(groups), 3)

    def test_cancel_event_aborts_plan(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(FanOutCancelled):
            self.splitter.plan(_named([5, 4, 3, 2]), _weight, cancel_event=cancel)

    def test_selected_event_is_logged(self) -> None:
        plan = self.splitter.plan(_named([3, 3, 2, 2, 1]), _weight)
        handler = StructuredLogger.get_memory_sink("splitter")
        assert handler is not None
        selected = [event for event in handler.events() if event["event"] == "partition.selected"]
        self.assertEqual(len(selected), 1)
        self.assertEqual(selected[0]["plan_id"], plan.plan_id)
        self.assertEqual(selected[0]["extras"]["group_count"], plan.winner.group_count)
        candidates = [event for event in handler.events() if event["event"] == "partition.candidate"]
        self.assertEqual(len(candidates), len(plan.candidates))

    def test_snapshot_is_serialisable_summary(self) -> None:
        plan = self.splitter.plan(_named([9, 7, 5, 3, 1]), _weight)
        snapshot = plan.snapshot()
        self.assertEqual(sorted(snapshot["candidates"]), [2, 3, 4])
        self.assertEqual(snapshot["winner"]["group_count"], plan.winner.group_count)
        self.assertEqual(snapshot["settings"]["max_groups"], 4)
        self.assertEqual(snapshot["metrics"]["item_count"], 5)


class GreedyPlacementTests(unittest.TestCase):
    def _ordered(self, weights: Sequence[float]) -> Tuple[WeightedItem[int], ...]:
        return tuple(WeightedItem(source=idx, weight=float(weight), index=idx) for idx, weight in enumerate(weights))

    def test_lowest_index_wins_ties(self) -> None:
        candidate = evaluate_candidate(self._ordered([5, 5, 2, 2, 1]), 2, 0.0)
        self.assertEqual(candidate.sources(), [[0, 2, 4], [1, 3]])
        self.assertEqual(candidate.group_weights, (8.0, 7.0))
        self.assertEqual(candidate.deviation, 1.0)
        self.assertEqual(candidate.score, 2.0)

    def test_seeds_are_heaviest_items(self) -> None:
        candidate = evaluate_candidate(self._ordered([9, 8, 7, 1, 1]), 3, 0.0)
        self.assertEqual([group[0].source for group in candidate.groups], [0, 1, 2])

    def test_search_space_bounds(self) -> None:
        self.assertEqual(list(search_space(10, 4)), [2, 3, 4])
        self.assertEqual(list(search_space(3, 16)), [2, 3])
        self.assertEqual(list(search_space(1, 16)), [])

    def test_zero_deviation_scores_infinite(self) -> None:
        self.assertEqual(score_for(3, 0.0), float("inf"))
        self.assertEqual(score_for(3, 1.5), 2.0)


class SelectionTests(unittest.TestCase):
    def test_best_score_wins(self) -> None:
        winner = select_candidate([_candidate(2, 0.4), _candidate(3, 0.9), _candidate(4, 0.1)])
        self.assertEqual(winner.group_count, 3)

    def test_tie_prefers_more_groups(self) -> None:
        winner = select_candidate([_candidate(3, 0.5), _candidate(2, 0.5), _candidate(4, 0.2)])
        self.assertEqual(winner.group_count, 3)
        winner = select_candidate([_candidate(2, float("inf")), _candidate(5, float("inf"))])
        self.assertEqual(winner.group_count, 5)

    def test_near_equal_scores_are_distinct_by_default(self) -> None:
        candidates = [_candidate(2, 0.5000001), _candidate(3, 0.5)]
        self.assertEqual(select_candidate(candidates).group_count, 2)
        self.assertEqual(select_candidate(candidates, score_tolerance=1e-3).group_count, 3)

    def test_nan_scores_rank_last(self) -> None:
        winner = select_candidate([_candidate(2, float("nan")), _candidate(3, 0.2), _candidate(4, float("nan"))])
        self.assertEqual(winner.group_count, 3)
        winner = select_candidate([_candidate(2, float("nan")), _candidate(3, float("nan"))])
        self.assertEqual(winner.group_count, 3)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
