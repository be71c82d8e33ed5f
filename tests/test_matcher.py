"""
Tests for the bounded subset-sum matcher.
"""

from datetime import date

import pytest

from tesouraria.reconciliation.matcher import BoundedSubsetMatcher, GroupItem

DAY = date(2024, 3, 10)


def items(*amounts):
    return [GroupItem(id=f"r{i}", amount_cents=a, day=DAY) for i, a in enumerate(amounts)]


@pytest.fixture
def matcher():
    return BoundedSubsetMatcher(max_size=5)


class TestBoundedSubsetMatcher:
    """Test suite for group search."""

    def test_finds_three_way_batch(self, matcher):
        solutions = matcher.find(20000, items(5000, 5000, 10000))

        assert len(solutions) == 1
        assert sorted(i.amount_cents for i in solutions[0]) == [5000, 5000, 10000]

    def test_returns_only_smallest_size(self, matcher):
        # 100 = 70+30 = 50+50 = 50+30+20
        solutions = matcher.find(100, items(50, 50, 30, 70, 20))

        assert solutions
        assert all(len(s) == 2 for s in solutions)
        sums = {tuple(sorted(i.amount_cents for i in s)) for s in solutions}
        assert sums == {(30, 70), (50, 50)}

    def test_single_item_is_not_a_group(self, matcher):
        assert matcher.find(100, items(100, 3)) == []

    def test_no_solution(self, matcher):
        assert matcher.find(1000, items(300, 300, 300)) == []

    def test_respects_max_size(self):
        matcher = BoundedSubsetMatcher(max_size=2)
        assert matcher.find(300, items(100, 100, 100)) == []

    def test_tolerance(self):
        matcher = BoundedSubsetMatcher(max_size=3, tolerance_cents=5)
        solutions = matcher.find(1000, items(498, 499))
        assert len(solutions) == 1

    def test_budget_exhaustion_does_not_raise(self):
        matcher = BoundedSubsetMatcher(max_size=10, max_states=5)
        result = matcher.find(10000, items(*range(1000, 1030)))
        assert isinstance(result, list)

    def test_solution_cap(self):
        matcher = BoundedSubsetMatcher(max_size=2, max_solutions=2)
        solutions = matcher.find(100, items(50, 50, 50, 50))
        assert len(solutions) == 2
