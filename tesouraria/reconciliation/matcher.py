"""
Bounded combinatorial matcher for batch and split pairings.

Finds subsets of 2..max_size items whose amounts sum to a target within a
tolerance. Feasibility of each (position, remaining, slots) state is
memoized, so enumeration only descends into branches that can still reach
the target. The search is additionally capped by a state budget.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Sequence, Tuple

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class GroupItem:
    """A row offered to the matcher: id, absolute amount in cents, date."""
    id: str
    amount_cents: int
    day: date


class SearchBudgetExceeded(Exception):
    """Raised internally when the state budget runs out."""


class BoundedSubsetMatcher:
    """
    Subset-sum search bounded by group size, candidate pool size and
    explored states.
    """

    def __init__(
        self,
        max_size: int,
        tolerance_cents: int = 0,
        max_candidates: int = 30,
        max_solutions: int = 64,
        max_states: int = 200_000,
    ):
        self.max_size = max_size
        self.tolerance = tolerance_cents
        self.max_candidates = max_candidates
        self.max_solutions = max_solutions
        self.max_states = max_states

    def find(self, target_cents: int, items: Sequence[GroupItem]) -> List[Tuple[GroupItem, ...]]:
        """
        Return every subset of the smallest feasible size (at least 2).

        ``items`` should already be ordered by preference; only the first
        ``max_candidates`` usable items are searched.

        Args:
            target_cents: Absolute amount to reach
            items: Candidate rows

        Returns:
            Subsets of identical size, or an empty list when none exists
        """
        target = abs(target_cents)
        usable = [
            item for item in items
            if 0 < item.amount_cents <= target + self.tolerance
        ][: self.max_candidates]
        if len(usable) < 2:
            return []

        # Larger amounts first prunes overshooting branches early
        pool = sorted(usable, key=lambda item: (-item.amount_cents, item.id))
        amounts = [item.amount_cents for item in pool]
        suffix = [0] * (len(amounts) + 1)
        for i in range(len(amounts) - 1, -1, -1):
            suffix[i] = suffix[i + 1] + amounts[i]

        memo: Dict[Tuple[int, int, int], bool] = {}
        n = len(amounts)
        tol = self.tolerance

        def feasible(i: int, remaining: int, slots: int) -> bool:
            if slots == 0:
                return abs(remaining) <= tol
            if n - i < slots or remaining < -tol or suffix[i] < remaining - tol:
                return False
            key = (i, remaining, slots)
            cached = memo.get(key)
            if cached is not None:
                return cached
            if len(memo) >= self.max_states:
                raise SearchBudgetExceeded()
            result = (
                feasible(i + 1, remaining - amounts[i], slots - 1)
                or feasible(i + 1, remaining, slots)
            )
            memo[key] = result
            return result

        solutions: List[Tuple[GroupItem, ...]] = []

        def collect(i: int, remaining: int, slots: int, chosen: List[GroupItem]) -> None:
            if len(solutions) >= self.max_solutions:
                return
            if slots == 0:
                solutions.append(tuple(chosen))
                return
            if feasible(i + 1, remaining - amounts[i], slots - 1):
                chosen.append(pool[i])
                collect(i + 1, remaining - amounts[i], slots - 1, chosen)
                chosen.pop()
            if feasible(i + 1, remaining, slots):
                collect(i + 1, remaining, slots, chosen)

        try:
            for size in range(2, min(self.max_size, n) + 1):
                if feasible(0, target, size):
                    collect(0, target, size, [])
                    return solutions
        except SearchBudgetExceeded:
            logger.warning(
                "Subset search budget exhausted",
                target_cents=target,
                candidates=n,
                states=len(memo),
            )
            return solutions
        return []
