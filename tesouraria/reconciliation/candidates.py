"""
Candidate generation for bank reconciliation.

Scans unmatched statement lines and unreconciled transactions in a scope and
proposes scored suggestions over three shapes:

- ONE_TO_ONE: one line, one transaction
- BATCH: k lines summing to one transaction (lote)
- SPLIT: one line equal to the sum of m transactions (divisao)

One-to-one pairings are peeled first; groups are searched only over the
rows left unpaired. The generator is read-only. Overlapping candidates are
resolved greedily by score, so the returned suggestions never share a
ledger row.
"""

from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog

from ..config import Settings, get_settings
from ..exceptions import ValidationError
from ..models import (
    LedgerTransaction,
    MatchShape,
    Scope,
    StatementLine,
    StatementStatus,
    Suggestion,
    SuggestionOrigin,
)
from ..utils.text_similarity import TextSimilarityEngine
from .matcher import BoundedSubsetMatcher, GroupItem
from .scoring import SimilarityScorer

logger = structlog.get_logger()

BucketKey = Tuple[Optional[str], int]

_SHAPE_ORDER = {
    MatchShape.ONE_TO_ONE: 0,
    MatchShape.BATCH: 1,
    MatchShape.SPLIT: 2,
}


def _sign(amount_cents: int) -> int:
    return 1 if amount_cents > 0 else -1


def _days_between(a: date, b: date) -> int:
    return abs((a - b).days)


class CandidateGenerator:
    """
    Bounded candidate search over one scope.

    ``generate`` reads from the stores; ``match`` is the pure core and can be
    fed rows directly.
    """

    def __init__(
        self,
        ledger=None,
        suggestions=None,
        settings: Optional[Settings] = None,
        scorer: Optional[SimilarityScorer] = None,
    ):
        self.ledger = ledger
        self.suggestions = suggestions
        self.settings = settings or get_settings()
        self.scorer = scorer or SimilarityScorer(self.settings)
        self.text_engine = TextSimilarityEngine()
        self.window_days = self.settings.date_window_days
        self.tolerance = self.settings.amount_tolerance_cents
        self.batch_matcher = self._build_matcher(self.settings.max_batch_size)
        self.split_matcher = self._build_matcher(self.settings.max_split_size)

    def _build_matcher(self, max_size: int) -> BoundedSubsetMatcher:
        return BoundedSubsetMatcher(
            max_size=max_size,
            tolerance_cents=self.tolerance,
            max_candidates=self.settings.max_group_candidates,
            max_solutions=self.settings.max_subset_solutions,
            max_states=self.settings.max_search_states,
        )

    def generate(self, scope: Scope, score_min: Optional[float] = None) -> List[Suggestion]:
        """
        Produce scored suggestions for every unmatched row in ``scope``.

        Args:
            scope: Explicit org/account/period scope
            score_min: Discard candidates scoring below this (default from settings)

        Returns:
            Disjoint list of pending suggestions, best score first
        """
        scope.validate()
        lines = self.ledger.list_unmatched_lines(scope)
        transactions = self.ledger.list_unreconciled_transactions(
            scope, margin_days=self.window_days
        )
        linked_lines, linked_transactions = self.suggestions.accepted_row_ids(scope.org_id)
        excluded: Set[tuple] = set()
        if self.settings.suppress_rejected_pairings:
            excluded = self.suggestions.rejected_signatures(scope.org_id)

        return self.match(
            scope,
            lines,
            transactions,
            score_min=score_min,
            linked_statement_ids=linked_lines,
            linked_transaction_ids=linked_transactions,
            excluded_pairings=excluded,
        )

    def match(
        self,
        scope: Scope,
        lines: Iterable[StatementLine],
        transactions: Iterable[LedgerTransaction],
        score_min: Optional[float] = None,
        linked_statement_ids: Iterable[str] = (),
        linked_transaction_ids: Iterable[str] = (),
        excluded_pairings: Iterable[tuple] = (),
    ) -> List[Suggestion]:
        """Pure candidate search over the given rows."""
        scope.validate()
        threshold = self.settings.score_min if score_min is None else score_min
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("score_min must be within [0, 1]", field="score_min", value=threshold)

        linked_lines = set(linked_statement_ids)
        linked_txns = set(linked_transaction_ids)
        excluded = set(excluded_pairings)

        eligible_lines = [
            line for line in lines
            if self._line_is_eligible(line, scope, linked_lines)
        ]
        eligible_txns = [
            txn for txn in transactions
            if self._transaction_is_eligible(txn, scope, linked_txns)
        ]

        logger.info(
            "Starting candidate generation",
            org_id=scope.org_id,
            account_id=scope.account_id,
            lines=len(eligible_lines),
            transactions=len(eligible_txns),
            score_min=threshold,
        )

        lines_by_bucket: Dict[BucketKey, List[StatementLine]] = defaultdict(list)
        txns_by_bucket: Dict[BucketKey, List[LedgerTransaction]] = defaultdict(list)
        for line in eligible_lines:
            lines_by_bucket[(line.account_id, _sign(line.amount_cents))].append(line)
        for txn in eligible_txns:
            txns_by_bucket[(txn.account_id, _sign(txn.amount_cents))].append(txn)

        def keep(candidate: Suggestion) -> bool:
            return candidate.score >= threshold and candidate.signature not in excluded

        # Phase 1: peel one-to-one pairings
        pairs: List[Suggestion] = []
        for key, bucket_lines in lines_by_bucket.items():
            pairs.extend(
                c for c in self._one_to_one(scope, bucket_lines, txns_by_bucket.get(key, []))
                if keep(c)
            )
        peeled = self._select_disjoint(pairs)
        used_lines = {i for s in peeled for i in s.statement_ids}
        used_txns = {i for s in peeled for i in s.transaction_ids}

        # Phase 2: group search over the rows left unpaired
        groups: List[Suggestion] = []
        for key, bucket_lines in lines_by_bucket.items():
            remaining_lines = [line for line in bucket_lines if line.id not in used_lines]
            remaining_txns = [
                txn for txn in txns_by_bucket.get(key, []) if txn.id not in used_txns
            ]
            if not remaining_lines or not remaining_txns:
                continue
            groups.extend(self._batches(scope, remaining_lines, remaining_txns, keep))
            groups.extend(self._splits(scope, remaining_lines, remaining_txns, keep))

        selected = sorted(
            peeled + self._select_disjoint(groups),
            key=lambda s: (-s.score, s.signature),
        )

        logger.info(
            "Candidate generation complete",
            org_id=scope.org_id,
            candidates=len(pairs) + len(groups),
            suggestions=len(selected),
            one_to_one=sum(1 for s in selected if s.shape == MatchShape.ONE_TO_ONE),
            batches=sum(1 for s in selected if s.shape == MatchShape.BATCH),
            splits=sum(1 for s in selected if s.shape == MatchShape.SPLIT),
        )
        return selected

    def _line_is_eligible(self, line: StatementLine, scope: Scope, linked: Set[str]) -> bool:
        if line.org_id != scope.org_id or line.id in linked:
            return False
        if line.status != StatementStatus.UNMATCHED or line.amount_cents == 0:
            return False
        if line.transaction_date is None:
            return False
        if not scope.period_start <= line.transaction_date <= scope.period_end:
            return False
        if scope.account_id and line.account_id != scope.account_id:
            return False
        return not self.text_engine.matches_any(
            line.description, self.settings.excluded_description_patterns
        )

    def _transaction_is_eligible(
        self,
        txn: LedgerTransaction,
        scope: Scope,
        linked: Set[str],
    ) -> bool:
        if txn.org_id != scope.org_id or txn.id in linked:
            return False
        if txn.is_reconciled or txn.amount_cents == 0 or txn.transaction_date is None:
            return False
        return not (scope.account_id and txn.account_id != scope.account_id)

    def _one_to_one(
        self,
        scope: Scope,
        lines: List[StatementLine],
        transactions: List[LedgerTransaction],
    ) -> List[Suggestion]:
        candidates = []
        for line in lines:
            for txn in transactions:
                if abs(abs(line.amount_cents) - abs(txn.amount_cents)) > self.tolerance:
                    continue
                if _days_between(line.transaction_date, txn.transaction_date) > self.window_days:
                    continue
                score, features = self.scorer.score(
                    MatchShape.ONE_TO_ONE,
                    abs(line.amount_cents),
                    line.transaction_date,
                    line.description,
                    [(abs(txn.amount_cents), txn.transaction_date, txn.description)],
                )
                candidates.append(self._suggestion(
                    scope, MatchShape.ONE_TO_ONE, [line.id], [txn.id], score, features
                ))
        return candidates

    def _batches(self, scope, lines, transactions, keep) -> List[Suggestion]:
        """Several statement lines against one transaction."""
        by_id = {line.id: line for line in lines}
        results = []
        for txn in transactions:
            pool = self._pool(txn.transaction_date, lines)
            best = None
            for subset in self.batch_matcher.find(abs(txn.amount_cents), pool):
                members = [by_id[item.id] for item in subset]
                score, features = self.scorer.score(
                    MatchShape.BATCH,
                    abs(txn.amount_cents),
                    txn.transaction_date,
                    txn.description,
                    [(abs(m.amount_cents), m.transaction_date, m.description) for m in members],
                )
                candidate = self._suggestion(
                    scope,
                    MatchShape.BATCH,
                    [m.id for m in sorted(members, key=lambda m: (m.transaction_date, m.id))],
                    [txn.id],
                    score,
                    features,
                )
                if keep(candidate) and self._better(candidate, best):
                    best = candidate
            if best is not None:
                results.append(best)
        return results

    def _splits(self, scope, lines, transactions, keep) -> List[Suggestion]:
        """One statement line against several transactions."""
        by_id = {txn.id: txn for txn in transactions}
        results = []
        for line in lines:
            pool = self._pool(line.transaction_date, transactions)
            best = None
            for subset in self.split_matcher.find(abs(line.amount_cents), pool):
                members = [by_id[item.id] for item in subset]
                score, features = self.scorer.score(
                    MatchShape.SPLIT,
                    abs(line.amount_cents),
                    line.transaction_date,
                    line.description,
                    [(abs(m.amount_cents), m.transaction_date, m.description) for m in members],
                )
                candidate = self._suggestion(
                    scope,
                    MatchShape.SPLIT,
                    [line.id],
                    [m.id for m in sorted(members, key=lambda m: (m.transaction_date, m.id))],
                    score,
                    features,
                )
                if keep(candidate) and self._better(candidate, best):
                    best = candidate
            if best is not None:
                results.append(best)
        return results

    def _pool(self, anchor_date: date, rows) -> List[GroupItem]:
        """Rows inside the date window of the anchor, nearest first."""
        nearby = [
            row for row in rows
            if _days_between(row.transaction_date, anchor_date) <= self.window_days
        ]
        nearby.sort(key=lambda row: (_days_between(row.transaction_date, anchor_date), row.id))
        return [
            GroupItem(id=row.id, amount_cents=abs(row.amount_cents), day=row.transaction_date)
            for row in nearby
        ]

    @staticmethod
    def _better(candidate: Suggestion, current: Optional[Suggestion]) -> bool:
        """Tie-break: smaller group, then smaller date spread, then higher score."""
        if current is None:
            return True
        a, b = candidate.features, current.features
        return (a.group_size, a.date_spread_days, -candidate.score) < (
            b.group_size, b.date_spread_days, -current.score
        )

    def _select_disjoint(self, candidates: List[Suggestion]) -> List[Suggestion]:
        ordered = sorted(
            candidates,
            key=lambda s: (
                -s.score,
                s.features.group_size,
                s.features.date_spread_days,
                _SHAPE_ORDER[s.shape],
                s.signature,
            ),
        )
        used_lines: Set[str] = set()
        used_txns: Set[str] = set()
        selected = []
        for candidate in ordered:
            if used_lines.intersection(candidate.statement_ids):
                continue
            if used_txns.intersection(candidate.transaction_ids):
                continue
            used_lines.update(candidate.statement_ids)
            used_txns.update(candidate.transaction_ids)
            selected.append(candidate)
        return selected

    def _suggestion(self, scope, shape, statement_ids, transaction_ids, score, features) -> Suggestion:
        return Suggestion(
            org_id=scope.org_id,
            account_id=scope.account_id,
            period_start=scope.period_start,
            period_end=scope.period_end,
            shape=shape,
            statement_ids=list(statement_ids),
            transaction_ids=list(transaction_ids),
            score=score,
            features=features,
            origin=SuggestionOrigin.RULE,
            model_version=self.settings.model_version,
        )
