"""Reconciliation engine components."""

from .scoring import SimilarityScorer
from .matcher import BoundedSubsetMatcher, GroupItem
from .candidates import CandidateGenerator
from .committer import ReconciliationCommitter
from .orchestrator import ReconciliationOrchestrator

__all__ = [
    "SimilarityScorer",
    "BoundedSubsetMatcher",
    "GroupItem",
    "CandidateGenerator",
    "ReconciliationCommitter",
    "ReconciliationOrchestrator",
]
