"""Utility modules."""

from .text_similarity import TextSimilarityEngine, normalize_text
from .audit_logger import AuditLogger

__all__ = ["TextSimilarityEngine", "normalize_text", "AuditLogger"]
