"""
Similarity scoring for candidate pairings.

Score = w_amount * amount_exactness
      + w_date * exp(-alpha * delta_days)
      + w_description * description_similarity
      + w_shape * shape_factor

Grouped shapes carry a lower shape factor than an equally precise
one-to-one pairing.
"""

import math
from datetime import date
from typing import List, Optional, Sequence, Tuple

from ..config import Settings, get_settings
from ..models import MatchFeatures, MatchShape
from ..utils.text_similarity import TextSimilarityEngine


class SimilarityScorer:
    """Pure scoring of amount, date and description features."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        text_engine: Optional[TextSimilarityEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.weights = self.settings.scoring_weights()
        self.alpha = self.settings.temporal_decay_alpha
        self.tolerance_cents = self.settings.amount_tolerance_cents
        self.text_engine = text_engine or TextSimilarityEngine()

    def amount_exactness(self, delta_cents: int) -> float:
        """
        1.0 for an exact amount; decays linearly to 0.5 at the tolerance edge
        and to 0.0 beyond it.
        """
        delta = abs(delta_cents)
        if delta == 0:
            return 1.0
        if self.tolerance_cents <= 0 or delta > self.tolerance_cents:
            return 0.0
        return 1.0 - 0.5 * (delta / self.tolerance_cents)

    def date_proximity(self, delta_days: float) -> float:
        """Exponential decay over the absolute day distance."""
        return math.exp(-self.alpha * abs(delta_days))

    def shape_factor(self, shape: MatchShape) -> float:
        if shape == MatchShape.BATCH:
            return self.settings.batch_shape_factor
        if shape == MatchShape.SPLIT:
            return self.settings.split_shape_factor
        return 1.0

    def description_similarity(self, anchor: str, others: List[str]) -> float:
        return self.text_engine.mean_similarity(anchor, others)

    def score(
        self,
        shape: MatchShape,
        anchor_amount_cents: int,
        anchor_date: date,
        anchor_description: str,
        members: Sequence[Tuple[int, date, str]],
    ) -> Tuple[float, MatchFeatures]:
        """
        Score an anchor row against its matched member rows.

        Args:
            shape: Match shape of the pairing
            anchor_amount_cents: Absolute amount of the anchor row
            anchor_date: Date of the anchor row
            anchor_description: Description of the anchor row
            members: (absolute amount, date, description) of each member row

        Returns:
            (score rounded to 4 places, feature breakdown)
        """
        member_total = sum(amount for amount, _, _ in members)
        amount_delta = abs(anchor_amount_cents) - member_total
        deltas = [abs((member_date - anchor_date).days) for _, member_date, _ in members]
        mean_delta = sum(deltas) / len(deltas)
        all_dates = [anchor_date] + [member_date for _, member_date, _ in members]
        spread = (max(all_dates) - min(all_dates)).days

        amount_score = self.amount_exactness(amount_delta)
        date_score = self.date_proximity(mean_delta)
        text_score = self.description_similarity(
            anchor_description, [description for _, _, description in members]
        )
        shape_score = self.shape_factor(shape)

        total = (
            self.weights["amount"] * amount_score
            + self.weights["date"] * date_score
            + self.weights["description"] * text_score
            + self.weights["shape"] * shape_score
        )
        total = round(min(1.0, max(0.0, total)), 4)

        features = MatchFeatures(
            amount_delta_cents=amount_delta,
            date_delta_days=round(mean_delta, 4),
            description_similarity=round(text_score, 4),
            amount_exactness=round(amount_score, 4),
            date_proximity=round(date_score, 4),
            shape_factor=shape_score,
            group_size=len(members),
            date_spread_days=spread,
        )
        return total, features
