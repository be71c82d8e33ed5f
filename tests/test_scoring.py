"""
Tests for the similarity scorer and text normalisation.
"""

import math
from datetime import date, timedelta

import pytest

from tesouraria.config import Settings
from tesouraria.models import MatchShape
from tesouraria.reconciliation.scoring import SimilarityScorer
from tesouraria.utils.text_similarity import TextSimilarityEngine, normalize_text


@pytest.fixture
def scorer(settings):
    return SimilarityScorer(settings)


class TestTextSimilarity:
    """Accent- and case-insensitive description comparison."""

    def test_normalize_strips_accents_and_punctuation(self):
        assert normalize_text("Dízimo  João-Silva") == "dizimo joao silva"

    def test_identical_after_normalisation(self):
        engine = TextSimilarityEngine()
        assert engine.similarity("DÍZIMO JOÃO", "dizimo joao") == 1.0

    def test_empty_text_scores_zero(self):
        engine = TextSimilarityEngine()
        assert engine.similarity("", "PIX JOAO") == 0.0

    def test_matches_any_pattern(self):
        engine = TextSimilarityEngine()
        assert engine.matches_any("TARIFA contamax mensal", ["CONTAMAX"])
        assert not engine.matches_any("PIX JOAO", ["CONTAMAX"])


class TestSimilarityScorer:
    """Test suite for score components."""

    def test_exact_amount_is_full_exactness(self, scorer):
        assert scorer.amount_exactness(0) == 1.0

    def test_amount_outside_tolerance_is_zero(self, scorer):
        # Default tolerance is zero cents
        assert scorer.amount_exactness(1) == 0.0

    def test_amount_exactness_decays_inside_tolerance(self):
        scorer = SimilarityScorer(Settings(_env_file=None, amount_tolerance_cents=100))
        assert scorer.amount_exactness(50) == pytest.approx(0.75)
        assert scorer.amount_exactness(100) == pytest.approx(0.5)
        assert scorer.amount_exactness(101) == 0.0

    def test_date_proximity_decays_exponentially(self, scorer):
        assert scorer.date_proximity(0) == 1.0
        assert scorer.date_proximity(-3) == pytest.approx(math.exp(-0.3))

    def test_grouped_shapes_score_below_one_to_one(self, scorer):
        day = date(2024, 3, 10)
        single, _ = scorer.score(
            MatchShape.ONE_TO_ONE, 10000, day, "oferta", [(10000, day, "oferta")]
        )
        batch, features = scorer.score(
            MatchShape.BATCH, 10000, day, "oferta",
            [(5000, day, "oferta"), (5000, day, "oferta")],
        )
        assert batch < single
        assert features.group_size == 2

    def test_features_capture_spread_and_delta(self, scorer):
        day = date(2024, 3, 10)
        _, features = scorer.score(
            MatchShape.SPLIT,
            10000,
            day,
            "",
            [(4000, day - timedelta(days=2), ""), (6000, day + timedelta(days=1), "")],
        )
        assert features.amount_delta_cents == 0
        assert features.date_delta_days == pytest.approx(1.5)
        assert features.date_spread_days == 3

    def test_score_is_bounded(self, scorer):
        day = date(2024, 3, 10)
        score, _ = scorer.score(
            MatchShape.ONE_TO_ONE, 10000, day, "x", [(10000, day, "x")]
        )
        assert 0.0 <= score <= 1.0

    def test_weights_are_normalised(self):
        weights = Settings(
            _env_file=None,
            weight_amount=2, weight_date=1, weight_description=1, weight_shape=0,
        ).scoring_weights()
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["amount"] == pytest.approx(0.5)
