"""Tests for the hit/miss decision."""

import os
import sys
from datetime import UTC, datetime

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.domain.exceptions import ValidationError
from semcache.services.decision import Decision, DecisionEngine
from semcache.services.vector_index import IndexMatch


def match(score: float) -> IndexMatch:
    return IndexMatch(entry_id="e1", score=score, created_at=datetime.now(UTC))


class TestDecisionEngine:
    def test_no_match_is_miss(self):
        decision = DecisionEngine().decide(None, 0.85)
        assert decision.hit is False
        assert decision.score is None
        assert decision.display_score is None

    def test_score_equal_to_threshold_hits(self):
        decision = DecisionEngine().decide(match(1.0), 1.0)
        assert decision.hit is True
        assert decision.entry_id == "e1"

    def test_just_below_threshold_misses(self):
        decision = DecisionEngine().decide(match(0.84999), 0.85)
        assert decision.hit is False
        assert decision.score == 0.84999

    def test_zero_threshold_always_hits(self):
        assert DecisionEngine().decide(match(0.0), 0.0).hit is True

    @pytest.mark.parametrize("threshold", [1.5, -0.1, float("nan"), "0.9", True, None])
    def test_invalid_threshold(self, threshold):
        with pytest.raises(ValidationError):
            DecisionEngine().decide(match(0.9), threshold)

    def test_display_score_is_rounded_but_comparison_is_not(self):
        # 0.84996 displays as 0.85 yet stays below a 0.85 threshold
        decision = DecisionEngine().decide(match(0.84996), 0.85)
        assert decision.hit is False
        assert decision.display_score == 0.85

    def test_decision_display_score(self):
        assert Decision(hit=True, threshold=0.5, score=0.123456).display_score == 0.1235


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
