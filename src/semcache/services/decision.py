"""Hit/miss decision over the index's best match."""

import math
from dataclasses import dataclass

from semcache.domain.exceptions import ValidationError
from semcache.services.vector_index import IndexMatch

SCORE_DISPLAY_DIGITS = 4


@dataclass(frozen=True)
class Decision:
    hit: bool
    threshold: float
    score: float | None = None
    entry_id: str | None = None

    @property
    def display_score(self) -> float | None:
        """Score for the response body. Never used for the comparison itself."""
        if self.score is None:
            return None
        return round(self.score, SCORE_DISPLAY_DIGITS)


class DecisionEngine:
    @staticmethod
    def validate_threshold(threshold: float) -> float:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValidationError("similarity_threshold must be a number")
        if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
            raise ValidationError(
                f"similarity_threshold must be between 0 and 1 inclusive, got {threshold}"
            )
        return float(threshold)

    def decide(self, match: IndexMatch | None, threshold: float) -> Decision:
        """Hit iff the best score reaches the threshold (inclusive)."""
        threshold = self.validate_threshold(threshold)
        if match is None:
            return Decision(hit=False, threshold=threshold)
        if match.score >= threshold:
            return Decision(hit=True, threshold=threshold, score=match.score, entry_id=match.entry_id)
        return Decision(hit=False, threshold=threshold, score=match.score, entry_id=match.entry_id)
