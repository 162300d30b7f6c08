from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .enums import MatchStatus, ScoreMethod, Source
from .team import TeamRecord


class SimilarityScore(BaseModel):
    """Best-of-strategies similarity between two normalized names."""

    model_config = ConfigDict(frozen=True)

    value: float = Field(..., ge=0, le=1)
    method: ScoreMethod


class ScoredCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    record: TeamRecord
    score: SimilarityScore

    @property
    def value(self) -> float:
        return self.score.value


class MatchOutcome(BaseModel):
    """Classification of one team against its candidate pool."""

    model_config = ConfigDict(frozen=True)

    team: TeamRecord
    status: MatchStatus
    best: Optional[ScoredCandidate] = None
    runner_up: Optional[ScoredCandidate] = None
    reason: Optional[str] = None
    # Mapping ids that lose a side when this outcome is applied, and the
    # provider ids to detach from them
    supersedes: Tuple[str, ...] = ()
    releases: Tuple[Tuple[Source, str], ...] = ()
    country_override: bool = False

    @property
    def confidence(self) -> float:
        return self.best.value if self.best else 0.0


class ReviewItem(BaseModel):
    """A pair surfaced for manual resolution instead of being written."""

    status: MatchStatus
    team_id: str
    team_name: str
    candidate_id: Optional[str] = None
    candidate_name: Optional[str] = None
    confidence: float = 0.0
    runner_up_id: Optional[str] = None
    runner_up_confidence: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: MatchOutcome) -> "ReviewItem":
        best, second = outcome.best, outcome.runner_up
        return cls(
            status=outcome.status,
            team_id=outcome.team.source_id,
            team_name=outcome.team.raw_name,
            candidate_id=best.record.source_id if best else None,
            candidate_name=best.record.raw_name if best else None,
            confidence=outcome.confidence,
            runner_up_id=second.record.source_id if second else None,
            runner_up_confidence=second.value if second else None,
            reason=outcome.reason,
        )
