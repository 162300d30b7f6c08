from typing import Any, Callable, List, Optional, Sequence

from loguru import logger

from team_identity.config.settings import MatchingConfig
from team_identity.matching.similarity import score as default_score
from team_identity.models.enums import MappingStatus, MatchStatus, Source
from team_identity.models.mapping import CanonicalMapping, primary_name_for
from team_identity.models.outcome import MatchOutcome, ScoredCandidate, SimilarityScore
from team_identity.models.team import SourceRef, TeamRecord
from team_identity.normalization.normalizer import normalize as default_normalize
from team_identity.storage.mapping_store import MappingView
from team_identity.utils.misc_utils import countries_conflict, generate_canonical_id


class TeamResolver:
    """Classifies one team against a candidate pool from the other source.

    The resolver never writes. It consults the store only to enforce the
    one-to-one constraint and returns an outcome for the caller to apply.
    """

    def __init__(
        self,
        store: MappingView,
        config: Optional[MatchingConfig] = None,
        scorer: Callable[[str, str], SimilarityScore] = default_score,
        normalizer: Callable[[Any], str] = default_normalize,
    ):
        self.store = store
        self.config = config or store.config
        self.scorer = scorer
        self.normalizer = normalizer

    def score_candidates(
        self, team: TeamRecord, candidates: Sequence[TeamRecord]
    ) -> List[ScoredCandidate]:
        """Scores every candidate from the other source, best first."""
        query = self.normalizer(team.raw_name)
        scored = [
            ScoredCandidate(record=c, score=self.scorer(query, self.normalizer(c.raw_name)))
            for c in candidates
            if c.source != team.source
        ]
        # Ties broken by id so the outcome does not depend on input order
        scored.sort(key=lambda sc: (-sc.value, sc.record.source_id))
        return scored

    def resolve(
        self,
        team: TeamRecord,
        candidates: Sequence[TeamRecord],
        allow_cross_country: Optional[bool] = None,
    ) -> MatchOutcome:
        """Resolves ``team`` against ``candidates``.

        Args:
            team: The record being matched.
            candidates: Records from the other source, normally pre-filtered
                to the same country by the caller.
            allow_cross_country: Accept a best match from another country.
                Defaults to the configured opt-in.

        Returns:
            A MatchOutcome; accepted outcomes may name mappings to supersede.
        """
        cfg = self.config
        override = cfg.allow_cross_country if allow_cross_country is None else allow_cross_country

        scored = self.score_candidates(team, candidates)
        best = scored[0] if scored else None
        runner_up = scored[1] if len(scored) > 1 else None

        if best is None:
            return MatchOutcome(team=team, status=MatchStatus.REJECTED, reason="no_candidates")
        if best.value < cfg.review_threshold:
            return MatchOutcome(
                team=team,
                status=MatchStatus.REJECTED,
                best=best,
                runner_up=runner_up,
                reason="below_threshold",
            )

        cross_country = countries_conflict(team.country, best.record.country)
        if cross_country and not override:
            return MatchOutcome(
                team=team,
                status=MatchStatus.REJECTED,
                best=best,
                runner_up=runner_up,
                reason="country_mismatch",
            )

        if (
            best.value >= cfg.accept_threshold
            and runner_up is not None
            and runner_up.value >= cfg.effective_ambiguity_floor
            and round(best.value - runner_up.value, 9) < cfg.ambiguity_margin
        ):
            logger.debug(
                f"Ambiguous match for {team.source.value}:{team.source_id} '{team.raw_name}': "
                f"'{best.record.raw_name}' {best.value:.3f} vs '{runner_up.record.raw_name}' {runner_up.value:.3f}"
            )
            return MatchOutcome(
                team=team,
                status=MatchStatus.AMBIGUOUS,
                best=best,
                runner_up=runner_up,
                reason="within_margin",
            )

        if best.value >= cfg.auto_verify_threshold:
            status = MatchStatus.AUTO_VERIFIED
        elif best.value >= cfg.accept_threshold:
            status = MatchStatus.ACCEPTED
        else:
            return MatchOutcome(
                team=team,
                status=MatchStatus.MANUAL_REVIEW,
                best=best,
                runner_up=runner_up,
                reason="review_band",
            )

        return self._enforce_one_to_one(
            MatchOutcome(
                team=team,
                status=status,
                best=best,
                runner_up=runner_up,
                country_override=cross_country,
            )
        )

    def _enforce_one_to_one(self, outcome: MatchOutcome) -> MatchOutcome:
        team, best = outcome.team, outcome.best
        candidate = best.record
        supersedes: List[str] = []
        releases = []

        holder = self.store.owner_of(candidate.source, candidate.source_id)
        held_for = holder.ref(team.source) if holder is not None else None
        if held_for is not None and held_for.id != team.source_id:
            if self._holds(holder, best.value):
                return self._alternate(
                    outcome,
                    f"candidate already mapped by {holder.mapping_id} at {holder.confidence:.3f}",
                )
            supersedes.append(holder.mapping_id)
            releases.append(candidate.key)

        current = self.store.owner_of(team.source, team.source_id)
        current_other = current.ref(candidate.source) if current is not None else None
        if current_other is not None and current_other.id != candidate.source_id:
            if self._holds(current, best.value):
                return self._alternate(
                    outcome,
                    f"team already mapped to {candidate.source.value}:{current_other.id} "
                    f"at {current.confidence:.3f}",
                )
            supersedes.append(current.mapping_id)
            releases.append((candidate.source, current_other.id))

        if supersedes:
            logger.info(
                f"{team.source.value}:{team.source_id} '{team.raw_name}' at {best.value:.3f} "
                f"supersedes {', '.join(supersedes)}"
            )
            return outcome.model_copy(
                update={"supersedes": tuple(supersedes), "releases": tuple(releases)}
            )
        return outcome

    @staticmethod
    def _holds(existing: CanonicalMapping, challenger: float) -> bool:
        # Verified mappings only yield to manual action, even while retired
        if existing.verified:
            return True
        if existing.retired:
            return False
        return existing.confidence >= challenger

    @staticmethod
    def _alternate(outcome: MatchOutcome, reason: str) -> MatchOutcome:
        return outcome.model_copy(update={"status": MatchStatus.ALTERNATE, "reason": reason})

    def build_mapping(self, outcome: MatchOutcome, cycle_id: Optional[str] = None) -> CanonicalMapping:
        """Turns an accepted outcome into a mapping ready for ``upsert``."""
        if not outcome.status.is_accepted or outcome.best is None:
            raise ValueError(f"Cannot build a mapping from a {outcome.status.value} outcome")

        team, candidate = outcome.team, outcome.best.record
        record_a, record_b = (team, candidate) if team.source is Source.A else (candidate, team)
        source_a, source_b = SourceRef.from_record(record_a), SourceRef.from_record(record_b)
        auto = outcome.status is MatchStatus.AUTO_VERIFIED

        return CanonicalMapping(
            mapping_id=generate_canonical_id(team.source.value, team.source_id),
            primary_name=primary_name_for(source_a, source_b),
            source_a=source_a,
            source_b=source_b,
            country=record_a.country or record_b.country,
            league=record_a.league or record_b.league,
            variations=[record_a.raw_name, record_b.raw_name],
            confidence=outcome.confidence,
            status=MappingStatus.AUTO_VERIFIED if auto else MappingStatus.ACCEPTED,
            verified=auto,
            auto_discovered=True,
            country_override=outcome.country_override,
            # The creating cycle counts as the first confirmation
            confirmations=1 if cycle_id else 0,
            last_confirmed_cycle=cycle_id,
        )


def build_stub(record: TeamRecord) -> CanonicalMapping:
    """A single-source mapping for a team with no counterpart yet."""
    ref = SourceRef.from_record(record)
    return CanonicalMapping(
        mapping_id=generate_canonical_id(record.source.value, record.source_id),
        primary_name=record.raw_name,
        source_a=ref if record.source is Source.A else None,
        source_b=ref if record.source is Source.B else None,
        country=record.country,
        league=record.league,
        variations=[record.raw_name],
        confidence=1.0,
        status=MappingStatus.STUB,
    )
