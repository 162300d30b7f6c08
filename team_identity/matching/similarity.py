"""Multi-strategy similarity between normalized team names.

Every strategy is symmetric and the scorer keeps the best one, so
``score(a, b) == score(b, a)`` and ``score(x, x).value == 1.0``.
"""

from functools import lru_cache
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from team_identity.models.enums import ScoreMethod
from team_identity.models.outcome import SimilarityScore
from team_identity.normalization.normalizer import normalize

# Words that say little about which club is meant
TRIVIAL_TOKENS: FrozenSet[str] = frozenset(
    {
        "de", "la", "le", "el", "del", "da", "do", "di", "the", "and", "of",
        "real", "sporting", "athletic", "atletico", "club", "united", "city",
        "town", "county", "rovers", "wanderers", "deportivo", "racing",
    }
)

# Letters a provider may glue onto an acronym ("MUFC", "AFCB")
ACRONYM_AFFIXES: Tuple[str, ...] = ("fc", "afc", "cf", "sc", "ac")

FULL_ACRONYM_SCORE = 0.80
PARTIAL_ACRONYM_SCORE = 0.90
# A name that is a token subset of the other ("tottenham" in "tottenham hotspur")
# scores CONTAINMENT_BASE plus CONTAINMENT_SPAN times the share of weight it covers
CONTAINMENT_BASE = 0.72
CONTAINMENT_SPAN = 0.20
TRIVIAL_TOKEN_WEIGHT = 0.25
MIN_PREFIX_LENGTH = 3

Scorer = Callable[[str, str], SimilarityScore]


def edit_distance_ratio(a: str, b: str) -> float:
    """1 minus the Levenshtein distance over the longer string's length."""
    if not a or not b:
        return 0.0
    return float(Levenshtein.normalized_similarity(a, b))


def _token_weight(token: str) -> float:
    if len(token) < 3 or token in TRIVIAL_TOKENS:
        return TRIVIAL_TOKEN_WEIGHT
    return 1.0


def token_overlap(a: str, b: str) -> float:
    """Weighted Jaccard over token sets; significant tokens dominate."""
    tokens_a, tokens_b = set(a.split()), set(b.split())
    if not tokens_a or not tokens_b:
        return 0.0
    shared = sum(_token_weight(t) for t in tokens_a & tokens_b)
    union = sum(_token_weight(t) for t in tokens_a | tokens_b)
    return shared / union if union else 0.0


def containment_score(a: str, b: str) -> float:
    """Scores a name whose tokens all appear in the other one.

    The shorter side needs a significant token of its own, so "united" never
    contains "leeds united". Names sharing only some tokens score 0.
    """
    tokens_a, tokens_b = set(a.split()), set(b.split())
    if not tokens_a or not tokens_b or tokens_a == tokens_b:
        return 0.0

    short, long = (tokens_a, tokens_b) if len(tokens_a) < len(tokens_b) else (tokens_b, tokens_a)
    if not short < long or all(_token_weight(t) < 1.0 for t in short):
        return 0.0
    covered = sum(_token_weight(t) for t in short) / sum(_token_weight(t) for t in long)
    return CONTAINMENT_BASE + CONTAINMENT_SPAN * covered


def _is_full_acronym(token: str, long_tokens: Sequence[str]) -> bool:
    acronym = "".join(t[0] for t in long_tokens)
    if token == acronym:
        return True
    return any(token in (acronym + affix, affix + acronym) for affix in ACRONYM_AFFIXES)


def _explains(short: Sequence[str], long: Sequence[str]) -> bool:
    """Whether every short token covers, in order, all of the long tokens.

    A short token covers one long token when equal or a prefix of it, or a
    consecutive run of two or more long tokens when it is their initials.
    At least one token must match exactly.
    """

    @lru_cache(maxsize=None)
    def walk(i: int, j: int, anchored: bool) -> bool:
        if i == len(short):
            return j == len(long) and anchored
        if j == len(long):
            return False
        token = short[i]
        if token == long[j] and walk(i + 1, j + 1, True):
            return True
        if (
            len(token) >= MIN_PREFIX_LENGTH
            and token != long[j]
            and long[j].startswith(token)
            and walk(i + 1, j + 1, anchored)
        ):
            return True
        for run in range(2, len(long) - j + 1):
            if token == "".join(t[0] for t in long[j : j + run]) and walk(i + 1, j + run, anchored):
                return True
        return False

    return walk(0, 0, False)


def acronym_score(a: str, b: str) -> float:
    """Scores "manchester united" vs "mufc" or "paris sg" vs "paris saint germain"."""
    tokens_a, tokens_b = a.split(), b.split()
    if not tokens_a or not tokens_b or tokens_a == tokens_b:
        return 0.0

    best = 0.0
    for short, long in ((tokens_a, tokens_b), (tokens_b, tokens_a)):
        if len(long) < 2 or len(short) > len(long):
            continue
        if len(short) == 1 and _is_full_acronym(short[0], long):
            best = max(best, FULL_ACRONYM_SCORE)
        elif _explains(tuple(short), tuple(long)):
            best = max(best, PARTIAL_ACRONYM_SCORE)
    return best


class SimilarityScorer:
    """Returns the best score any strategy gives a pair of names."""

    def __init__(self, strategies: Optional[List[Tuple[ScoreMethod, Callable[[str, str], float]]]] = None):
        # Order matters only for ties: the earlier strategy is reported
        self.strategies = strategies or [
            (ScoreMethod.EDIT_DISTANCE, edit_distance_ratio),
            (ScoreMethod.TOKEN_OVERLAP, token_overlap),
            (ScoreMethod.ACRONYM, acronym_score),
            (ScoreMethod.CONTAINMENT, containment_score),
        ]

    def __call__(self, a: str, b: str) -> SimilarityScore:
        return self.score(a, b)

    def score(self, a: str, b: str) -> SimilarityScore:
        if not a or not b:
            # No signal; never treated as a match
            return SimilarityScore(value=0.0, method=ScoreMethod.NONE)

        best_value, best_method = 0.0, ScoreMethod.NONE
        for method, strategy in self.strategies:
            value = min(1.0, max(0.0, strategy(a, b)))
            if value > best_value:
                best_value, best_method = value, method
        return SimilarityScore(value=best_value, method=best_method)


_default_scorer = SimilarityScorer()


def score(a: str, b: str) -> SimilarityScore:
    """Scores two already normalized names."""
    return _default_scorer.score(a, b)


def similarity(raw_a: str, raw_b: str) -> SimilarityScore:
    """Normalizes two raw names and scores them."""
    return score(normalize(raw_a), normalize(raw_b))
