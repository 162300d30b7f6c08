import re
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from loguru import logger
from unidecode import unidecode

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

# Club-name affixes stripped from either end of a name. Compared after
# punctuation collapse, so "1." is matched as "1".
DEFAULT_AFFIXES: FrozenSet[str] = frozenset(
    {
        "fc", "cf", "ac", "sc", "afc", "club", "cd", "ssc", "sv", "fk", "sk",
        "ca", "cs", "bk", "if", "ud", "sd", "1",
    }
)

# Token-level spellings rewritten to one canonical form. No token of a value
# is a key, which keeps normalization idempotent.
DEFAULT_TOKEN_ALIASES: Dict[str, str] = {
    "utd": "united",
    "munchen": "munich",
    "muenchen": "munich",
    "koln": "cologne",
    "koeln": "cologne",
    "milano": "milan",
    "torino": "turin",
    "napoli": "naples",
    "roma": "rome",
    "lisboa": "lisbon",
    "sevilla": "seville",
    "wien": "vienna",
    "praha": "prague",
    "st": "saint",
    "sankt": "saint",
}


class TeamNameNormalizer:
    """Turns raw provider team names into a canonical comparable string."""

    def __init__(
        self,
        affixes: Optional[Iterable[str]] = None,
        token_aliases: Optional[Dict[str, str]] = None,
    ):
        self.affixes: FrozenSet[str] = frozenset(
            DEFAULT_AFFIXES if affixes is None else (a.lower() for a in affixes)
        )
        self.token_aliases: Dict[str, str] = dict(
            DEFAULT_TOKEN_ALIASES if token_aliases is None else token_aliases
        )
        targets = {token for value in self.token_aliases.values() for token in value.split()}
        looping = set(self.token_aliases) & targets
        if looping:
            raise ValueError(f"Token alias targets must not be aliases themselves: {sorted(looping)}")
        logger.debug(
            f"TeamNameNormalizer initialized with {len(self.affixes)} affixes "
            f"and {len(self.token_aliases)} token aliases."
        )

    def normalize(self, raw_name: Any) -> str:
        """Normalizes a raw team name. Never raises; bad input gives ""."""
        if raw_name is None:
            return ""
        try:
            text = raw_name if isinstance(raw_name, str) else str(raw_name)
        except Exception as e:
            logger.debug(f"Could not stringify team name {type(raw_name)}: {e}")
            return ""

        # unidecode may emit upper case ("Æ" -> "AE"), so lower afterwards
        text = unidecode(text).lower()
        tokens = _NON_ALNUM_RE.sub(" ", text).split()

        expanded: List[str] = []
        for token in tokens:
            expanded.extend(self.token_aliases.get(token, token).split())

        return " ".join(self._strip_affixes(expanded))

    def _strip_affixes(self, tokens: List[str]) -> List[str]:
        # A name made only of affixes keeps its last token ("Club" stays "club")
        start, end = 0, len(tokens)
        while end - start > 1 and tokens[start] in self.affixes:
            start += 1
        while end - start > 1 and tokens[end - 1] in self.affixes:
            end -= 1
        return tokens[start:end]


def initials(normalized_name: str) -> str:
    """First letter of every token of an already normalized name."""
    return "".join(token[0] for token in normalized_name.split())


_default_normalizer = TeamNameNormalizer()


def normalize(raw_name: Any) -> str:
    """Normalizes a raw team name with the default affix and alias tables."""
    return _default_normalizer.normalize(raw_name)
