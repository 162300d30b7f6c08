from __future__ import annotations

import pytest

from team_identity.normalization.normalizer import TeamNameNormalizer, initials, normalize


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("FC Barcelona", "barcelona"),
        ("Barcelona", "barcelona"),
        ("Bayern München", "bayern munich"),
        ("Bayern Munich", "bayern munich"),
        ("Manchester Utd", "manchester united"),
        ("1. FC Köln", "cologne"),
        ("FC St. Pauli", "saint pauli"),
        ("Atlético Madrid", "atletico madrid"),
        ("  Paris   Saint-Germain ", "paris saint germain"),
        ("AFC Bournemouth", "bournemouth"),
        ("Club", "club"),
    ],
)
def test_normalize_known_names(raw, expected):
    assert normalize(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "!!!", "---"])
def test_normalize_empty_inputs_give_empty_string(raw):
    assert normalize(raw) == ""


def test_normalize_is_total_for_odd_inputs():
    class _Unprintable:
        def __str__(self):
            raise RuntimeError("no name")

    assert normalize(12345) == "12345"
    assert normalize(_Unprintable()) == ""
    assert normalize(b"bytes") != ""


@pytest.mark.parametrize(
    "raw",
    [
        "FC Barcelona",
        "1. FC Köln",
        "Borussia Mönchengladbach",
        "Sporting CP",
        "AC Milan",
        "St. Etienne",
        "Æ Club FC",
        "SC",
    ],
)
def test_normalize_is_idempotent(raw):
    once = normalize(raw)
    assert normalize(once) == once


def test_custom_tables():
    normalizer = TeamNameNormalizer(affixes=["real"], token_aliases={"spurs": "tottenham"})
    assert normalizer.normalize("Real Madrid") == "madrid"
    assert normalizer.normalize("Spurs") == "tottenham"
    # Default affixes are not used once a custom list is given
    assert normalizer.normalize("FC Porto") == "fc porto"


def test_alias_targets_must_not_be_aliases():
    with pytest.raises(ValueError):
        TeamNameNormalizer(token_aliases={"utd": "united", "united": "utd"})


def test_multi_word_alias_tokens_must_not_be_aliases():
    with pytest.raises(ValueError):
        TeamNameNormalizer(token_aliases={"psg": "paris st germain", "st": "saint"})

    normalizer = TeamNameNormalizer(token_aliases={"psg": "paris saint germain", "st": "saint"})
    once = normalizer.normalize("PSG")
    assert once == "paris saint germain"
    assert normalizer.normalize(once) == once


def test_initials():
    assert initials("manchester united") == "mu"
    assert initials("") == ""
