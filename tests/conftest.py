"""
tests/conftest.py

Purpose:
    Shared pytest bootstrap: import path for the repository root and small
    builders for team records used across the test modules.
"""

from __future__ import annotations

import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]

if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

import pytest

from team_identity.config.settings import MatchingConfig
from team_identity.models.enums import Source
from team_identity.models.team import TeamRecord
from team_identity.storage.mapping_store import MappingStore


def team_a(source_id, name, country="England", league=None) -> TeamRecord:
    return TeamRecord(source=Source.A, source_id=source_id, raw_name=name, country=country, league=league)


def team_b(source_id, name, country="England", league=None) -> TeamRecord:
    return TeamRecord(source=Source.B, source_id=source_id, raw_name=name, country=country, league=league)


@pytest.fixture
def store() -> MappingStore:
    return MappingStore(config=MatchingConfig())
