from __future__ import annotations

import pytest
import pytest_asyncio

from conftest import team_a, team_b
from team_identity.lookup.service import LookupService, SourceMatch
from team_identity.models.enums import Source
from team_identity.sources.static_source import StaticTeamSource
from team_identity.storage.mapping_store import MappingStore
from team_identity.sync.orchestrator import SyncOrchestrator


@pytest_asyncio.fixture
async def synced_store():
    store = MappingStore()
    orchestrator = SyncOrchestrator(
        store,
        StaticTeamSource(
            Source.A,
            [
                team_a("1", "Manchester United"),
                team_a("2", "Arsenal FC"),
                team_a("100", "Bayern München", country="Germany"),
            ],
        ),
        StaticTeamSource(
            Source.B,
            [
                team_b("10", "Manchester Utd"),
                team_b("20", "Arsenal"),
                team_b("1000", "Bayern Munich", country="Germany"),
            ],
        ),
    )
    await orchestrator.sync_all(["England", "Germany"], cycle_id="c1")
    return store


@pytest.mark.asyncio
async def test_resolve_by_any_spelling(synced_store):
    lookup = LookupService(synced_store)
    assert lookup.resolve("Manchester United").mapping_id == "a_1"
    assert lookup.resolve("Man United").mapping_id == "a_1"
    assert lookup.resolve("FC Bayern Muenchen").mapping_id == "a_100"


@pytest.mark.asyncio
async def test_resolve_not_found_is_none(synced_store):
    lookup = LookupService(synced_store)
    assert lookup.resolve("Real Madrid") is None
    assert lookup.resolve("") is None
    assert lookup.resolve("   ") is None
    assert lookup.resolve("Arsenal", country_hint="Germany") is None


@pytest.mark.asyncio
async def test_find_team_returns_requested_side(synced_store):
    lookup = LookupService(synced_store)
    match = lookup.find_team("Manchester United", Source.B)
    assert match == SourceMatch(id="10", name="Manchester Utd", confidence=1.0, mapping_id="a_1")

    match = lookup.find_team("Arsenal", Source.A, country_hint="England")
    assert match.id == "2"
    assert match.name == "Arsenal FC"

    assert lookup.find_team("Liverpool", Source.B) is None


@pytest.mark.asyncio
async def test_point_lookups(synced_store):
    lookup = LookupService(synced_store)
    assert lookup.get_by_source_id(Source.B, "1000").mapping_id == "a_100"
    assert lookup.get_by_source_id(Source.B, 1000).mapping_id == "a_100"
    assert lookup.get_by_source_id(Source.A, "999") is None

    assert lookup.counterpart(Source.A, "1").id == "10"
    assert lookup.counterpart(Source.B, "20").name == "Arsenal FC"
    assert lookup.counterpart(Source.A, "999") is None


@pytest.mark.asyncio
async def test_stats(synced_store):
    stats = LookupService(synced_store).stats()
    assert stats.total == 3
    assert stats.both_sources == 3
    assert stats.verified_count == 3
    assert stats.by_country == {"England": 2, "Germany": 1}


@pytest.mark.asyncio
async def test_reads_only_see_committed_state(synced_store):
    lookup = LookupService(synced_store)
    synced_store.retire("a_2")
    # Not committed yet
    assert lookup.get_by_source_id(Source.A, "2") is not None

    await synced_store.commit()
    assert lookup.get_by_source_id(Source.A, "2") is None
    assert lookup.resolve("Arsenal") is None


@pytest.mark.asyncio
async def test_lookup_never_mutates(synced_store):
    before = synced_store.to_document()
    lookup = LookupService(synced_store)
    lookup.resolve("Chelsea")
    lookup.find_team("Manchester Utd", Source.A)
    lookup.stats()
    assert synced_store.to_document() == before
