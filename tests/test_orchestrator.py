from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import team_a, team_b
from team_identity.config.settings import AppSettings, SyncConfig
from team_identity.models.enums import MappingStatus, PartitionStatus, Source
from team_identity.sources.static_source import StaticTeamSource
from team_identity.storage.backends import MemoryBackend
from team_identity.storage.checkpoint import SyncCheckpoint
from team_identity.storage.mapping_store import MappingStore
from team_identity.sync.orchestrator import SyncOrchestrator, default_cycle_id
from team_identity.utils.misc_utils import utcnow

ENGLAND_A = [
    team_a("1", "Manchester United"),
    team_a("2", "Arsenal FC"),
    team_a("3", "Chelsea"),
    team_a("4", "Sheffield Wednesday"),
    team_a("5", "Leeds United"),
]
ENGLAND_B = [
    team_b("10", "Manchester Utd"),
    team_b("20", "Arsenal"),
    team_b("30", "Chelsea FC"),
    team_b("40", "Sheffield Wed"),
]
GERMANY_A = [team_a("100", "Bayern München", country="Germany")]
GERMANY_B = [team_b("1000", "Bayern Munich", country="Germany")]
SPAIN_A = [team_a("200", "Real Madrid", country="Spain")]
SPAIN_B = [team_b("2000", "Real Madrid CF", country="Spain")]


class _ExplodingSource(StaticTeamSource):
    """Raises an unexpected error for one country."""

    def __init__(self, *args, explode_for="Spain", **kwargs):
        super().__init__(*args, **kwargs)
        self.explode_for = explode_for

    async def fetch_teams(self, country):
        if country == self.explode_for:
            raise RuntimeError("boom")
        return await super().fetch_teams(country)


class _HookedSource(StaticTeamSource):
    """Runs an async hook before every fetch."""

    def __init__(self, *args, hook=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.hook = hook
        self.fetched = []

    async def fetch_teams(self, country):
        self.fetched.append(country)
        if self.hook is not None:
            await self.hook(country)
        return await super().fetch_teams(country)


def _make(store=None, a=None, b=None, config=None, checkpoint=None):
    if store is None:
        store = MappingStore(MemoryBackend())
    source_a = a or StaticTeamSource(Source.A, ENGLAND_A + GERMANY_A + SPAIN_A)
    source_b = b or StaticTeamSource(Source.B, ENGLAND_B + GERMANY_B + SPAIN_B)
    orchestrator = SyncOrchestrator(store, source_a, source_b, config=config, checkpoint=checkpoint)
    return orchestrator, store


@pytest.mark.asyncio
async def test_sync_partition_classifies_and_writes():
    orchestrator, store = _make()
    report = await orchestrator.sync_partition("England", cycle_id="c1")

    assert report.status == PartitionStatus.COMPLETED
    assert report.processed == 5
    assert report.accepted == 4
    assert report.auto_verified == 3
    assert report.newly_verified == 3
    assert report.rejected == 1
    assert report.has_changes

    assert store.get_by_source_id(Source.A, "1").source_b.id == "10"
    assert store.get_by_source_id(Source.B, "20").source_a.id == "2"
    sheffield = store.get_by_source_id(Source.A, "4")
    assert sheffield.status == MappingStatus.ACCEPTED
    assert sheffield.confidence == pytest.approx(0.90)
    assert store.get_by_source_id(Source.A, "5") is None

    # Committed and visible to readers
    assert store.backend.saves == 1
    assert store.snapshot().get_by_source_id(Source.A, "3") is not None


@pytest.mark.asyncio
async def test_rerun_in_same_cycle_is_idempotent():
    orchestrator, store = _make()
    await orchestrator.sync_partition("England", cycle_id="c1")
    before = store.to_document()

    report = await orchestrator.sync_partition("England", cycle_id="c1")

    assert store.to_document() == before
    assert not report.has_changes
    assert report.skipped_verified == 3
    assert report.processed == 2
    assert report.unchanged == 1
    assert report.accepted == 0
    assert report.rejected == 1


@pytest.mark.asyncio
async def test_accepted_pair_is_promoted_after_confirming_cycles():
    orchestrator, store = _make()
    await orchestrator.sync_partition("England", cycle_id="c1")

    report = await orchestrator.sync_partition("England", cycle_id="c2")
    assert report.confirmed == 1
    assert report.newly_verified == 0
    assert store.get_by_source_id(Source.A, "4").confirmations == 2

    report = await orchestrator.sync_partition("England", cycle_id="c3")
    assert report.newly_verified == 1
    mapping = store.get_by_source_id(Source.A, "4")
    assert mapping.verified
    assert mapping.status == MappingStatus.VERIFIED

    report = await orchestrator.sync_partition("England", cycle_id="c4")
    assert report.skipped_verified == 4
    assert not report.has_changes


@pytest.mark.asyncio
async def test_unavailable_source_leaves_store_untouched():
    source_b = StaticTeamSource(Source.B, ENGLAND_B, unavailable=["England"])
    orchestrator, store = _make(b=source_b)

    report = await orchestrator.sync_partition("England", cycle_id="c1")

    assert report.status == PartitionStatus.UNAVAILABLE
    assert report.rejected == 0
    assert report.processed == 0
    assert "unavailable" in report.error
    assert len(store) == 0
    assert store.backend.saves == 0
    assert not orchestrator.checkpoint.is_completed("c1", "England")


@pytest.mark.asyncio
async def test_unavailable_source_does_not_retire_existing_mappings():
    orchestrator, store = _make()
    await orchestrator.sync_partition("England", cycle_id="c1")

    orchestrator.source_a.unavailable = {"england"}
    report = await orchestrator.sync_partition("England", cycle_id="c2")

    assert report.status == PartitionStatus.UNAVAILABLE
    assert report.retired == 0
    assert store.get_by_source_id(Source.A, "1") is not None


@pytest.mark.asyncio
async def test_failing_partition_does_not_abort_others():
    source_a = _ExplodingSource(Source.A, ENGLAND_A + SPAIN_A)
    orchestrator, store = _make(a=source_a)

    reports = await orchestrator.sync_all(["England", "Spain"], cycle_id="c1")

    assert [r.country for r in reports] == ["England", "Spain"]
    assert reports[0].status == PartitionStatus.COMPLETED
    assert reports[1].status == PartitionStatus.FAILED
    assert "RuntimeError: boom" in reports[1].error
    assert store.get_by_source_id(Source.A, "1") is not None

    status = orchestrator.status()
    assert status.failed_runs == 1
    assert status.successful_runs == 0
    assert "Spain" in status.last_error
    assert not status.is_running


@pytest.mark.asyncio
async def test_sync_all_resumes_from_checkpoint(tmp_path):
    path = tmp_path / "checkpoint.json"
    orchestrator, store = _make(checkpoint=SyncCheckpoint(path))

    reports = await orchestrator.sync_all(["England", "Germany"], cycle_id="c1")
    assert {r.status for r in reports} == {PartitionStatus.COMPLETED}
    assert sorted(orchestrator.checkpoint.completed("c1")) == ["england", "germany"]

    # A restarted process reads the same checkpoint file
    restarted, _ = _make(store=store, checkpoint=SyncCheckpoint(path))
    reports = await restarted.sync_all(["England", "Germany", "Spain"], cycle_id="c1")
    assert [r.status for r in reports] == [
        PartitionStatus.SKIPPED,
        PartitionStatus.SKIPPED,
        PartitionStatus.COMPLETED,
    ]

    reports = await restarted.sync_all(["England"], cycle_id="c1", resume=False)
    assert reports[0].status == PartitionStatus.COMPLETED

    # A new cycle starts from scratch
    reports = await restarted.sync_all(["England"], cycle_id="c2")
    assert reports[0].status == PartitionStatus.COMPLETED
    assert restarted.checkpoint.completed("c1") == []


@pytest.mark.asyncio
async def test_cancel_stops_before_next_partition():
    orchestrator = None

    async def cancel_on_first(country):
        orchestrator.cancel()

    source_a = _HookedSource(Source.A, ENGLAND_A + GERMANY_A + SPAIN_A, hook=cancel_on_first)
    orchestrator, store = _make(a=source_a, config=SyncConfig(max_workers=1))

    reports = await orchestrator.sync_all(["England", "Germany", "Spain"], cycle_id="c1")

    assert [r.status for r in reports] == [
        PartitionStatus.COMPLETED,
        PartitionStatus.CANCELLED,
        PartitionStatus.CANCELLED,
    ]
    assert source_a.fetched == ["England"]
    assert store.get_by_source_id(Source.A, "100") is None


@pytest.mark.asyncio
async def test_overlapping_runs_are_refused():
    release = asyncio.Event()

    async def wait_for_release(country):
        await release.wait()

    source_a = _HookedSource(Source.A, ENGLAND_A, hook=wait_for_release)
    orchestrator, _ = _make(a=source_a)

    running = asyncio.create_task(orchestrator.sync_all(["England"], cycle_id="c1"))
    await asyncio.sleep(0)
    assert orchestrator.status().is_running

    assert await orchestrator.sync_all(["England"], cycle_id="c1") == []

    release.set()
    reports = await running
    assert reports[0].status == PartitionStatus.COMPLETED
    assert orchestrator.status().total_runs == 1


@pytest.mark.asyncio
async def test_sync_all_discovers_countries():
    orchestrator, _ = _make()
    reports = await orchestrator.sync_all(cycle_id="c1")
    assert [r.country for r in reports] == ["England", "Germany", "Spain"]
    assert all(r.status == PartitionStatus.COMPLETED for r in reports)


@pytest.mark.asyncio
async def test_partitions_run_concurrently_without_duplicates():
    orchestrator, store = _make(config=SyncConfig(max_workers=3))
    await orchestrator.sync_all(["England", "Germany", "Spain"], cycle_id="c1")

    keys = [key for m in store.all() for key in m.keys()]
    assert len(keys) == len(set(keys))
    assert store.get_by_source_id(Source.A, "100").source_b.id == "1000"
    assert store.get_by_source_id(Source.A, "200").source_b.id == "2000"


@pytest.mark.asyncio
async def test_missing_team_is_retired_and_revived():
    orchestrator, store = _make()
    await orchestrator.sync_partition("England", cycle_id="c1")

    orchestrator.source_a.set_records([t for t in ENGLAND_A if t.source_id != "3"])
    report = await orchestrator.sync_partition("England", cycle_id="c2")
    assert report.retired == 1
    assert store.get_by_source_id(Source.B, "30") is None
    assert store.owner_of(Source.B, "30").retired

    orchestrator.source_a.set_records(ENGLAND_A)
    report = await orchestrator.sync_partition("England", cycle_id="c3")
    assert report.retired == 0
    revived = store.get_by_source_id(Source.A, "3")
    assert revived is not None
    assert revived.mapping_id == "a_3"


@pytest.mark.asyncio
async def test_retired_verified_mapping_keeps_its_counterpart():
    orchestrator, store = _make()
    await orchestrator.sync_partition("England", cycle_id="c1")
    assert store.get_by_source_id(Source.A, "2").verified

    without_arsenal = [t for t in ENGLAND_A if t.source_id != "2"]
    orchestrator.source_a.set_records(without_arsenal)
    await orchestrator.sync_partition("England", cycle_id="c2")
    assert store.owner_of(Source.B, "20").retired

    orchestrator.source_a.set_records(without_arsenal + [team_a("7", "Arsenall")])
    report = await orchestrator.sync_partition("England", cycle_id="c3")

    assert report.superseded == 0
    assert report.alternates == 1
    assert report.review_items[0].team_id == "7"
    held = store.owner_of(Source.B, "20")
    assert held.mapping_id == "a_2"
    assert held.verified
    assert held.source_b.id == "20"
    assert store.get_by_source_id(Source.A, "7") is None


@pytest.mark.asyncio
async def test_single_source_stubs():
    source_b = StaticTeamSource(Source.B, ENGLAND_B + [team_b("50", "Burnley")])
    config = SyncConfig(create_single_source_stubs=True)
    orchestrator, store = _make(b=source_b, config=config)

    report = await orchestrator.sync_partition("England", cycle_id="c1")
    assert report.stubs_created == 2
    assert store.get_by_source_id(Source.A, "5").is_stub
    assert store.get_by_source_id(Source.B, "50").is_stub

    stats = store.stats()
    assert stats.source_a_only == 1
    assert stats.source_b_only == 1

    report = await orchestrator.sync_partition("England", cycle_id="c1")
    assert report.stubs_created == 0
    assert not report.has_changes


@pytest.mark.asyncio
async def test_review_items_are_reported_not_written():
    source_b = StaticTeamSource(Source.B, ENGLAND_B + [team_b("60", "Nottm Forest")])
    source_a = StaticTeamSource(Source.A, ENGLAND_A + [team_a("6", "Nottingham Forest")])
    orchestrator, store = _make(a=source_a, b=source_b)

    report = await orchestrator.sync_partition("England", cycle_id="c1")

    assert report.manual_review == 1
    item = report.review_items[0]
    assert item.team_id == "6"
    assert item.candidate_id == "60"
    assert store.get_by_source_id(Source.A, "6") is None


@pytest.mark.asyncio
async def test_light_sync_runs_only_after_recent_full_sync():
    config = SyncConfig(light_sync_countries=["England"])
    orchestrator, _ = _make(config=config)

    assert await orchestrator.run_light_sync() == []

    await orchestrator.sync_all(["England", "Germany"], cycle_id="c1")
    reports = await orchestrator.run_light_sync(cycle_id="c1")
    assert [r.country for r in reports] == ["England"]
    assert reports[0].status == PartitionStatus.COMPLETED

    orchestrator._status.last_sync = utcnow() - timedelta(hours=72)
    assert await orchestrator.run_light_sync() == []


def test_accepts_app_settings():
    settings = AppSettings(_env_file=None, sync=SyncConfig(max_workers=2))
    orchestrator, _ = _make(config=settings)
    assert orchestrator.config.max_workers == 2


def test_sources_must_match_their_slots():
    source = StaticTeamSource(Source.B, ENGLAND_B)
    with pytest.raises(ValueError):
        SyncOrchestrator(MappingStore(), source, source)


def test_default_cycle_id_is_utc_date():
    assert default_cycle_id() == utcnow().date().isoformat()
