"""Periodic reconciliation of both providers' team lists into the store.

A sync is split into country partitions. Each partition fetches both
sources, resolves every source A team against source B's teams for the
same country, applies the outcomes and commits. Partitions run
concurrently up to ``max_workers``; a failure in one never touches the
others.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from loguru import logger

from team_identity.config.settings import AppSettings, SyncConfig
from team_identity.errors import ConflictOnWrite, MappingRejected, SourceUnavailable
from team_identity.matching.resolver import TeamResolver, build_stub
from team_identity.models.enums import MatchStatus, PartitionStatus, Source
from team_identity.models.outcome import MatchOutcome, ReviewItem
from team_identity.models.report import PartitionReport, SyncStatus
from team_identity.models.team import TeamRecord
from team_identity.sources.base_source import TeamSource
from team_identity.storage.checkpoint import SyncCheckpoint
from team_identity.storage.mapping_store import MappingStore
from team_identity.utils.misc_utils import country_key, utcnow


def default_cycle_id() -> str:
    """One cycle per UTC day, matching the daily sync schedule."""
    return utcnow().date().isoformat()


class SyncOrchestrator:
    def __init__(
        self,
        store: MappingStore,
        source_a: TeamSource,
        source_b: TeamSource,
        resolver: Optional[TeamResolver] = None,
        config: Optional[Union[AppSettings, SyncConfig]] = None,
        checkpoint: Optional[SyncCheckpoint] = None,
    ):
        if source_a.source is not Source.A or source_b.source is not Source.B:
            raise ValueError("source_a and source_b must serve sources A and B respectively")
        self.store = store
        self.source_a = source_a
        self.source_b = source_b
        self.resolver = resolver or TeamResolver(store)
        if isinstance(config, AppSettings):
            config = config.sync
        self.config: SyncConfig = config or SyncConfig()
        self.checkpoint = checkpoint or SyncCheckpoint()
        self._status = SyncStatus()
        self._cancel_requested = False

    # --- Control ---

    def status(self) -> SyncStatus:
        return self._status.model_copy()

    def cancel(self) -> None:
        """Stops the running ``sync_all`` before its next partition."""
        if self._status.is_running:
            logger.warning("Cancellation requested; in-flight partitions will finish.")
        self._cancel_requested = True

    # --- One partition ---

    async def sync_partition(self, country: str, cycle_id: Optional[str] = None) -> PartitionReport:
        """Syncs one country.

        A SourceUnavailable from either provider yields an ``unavailable``
        report and leaves the store untouched. Other exceptions propagate.
        """
        cycle_id = cycle_id or default_cycle_id()
        report = PartitionReport(country=country, cycle_id=cycle_id)
        logger.info(f"Syncing partition {country} (cycle {cycle_id})")

        results = await asyncio.gather(
            self.source_a.fetch_teams(country),
            self.source_b.fetch_teams(country),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, SourceUnavailable):
                logger.warning(f"Partition {country} skipped, source unavailable: {result}")
                report.status = PartitionStatus.UNAVAILABLE
                report.error = str(result)
                report.finished_at = utcnow()
                return report
        for result in results:
            if isinstance(result, BaseException):
                raise result
        teams_a, teams_b = results

        await asyncio.to_thread(self._apply_partition, country, cycle_id, teams_a, teams_b, report)
        await self.store.commit()
        self.checkpoint.mark_completed(cycle_id, country)

        report.finished_at = utcnow()
        logger.success(
            f"Partition {country} done: {report.processed} processed, {report.accepted} accepted, "
            f"{report.unchanged} unchanged, {report.ambiguous} ambiguous, "
            f"{report.manual_review} for review, {report.rejected} rejected, {report.retired} retired"
        )
        return report

    def _apply_partition(
        self,
        country: str,
        cycle_id: str,
        teams_a: Sequence[TeamRecord],
        teams_b: Sequence[TeamRecord],
        report: PartitionReport,
    ) -> None:
        key = country_key(country)
        candidates = [t for t in teams_b if country_key(t.country) in (None, key)]

        with self.store.partition_lock(country):
            for team in sorted(teams_a, key=lambda t: t.source_id):
                existing = self.store.get_by_source_id(Source.A, team.source_id)
                if existing is not None and existing.verified:
                    report.skipped_verified += 1
                    continue

                report.processed += 1
                outcome = self.resolver.resolve(team, candidates)
                self._apply_outcome(outcome, cycle_id, report)

            if self.config.create_single_source_stubs:
                for record in sorted(teams_b, key=lambda t: t.source_id):
                    self._ensure_stub(record, report)

            self._retire_missing(country, teams_a, teams_b, report)

    def _apply_outcome(self, outcome: MatchOutcome, cycle_id: str, report: PartitionReport) -> None:
        status = outcome.status

        if status.is_accepted:
            for source, source_id in outcome.releases:
                self.store.release(source, source_id)
                report.superseded += 1
            mapping = self.resolver.build_mapping(outcome, cycle_id)
            try:
                result = self.store.upsert(mapping)
            except ConflictOnWrite as e:
                logger.warning(f"Write conflict for {outcome.team.raw_name}: {e}")
                report.alternates += 1
                report.review_items.append(
                    ReviewItem.from_outcome(
                        outcome.model_copy(update={"status": MatchStatus.ALTERNATE, "reason": str(e)})
                    )
                )
                return
            except MappingRejected as e:
                logger.warning(f"Store refused mapping for {outcome.team.raw_name}: {e}")
                report.rejected += 1
                return

            if result.created or result.changed:
                report.accepted += 1
                if status is MatchStatus.AUTO_VERIFIED:
                    report.auto_verified += 1
                    report.newly_verified += 1
            else:
                report.unchanged += 1

            if not result.mapping.verified:
                before = result.mapping.confirmations
                updated, promoted = self.store.record_confirmation(
                    result.mapping.mapping_id, cycle_id, self.config.verify_after_confirmations
                )
                if updated.confirmations != before:
                    report.confirmed += 1
                if promoted:
                    report.newly_verified += 1
            return

        if status is MatchStatus.AMBIGUOUS:
            report.ambiguous += 1
        elif status is MatchStatus.MANUAL_REVIEW:
            report.manual_review += 1
        elif status is MatchStatus.ALTERNATE:
            report.alternates += 1
        else:
            report.rejected += 1
            if self.config.create_single_source_stubs:
                self._ensure_stub(outcome.team, report)
            return
        report.review_items.append(ReviewItem.from_outcome(outcome))

    def _ensure_stub(self, record: TeamRecord, report: PartitionReport) -> None:
        if self.store.owner_of(record.source, record.source_id) is not None:
            return
        result = self.store.upsert(build_stub(record))
        if result.created:
            report.stubs_created += 1

    def _retire_missing(
        self,
        country: str,
        teams_a: Sequence[TeamRecord],
        teams_b: Sequence[TeamRecord],
        report: PartitionReport,
    ) -> None:
        seen: Dict[Source, set] = {
            Source.A: {t.source_id for t in teams_a},
            Source.B: {t.source_id for t in teams_b},
        }
        key = country_key(country)
        for mapping in self.store.mappings_for_country(country):
            gone = False
            for source in (Source.A, Source.B):
                ref = mapping.ref(source)
                # A side registered under another country was not part of this fetch
                if ref is None or country_key(ref.country) not in (None, key):
                    continue
                if ref.id not in seen[source]:
                    gone = True
            if gone:
                self.store.retire(mapping.mapping_id)
                report.retired += 1

    # --- All partitions ---

    async def _discover_countries(self) -> List[str]:
        countries: Dict[str, str] = {}
        for source in (self.source_a, self.source_b):
            try:
                for name in await source.list_countries():
                    countries.setdefault(country_key(name), name)
            except SourceUnavailable as e:
                logger.warning(f"Could not list countries from source {source.source.value}: {e}")
        return [countries[k] for k in sorted(k for k in countries if k)]

    async def sync_all(
        self,
        countries: Optional[Sequence[str]] = None,
        cycle_id: Optional[str] = None,
        resume: bool = True,
    ) -> List[PartitionReport]:
        """Syncs every partition of a cycle.

        Args:
            countries: Partitions to run. Defaults to the configured list,
                then to every country either source reports.
            cycle_id: Defaults to today's UTC date.
            resume: Skip partitions the checkpoint already has for this cycle.

        Returns:
            One report per partition, in input order; ``[]`` if a sync is
            already running.
        """
        if self._status.is_running:
            logger.warning("Sync already in progress; refusing overlapping run.")
            return []

        self._status.is_running = True
        self._status.total_runs += 1
        self._cancel_requested = False
        cycle_id = cycle_id or default_cycle_id()

        try:
            targets = list(countries or self.config.countries or await self._discover_countries())
            logger.info(f"Starting sync cycle {cycle_id} for {len(targets)} partitions")
            semaphore = asyncio.Semaphore(self.config.max_workers)

            async def run(country: str) -> PartitionReport:
                if resume and self.checkpoint.is_completed(cycle_id, country):
                    logger.info(f"Partition {country} already completed in cycle {cycle_id}")
                    return PartitionReport(
                        country=country, cycle_id=cycle_id, status=PartitionStatus.SKIPPED, finished_at=utcnow()
                    )
                async with semaphore:
                    if self._cancel_requested:
                        return PartitionReport(
                            country=country,
                            cycle_id=cycle_id,
                            status=PartitionStatus.CANCELLED,
                            finished_at=utcnow(),
                        )
                    try:
                        return await self.sync_partition(country, cycle_id)
                    except Exception as e:
                        logger.exception(f"Partition {country} failed: {e}")
                        return PartitionReport(
                            country=country,
                            cycle_id=cycle_id,
                            status=PartitionStatus.FAILED,
                            error=f"{type(e).__name__}: {e}",
                            finished_at=utcnow(),
                        )

            reports = list(await asyncio.gather(*(run(c) for c in targets)))

            failed = [r for r in reports if r.status is PartitionStatus.FAILED]
            self._status.last_sync = utcnow()
            self._status.last_cycle_id = cycle_id
            if failed:
                self._status.failed_runs += 1
                self._status.last_error = "; ".join(f"{r.country}: {r.error}" for r in failed)
            else:
                self._status.successful_runs += 1

            counts: Dict[str, int] = {}
            for r in reports:
                counts[r.status.value] = counts.get(r.status.value, 0) + 1
            logger.info(f"Sync cycle {cycle_id} finished: {counts}")
            return reports
        finally:
            self._status.is_running = False

    def _last_sync_time(self) -> Optional[datetime]:
        if self._status.last_sync is not None:
            return self._status.last_sync
        updated_at = self.checkpoint.state.updated_at
        return datetime.fromisoformat(updated_at) if updated_at else None

    async def run_light_sync(self, cycle_id: Optional[str] = None) -> List[PartitionReport]:
        """Re-syncs the major countries between full runs.

        Runs only when a full sync happened within ``light_sync_max_age_hours``;
        otherwise a full sync is due and the light pass is skipped.
        """
        last_sync = self._last_sync_time()
        if last_sync is None:
            logger.info("No previous sync found, skipping light sync.")
            return []
        age = utcnow() - last_sync
        if age > timedelta(hours=self.config.light_sync_max_age_hours):
            logger.info(f"Last sync is {age} old; a full sync is due, skipping light sync.")
            return []

        logger.info(f"Running light sync for {', '.join(self.config.light_sync_countries)}")
        return await self.sync_all(self.config.light_sync_countries, cycle_id=cycle_id, resume=False)
