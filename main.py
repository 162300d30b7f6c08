import sys
import asyncio
import argparse
from typing import List, Optional, Tuple

# --- Settings/Logging ---
from team_identity.logging.setup import setup_logging
from team_identity.config.settings import AppSettings, SourceConfig, settings

setup_logging()

from loguru import logger

# --- End Settings/Logging ---

from team_identity.errors import TeamIdentityError
from team_identity.lookup.service import LookupService
from team_identity.matching.resolver import TeamResolver
from team_identity.models.enums import PartitionStatus, Source
from team_identity.models.report import CoverageReport, PartitionReport
from team_identity.sources.base_source import HttpTeamSource, TeamSource
from team_identity.sources.static_source import StaticTeamSource
from team_identity.storage.backends import JsonFileBackend, MappingBackend
from team_identity.storage.checkpoint import SyncCheckpoint
from team_identity.storage.mapping_store import MappingStore
from team_identity.storage.supabase_backend import SupabaseBackend, initialize_supabase
from team_identity.sync.orchestrator import SyncOrchestrator

from rich import print
from rich.panel import Panel
from rich.table import Table


def build_source(source: Source, config: SourceConfig) -> TeamSource:
    if config.path:
        return StaticTeamSource.from_json_file(source, config.path)
    if config.base_url:
        return HttpTeamSource(source, config)
    raise TeamIdentityError(
        f"Source {source.value} needs either a path or a base_url (SOURCE_{source.value}__PATH / __BASE_URL)"
    )


async def build_backend(config: AppSettings) -> MappingBackend:
    if config.storage_backend == "supabase":
        client = await initialize_supabase(config.supabase_url, config.supabase_key)
        return SupabaseBackend(client, config.supabase_table)
    return JsonFileBackend(config.store_path)


async def open_store(config: AppSettings) -> MappingStore:
    store = MappingStore(await build_backend(config), config.matching)
    await store.load()
    return store


def build_orchestrator(config: AppSettings, store: MappingStore) -> Tuple[SyncOrchestrator, List[TeamSource]]:
    sources = [build_source(Source.A, config.source_a), build_source(Source.B, config.source_b)]
    orchestrator = SyncOrchestrator(
        store,
        sources[0],
        sources[1],
        resolver=TeamResolver(store, config.matching),
        config=config,
        checkpoint=SyncCheckpoint(config.checkpoint_path),
    )
    return orchestrator, sources


def print_reports(reports: List[PartitionReport]) -> None:
    table = Table(title="Sync results")
    for column in ("Country", "Status", "Processed", "Accepted", "Unchanged", "Ambiguous", "Review", "Rejected", "Verified", "Retired"):
        table.add_column(column, justify="left" if column in ("Country", "Status") else "right")
    for r in reports:
        style = "red" if r.status is PartitionStatus.FAILED else None
        table.add_row(
            r.country,
            r.status.value,
            str(r.processed),
            str(r.accepted),
            str(r.unchanged),
            str(r.ambiguous),
            str(r.manual_review),
            str(r.rejected),
            str(r.newly_verified),
            str(r.retired),
            style=style,
        )
    print(table)

    review_items = [(r.country, item) for r in reports for item in r.review_items]
    if review_items:
        review = Table(title=f"Pairs needing review ({len(review_items)})")
        for column in ("Country", "Status", "Team", "Candidate", "Confidence", "Reason"):
            review.add_column(column)
        for country, item in review_items:
            review.add_row(
                country,
                item.status.value,
                f"{item.team_name} ({item.team_id})",
                f"{item.candidate_name} ({item.candidate_id})" if item.candidate_id else "-",
                f"{item.confidence:.3f}",
                item.reason or "",
            )
        print(review)


def print_stats(stats: CoverageReport) -> None:
    lines = [
        f"Total mappings:       {stats.total}",
        f"Both sources mapped:  {stats.both_sources}",
        f"Source A only:        {stats.source_a_only}",
        f"Source B only:        {stats.source_b_only}",
        f"Verified:             {stats.verified_count}",
        f"Average confidence:   {stats.avg_confidence:.3f}",
        f"Countries:            {stats.countries}",
        f"Retired:              {stats.retired}",
    ]
    print(Panel("\n".join(lines), title="Team mapping coverage"))
    if stats.by_country:
        table = Table(title="Mappings by country")
        table.add_column("Country")
        table.add_column("Mappings", justify="right")
        for country, count in stats.by_country.items():
            table.add_row(country, str(count))
        print(table)


async def run_sync(config: AppSettings, args: argparse.Namespace, light: bool = False) -> int:
    store = await open_store(config)
    orchestrator, sources = build_orchestrator(config, store)
    try:
        if light:
            reports = await orchestrator.run_light_sync(cycle_id=args.cycle)
        else:
            reports = await orchestrator.sync_all(args.country or None, cycle_id=args.cycle, resume=not args.no_resume)
    finally:
        for source in sources:
            await source.close()

    if not reports:
        logger.warning("No partitions were synced.")
        return 0
    print_reports(reports)
    print_stats(store.stats())
    return 1 if any(r.status is PartitionStatus.FAILED for r in reports) else 0


async def run_lookup(config: AppSettings, args: argparse.Namespace) -> int:
    lookup = LookupService(await open_store(config))
    source = Source(args.source) if args.source else None
    mapping = lookup.resolve(args.name, source_hint=source, country_hint=args.country)
    if mapping is None:
        print(f"[yellow]No mapping found for '{args.name}'.[/yellow]")
        return 1
    print(Panel(mapping.model_dump_json(indent=2), title=mapping.primary_name))
    return 0


async def run_verify(config: AppSettings, args: argparse.Namespace) -> int:
    store = await open_store(config)
    try:
        mapping = store.verify(args.mapping_id)
    except KeyError:
        print(f"[red]Unknown mapping id: {args.mapping_id}[/red]")
        return 1
    await store.commit()
    print(f"[green]Verified {mapping.mapping_id} ({mapping.primary_name}).[/green]")
    return 0


async def run_stats(config: AppSettings, args: argparse.Namespace) -> int:
    store = await open_store(config)
    print_stats(store.stats())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Team identity resolution across two football data providers.")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Resolve and store mappings for every partition.")
    sync.add_argument("--country", action="append", help="Sync only this country (repeatable).")
    sync.add_argument("--cycle", help="Cycle id; defaults to today's UTC date.")
    sync.add_argument("--no-resume", action="store_true", help="Ignore the checkpoint for this cycle.")

    light = commands.add_parser("light-sync", help="Re-sync the major countries if a full sync ran recently.")
    light.add_argument("--cycle", help="Cycle id; defaults to today's UTC date.")

    lookup = commands.add_parser("lookup", help="Find the mapping for a team name.")
    lookup.add_argument("name")
    lookup.add_argument("--source", choices=[s.value for s in Source])
    lookup.add_argument("--country")

    commands.add_parser("stats", help="Show coverage statistics.")

    verify = commands.add_parser("verify", help="Manually verify a mapping.")
    verify.add_argument("mapping_id")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    logger.info(f"Starting team identity service: {args.command}")

    if args.command == "sync":
        return await run_sync(settings, args)
    if args.command == "light-sync":
        return await run_sync(settings, args, light=True)
    if args.command == "lookup":
        return await run_lookup(settings, args)
    if args.command == "verify":
        return await run_verify(settings, args)
    return await run_stats(settings, args)


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Execution interrupted by user (KeyboardInterrupt).")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Unhandled exception in main execution: {e}")
        sys.exit(1)
