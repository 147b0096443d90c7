#!/usr/bin/env python3
"""
CLI Interface for the Listing Sync Pipeline

Provides commands for:
- Resolving listing data through the cache tiers
- Forcing a live refresh from the board
- Checking the board for updates
- Inspecting and clearing the caches
- Exporting a static snapshot
- Viewing and running the refresh schedule

Usage:
    python listing_sync_cli.py resolve --filters filters.yaml
    python listing_sync_cli.py refresh
    python listing_sync_cli.py check-updates
    python listing_sync_cli.py cache-status
    python listing_sync_cli.py clear-cache
    python listing_sync_cli.py export-snapshot data/propertyCache.json
    python listing_sync_cli.py schedule
    python listing_sync_cli.py daemon
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from config.sync_config import SyncConfig, get_config
from services.cache_resolver import CacheResolver, ResolutionResult
from services.errors import StorageError, ValidationError
from services.listing_models import CacheEnvelope
from services.local_cache_service import LocalCacheService
from services.projection_service import CurrentUser, FilterSpec
from services.scheduler_service import RefreshScheduler
from services.shared_cache_service import SharedCacheService
from services.snapshot_loader_service import SnapshotLoaderService

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(config: SyncConfig, verbose: bool = False):
    """Configure root logging from the sync config."""
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file)
        ]
    )


def load_filters(path: Optional[str]) -> FilterSpec:
    """Load a FilterSpec from a YAML or JSON file."""
    if not path:
        return FilterSpec()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        return FilterSpec.from_dict(data)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        print(f"Error: could not load filters from {path}: {e}")
        sys.exit(1)


def create_resolver(args) -> CacheResolver:
    """Create the resolver with the filters and user given on the command line."""
    config = get_config()
    user = None
    if getattr(args, 'user', None):
        user = CurrentUser(username=args.user, outreach_column=getattr(args, 'outreach_column', None))
    return CacheResolver(
        config=config,
        filters=load_filters(getattr(args, 'filters', None)),
        current_user=user
    )


def format_timestamp(timestamp: Optional[float]) -> str:
    if not timestamp:
        return 'Never'
    return datetime.fromtimestamp(timestamp).strftime('%Y-%m-%d %H:%M:%S')


def print_result(result: ResolutionResult):
    print("\n" + "-" * 60)
    print("RESULTS:")
    print("-" * 60)
    print(f"Status: {'✅ Success' if result.success else '❌ Failed'}")
    print(f"Source: {result.source or 'none'}")
    print(f"Listings: {result.listings_count:,}")
    print(f"Duration: {result.duration_seconds:.1f} seconds")
    if result.tiers_tried:
        print(f"Tiers Tried: {' -> '.join(result.tiers_tried)}")

    if result.errors:
        print("\nErrors:")
        for error in result.errors:
            print(f"  - {error}")


def print_stats(resolver: CacheResolver, top: int = 10):
    snapshot = resolver.snapshot()
    stats = snapshot.stats

    print("\n" + "-" * 60)
    print("FILTERED STATS:")
    print("-" * 60)
    print(f"Total Listings: {stats.total_listings:,} (of {len(snapshot.all_properties):,})")
    print(f"Active Listings: {stats.active_listings:,}")
    print(f"Average Price: ${stats.avg_price:,}")
    print(f"Median Price: ${stats.median_price:,}")
    print(f"Average DOM: {stats.avg_dom} days")
    print(f"Last Updated: {format_timestamp(snapshot.last_updated)}")

    if snapshot.error:
        print(f"\n❌ {snapshot.error}")

    ranked = sorted(
        snapshot.properties,
        key=lambda p: p.scores.global_score if p.scores else 0,
        reverse=True
    )[:top]

    if ranked:
        print(f"\nTop {len(ranked)} Deals:")
        print("-" * 90)
        print(f"{'Score':<7} {'Price':<12} {'Drop %':<9} {'Drops':<7} {'DOM':<6} {'Ward':<9} {'Name'}")
        print("-" * 90)
        for listing in ranked:
            score = listing.scores.global_score if listing.scores else 0
            print(f"{score:<7} ${listing.current_price:<11,.0f} {listing.drop_percent:<9.2f} "
                  f"{listing.drop_frequency_count:<7} {listing.days_on_market:<6} "
                  f"{listing.ward or '-':<9} {listing.name[:40]}")
        print("-" * 90)


async def cmd_resolve(args):
    """Resolve listing data through the cache tiers and print stats."""
    print("\n" + "=" * 60)
    print("RESOLVING LISTING DATA")
    print("=" * 60)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    resolver = create_resolver(args)

    try:
        result = await resolver.resolve()
        print_result(result)
        print_stats(resolver, args.top)
        print()

    except Exception as e:
        print(f"\nError resolving data: {e}")
        logger.exception("Resolve error")
        sys.exit(1)


async def cmd_refresh(args):
    """Fetch fresh data from the live board."""
    print("\n" + "=" * 60)
    print("LIVE REFRESH FROM BOARD")
    print("=" * 60)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    resolver = create_resolver(args)

    try:
        result = await resolver.refresh_data()
        print_result(result)
        print_stats(resolver, args.top)
        print()

        if not result.success:
            sys.exit(1)

    except Exception as e:
        print(f"\nError refreshing data: {e}")
        logger.exception("Refresh error")
        sys.exit(1)


async def cmd_check_updates(args):
    """Check the board for updates newer than the cached data."""
    print("\n" + "=" * 60)
    print("CHECKING FOR BOARD UPDATES")
    print("=" * 60)

    resolver = create_resolver(args)

    try:
        await resolver.resolve()
        print(f"\nCached data from: {format_timestamp(resolver.state.data_timestamp)} "
              f"({resolver.state.source})")

        refreshed = await resolver.check_for_updates()
        if refreshed:
            print("⚠ Updates detected - data refreshed from board")
            print_stats(resolver, args.top)
        else:
            print("✓ No updates detected, data is fresh")
        print()

    except Exception as e:
        print(f"\nError checking for updates: {e}")
        logger.exception("Update check error")
        sys.exit(1)


async def cmd_cache_status(args):
    """Show local and shared cache status."""
    print("\n" + "=" * 60)
    print("CACHE STATUS")
    print("=" * 60)

    config = get_config()
    local_cache = LocalCacheService(config.local_cache)
    shared_cache = SharedCacheService(settings=config.shared_cache)

    validity = await local_cache.is_valid()
    print(f"\nLocal Cache ({local_cache.path}):")
    print(f"  Valid: {'✅' if validity.valid else '❌'} {validity.reason}")
    if validity.valid:
        try:
            envelope = await local_cache.get()
        except StorageError as e:
            print(f"  Error: {e}")
        else:
            if envelope:
                print(f"  Listings: {len(envelope.data):,}")
                print(f"  Timestamp: {format_timestamp(envelope.timestamp)}")
                print(f"  Has Scores: {envelope.has_scores}")

    print(f"\nShared Cache ({config.shared_cache.table}):")
    if shared_cache.disabled:
        print(f"  Disabled: {shared_cache.disabled_reason}")
    else:
        entry = await shared_cache.fetch()
        if entry:
            print(f"  Listings: {len(entry.value.data):,}")
            print(f"  Version: {entry.version}")
            print(f"  Updated At: {entry.updated_at or format_timestamp(entry.value.timestamp)}")
        elif shared_cache.disabled:
            print(f"  Disabled: {shared_cache.disabled_reason}")
        else:
            print("  Empty or unreachable")

    print(f"\nSnapshot URL: {config.snapshot.url or 'not configured'}")
    print()


async def cmd_clear_cache(args):
    """Clear the local cache."""
    config = get_config()
    local_cache = LocalCacheService(config.local_cache)

    try:
        await local_cache.clear()
        print(f"\n✅ Cleared local cache {local_cache.path}\n")
    except StorageError as e:
        print(f"\nError clearing cache: {e}")
        sys.exit(1)


async def cmd_export_snapshot(args):
    """Resolve listing data and write it as a static snapshot."""
    print("\n" + "=" * 60)
    print("EXPORTING SNAPSHOT")
    print("=" * 60)

    resolver = create_resolver(args)

    try:
        result = await resolver.resolve()
        if not result.success:
            print("\nError: no data available to export")
            sys.exit(1)

        envelope = CacheEnvelope.build(resolver.state.all_properties, timestamp=resolver.state.data_timestamp)
        await asyncio.to_thread(SnapshotLoaderService.write_snapshot, envelope, Path(args.path))
        print(f"\n✅ Wrote {len(envelope.data):,} listings from {result.source} to {args.path}\n")

    except StorageError as e:
        print(f"\nError writing snapshot: {e}")
        sys.exit(1)


async def cmd_schedule(args):
    """Show the refresh schedule."""
    print("\n" + "=" * 60)
    print("REFRESH SCHEDULE")
    print("=" * 60)

    scheduler = RefreshScheduler(get_config())
    next_time = scheduler.next_refresh_time()

    print(f"\nStatus: {scheduler.schedule_status()}")
    print(f"Next Refresh: {next_time.astimezone().strftime('%Y-%m-%d %H:%M %Z') if next_time else 'Never'}")

    print("\n" + "-" * 70)
    print(f"{'Rule':<15} {'Timezone':<20} {'Next Fire':<22} {'Due':<5}")
    print("-" * 70)
    for status in scheduler.get_rule_status():
        next_fire = status.next_fire_at.astimezone().strftime('%Y-%m-%d %H:%M') if status.next_fire_at else '-'
        print(f"{status.name:<15} {status.timezone:<20} {next_fire:<22} {'⏰' if status.is_due else '-':<5}")
    print("-" * 70)
    print()


async def cmd_run_daemon(args):
    """Resolve once, then refresh on schedule until stopped."""
    config = get_config()
    interval = args.interval or config.schedule_check_interval

    print("\n" + "=" * 60)
    print("STARTING LISTING SYNC DAEMON")
    print("=" * 60)
    print(f"Check Interval: {interval} seconds")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("\nPress Ctrl+C to stop...")
    print()

    resolver = create_resolver(args)
    scheduler = RefreshScheduler(config, refresh_callback=resolver.refresh_data)

    try:
        await resolver.start()
        await scheduler.run_continuous(check_interval_seconds=interval)
    except KeyboardInterrupt:
        print("\n\nDaemon stopped by user.")
    except Exception as e:
        print(f"\nDaemon error: {e}")
        logger.exception("Daemon error")
        sys.exit(1)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description='Listing Sync Pipeline CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s resolve                          Resolve data and show stats
  %(prog)s resolve --filters f.yaml --top 20
  %(prog)s refresh                          Fetch fresh data from the board
  %(prog)s check-updates                    Refresh only if the board changed
  %(prog)s cache-status                     Show local and shared cache status
  %(prog)s clear-cache                      Delete the local cache
  %(prog)s export-snapshot out.json         Write a static snapshot
  %(prog)s schedule                         Show the refresh schedule
  %(prog)s daemon --interval 60             Refresh on schedule
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_view_options(sub):
        sub.add_argument('--filters', help='YAML/JSON file with filter criteria')
        sub.add_argument('--user', help='Username for the outreach filter')
        sub.add_argument('--outreach-column', help="User's outreach column label, e.g. 'JS Send to GHL'")
        sub.add_argument('--top', type=int, default=10, help='Number of top deals to show')

    # Resolve command
    resolve_parser = subparsers.add_parser('resolve', help='Resolve data through the cache tiers')
    add_view_options(resolve_parser)
    resolve_parser.set_defaults(func=cmd_resolve)

    # Refresh command
    refresh_parser = subparsers.add_parser('refresh', help='Fetch fresh data from the board')
    add_view_options(refresh_parser)
    refresh_parser.set_defaults(func=cmd_refresh)

    # Check updates command
    check_parser = subparsers.add_parser('check-updates', help='Refresh if the board has newer items')
    add_view_options(check_parser)
    check_parser.set_defaults(func=cmd_check_updates)

    # Cache status command
    status_parser = subparsers.add_parser('cache-status', help='Show cache status')
    status_parser.set_defaults(func=cmd_cache_status)

    # Clear cache command
    clear_parser = subparsers.add_parser('clear-cache', help='Delete the local cache')
    clear_parser.set_defaults(func=cmd_clear_cache)

    # Export snapshot command
    export_parser = subparsers.add_parser('export-snapshot', help='Write a static snapshot file')
    export_parser.add_argument('path', help='Output path for the snapshot JSON')
    export_parser.set_defaults(func=cmd_export_snapshot)

    # Schedule command
    schedule_parser = subparsers.add_parser('schedule', help='Show the refresh schedule')
    schedule_parser.set_defaults(func=cmd_schedule)

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run as continuous daemon')
    daemon_parser.add_argument('--interval', type=int, default=None, help='Check interval in seconds')
    add_view_options(daemon_parser)
    daemon_parser.set_defaults(func=cmd_run_daemon)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(get_config(), args.verbose)

    # Run the async command
    asyncio.run(args.func(args))


if __name__ == '__main__':
    main()
