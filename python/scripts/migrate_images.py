#!/usr/bin/env python3
"""
Migrate container images from one registry to another using skopeo copy.

Progress is tracked in a state file next to the configuration (or wherever
state_file points), so an interrupted migration is resumed simply by running
the same command again: tags already inspected are not inspected again and
images already migrated are not copied again.

Workflow:
1. Verify prerequisites (skopeo, stored credentials)
2. Discover tags matching the migration plan and cache their manifests
3. Plan the remaining (not yet complete) work
4. Copy each image from source to target, recording the outcome
5. Print a summary and optionally save a JSON report

Usage examples:
  # Show what would be copied
  python migrate_images.py -c config.yaml --dry-run

  # Migrate (re-run the same command to resume)
  python migrate_images.py -c config.yaml

  # Use an explicit state file and save a report
  python migrate_images.py -c config.yaml --state-file /var/lib/migrator/state.json --output report.json
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
_parent_dir = Path(__file__).parent.parent.absolute()
if str(_parent_dir) not in sys.path:
    sys.path.insert(0, str(_parent_dir))

from image_migrator.config_manager import ConfigManager
from image_migrator.copy_executor import CopyExecutor
from image_migrator.error_utils import ConfigurationError, RateLimitedError, StateCorruptionError
from image_migrator.health_checks import HealthChecker
from image_migrator.logging_utils import get_logger, log_exception, setup_logging
from image_migrator.manifest_cache import ManifestCache
from image_migrator.report_utils import format_work_table, save_json
from image_migrator.skopeo_client import SkopeoClient
from image_migrator.state_store import MigrationStateStore
from image_migrator.tag_discovery import TagDiscoverer
from image_migrator.work_planner import remaining_work, status_counts

logger = get_logger(__name__)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Migrate container images between registries, resumably",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show what would be copied
  python migrate_images.py -c config.yaml --dry-run

  # Migrate (re-run the same command to resume)
  python migrate_images.py -c config.yaml
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        required=True,
        help="Migration configuration file (YAML or JSON)",
    )

    parser.add_argument(
        "-t",
        "--dry-run",
        action="store_true",
        help="Discover and plan, but only log the copies that would happen",
    )

    parser.add_argument(
        "--state-file",
        help="Migration state file (default: <config file>.state)",
    )

    parser.add_argument(
        "--output",
        help="Write a JSON migration report to this file",
    )

    parser.add_argument(
        "--skip-health-checks",
        action="store_true",
        help="Do not check for skopeo and stored credentials before starting",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


def build_report(config, state, counts, discovery_results, results, dry_run):
    return {
        "summary": {
            "images_copied": results.get("copied", 0),
            "images_already_present": results.get("already_present", 0),
            "images_failed": results.get("failed", 0),
            "images_would_copy": results.get("would_copy", 0),
            "dry_run": dry_run,
        },
        "status": counts,
        "discovery": {
            r.repository: {
                "selected": r.selected,
                "registered": r.registered,
                "unrecognized": r.unrecognized,
                "failed_tags": r.failed,
                "error": r.error.message if r.error else None,
            }
            for r in discovery_results
        },
        "metadata": {
            "source_registry": config.get_source_host(),
            "target_registry": config.get_target_host(),
            "state_file": str(state.path),
            "timestamp": datetime.now().isoformat(),
        },
    }


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = ConfigManager(args.config)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    dry_run = args.dry_run
    state_file = args.state_file or config.get_state_file()

    try:
        logger.info("=" * 60)
        if dry_run:
            logger.info("   IMAGE MIGRATION - DRY RUN MODE")
            logger.info("   No images will be copied and no status will be recorded.")
        else:
            logger.info("   IMAGE MIGRATION")
        logger.info("=" * 60)
        logger.info(f"Source registry: {config.get_source_host()}")
        logger.info(f"Target registry: {config.get_target_host()}")
        logger.info(f"State file:      {state_file}")
        logger.info("")

        if not args.skip_health_checks:
            checker = HealthChecker(config)
            if not checker.all_required_passed(checker.run_all_checks()):
                logger.error("Health checks failed, aborting migration")
                sys.exit(1)

        state = MigrationStateStore(state_file).load()
        client = SkopeoClient(config)
        source_host = config.get_source_host()

        # Discovery
        cache = ManifestCache(state, client, source_host)
        discoverer = TagDiscoverer(state, client, cache, source_host)
        discovery_results = discoverer.discover_all(config.get_migration_plan())

        # Planning
        items = remaining_work(state)
        counts = status_counts(state)
        logger.info("")
        logger.info(f"Count of unmigrated images: {len(items)}")
        if counts["error"]:
            logger.info(f"  including {counts['error']} retried after an earlier error")
        if counts["unresolved"] or counts["unrecognized"]:
            logger.info(
                f"  not scheduled: {counts['unresolved']} unresolved, {counts['unrecognized']} unrecognized manifests"
            )
        if items and (dry_run or args.verbose):
            logger.info("\n" + format_work_table(items))

        # Copying
        executor = CopyExecutor(config, state, client)
        results = executor.execute(items, dry_run=dry_run)

        # Summary
        final_counts = status_counts(state)
        logger.info("")
        logger.info("=" * 60)
        mode = "DRY RUN " if dry_run else ""
        logger.info(f"   {mode}MIGRATION SUMMARY")
        logger.info("=" * 60)
        if dry_run:
            logger.info(f"Would copy:      {results['would_copy']}")
        else:
            logger.info(f"Copied:          {results['copied']}")
        logger.info(f"Already present: {results['already_present']}")
        if results["failed"]:
            logger.info(f"Failed:          {results['failed']} (retried on the next run)")
        logger.info(f"Complete overall: {final_counts['complete']}/{len(state)} tracked tags")

        if args.output:
            save_json(args.output, build_report(config, state, final_counts, discovery_results, results, dry_run))

        if dry_run:
            logger.info("")
            logger.info("No changes were made. Run without --dry-run to execute the migration.")

    except StateCorruptionError as e:
        logger.error(str(e))
        sys.exit(1)
    except RateLimitedError as e:
        logger.error(f"Migration stopped: {e.message}")
        logger.info("Re-run the same command later to continue where this run stopped")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("\nMigration interrupted by user")
        logger.info("Re-run the same command to continue from where you left off")
        sys.exit(1)
    except Exception as e:
        logger.error(f"\nMigration failed: {e}")
        log_exception(logger, "Error in migration", exc_info=e)
        sys.exit(1)


if __name__ == "__main__":
    main()
