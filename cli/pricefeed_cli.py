#!/usr/bin/env python3
"""
Price Feed Ingestion - CLI Entry Point

Daily bulk price ingestion with:
- Streaming JSON-to-CSV conversion with a stall watchdog
- Transactional staging load and consistency gate
- Set-based merge into current prices and per-day history
- Batched history retention
- Structured JSON logging
"""
import argparse
import logging
import sys
from datetime import date
from typing import Any, List, Optional

from common.config.settings import PipelineConfig
from common.errors import PriceFeedError
from core.orchestrator.daily_run import DailyRunner
from core.stages.consistency_gate import ConsistencyGate
from core.stages.converter import FeedConverter
from core.stages.merge_engine import MergeEngine
from core.stages.retention_sweeper import RetentionSweeper
from core.stages.stage_loader import StageLoader
from feed.clients.bulk_data_client import BulkDataClient
from feed.utils.structured_logging import get_logger
from storage.postgres.store import PostgresPriceStore

DB_COMMANDS = ('stage', 'gate', 'merge', 'retention', 'run', 'init-db')


def _price_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from None


def parse_args(argv: Optional[List[str]] = None):
    """Parse CLI arguments."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--dry-run',
        action='store_true',
        help='Compute and report without writing to the database'
    )
    common.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARN', 'ERROR'],
        default='INFO',
        help='Set logging level (default: INFO)'
    )
    common.add_argument(
        '--price-day',
        type=_price_day,
        metavar='YYYY-MM-DD',
        help='Target price day (default: today in $PRICEFEED_TIMEZONE)'
    )

    parser = argparse.ArgumentParser(
        prog='pricefeed',
        description='Daily bulk price feed ingestion',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert a local bulk file to CSV
  %(prog)s convert --file default-cards.json.gz --output data/prices.csv

  # Resolve, convert and stage today's feed
  %(prog)s stage

  # Gate and merge (each exits 1 on failure or denial)
  %(prog)s gate && %(prog)s merge

  # Full daily cycle without database writes
  %(prog)s run --dry-run --log-level DEBUG
        """
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('resolve', parents=[common], help='Print the resolved bulk download URL')

    convert = subparsers.add_parser('convert', parents=[common], help='Convert bulk JSON to the staging CSV')
    convert.add_argument('--file', type=str, help='Local bulk JSON file (.json or .json.gz)')
    convert.add_argument('--url', type=str, help='Bulk JSON URL (default: resolve from metadata endpoint)')
    convert.add_argument('--output', type=str, help='CSV path (default: $PRICEFEED_WORK_DIR/daily_prices_<day>.csv)')

    stage = subparsers.add_parser('stage', parents=[common], help='Load the staging table')
    stage.add_argument('--file', type=str, help='Local staging CSV')
    stage.add_argument('--url', type=str, help='Staging CSV URL (.csv or .csv.gz)')

    subparsers.add_parser('gate', parents=[common], help='Run the consistency gate')
    subparsers.add_parser('merge', parents=[common], help='Merge staging into prices and history')
    subparsers.add_parser('retention', parents=[common], help='Delete history older than the retention window')

    run = subparsers.add_parser('run', parents=[common], help='Convert, stage, gate and merge')
    run.add_argument('--file', type=str, help='Local bulk JSON file (.json or .json.gz)')
    run.add_argument('--url', type=str, help='Bulk JSON URL (default: resolve from metadata endpoint)')

    init_db = subparsers.add_parser('init-db', parents=[common], help='Create pipeline tables')
    init_db.add_argument(
        '--with-entity-table',
        action='store_true',
        help='Also create the price entity table (development databases only)'
    )

    args = parser.parse_args(argv)
    if getattr(args, 'file', None) and getattr(args, 'url', None):
        parser.error('--file and --url are mutually exclusive')
    return args


def cmd_resolve(args, config: PipelineConfig, store, logger: Any) -> int:
    client = BulkDataClient(config.feed)
    try:
        location = client.resolve_download_url()
    finally:
        client.close()
    logger.info("feed_resolved", **location.to_dict())
    return 0


def cmd_convert(args, config: PipelineConfig, store, logger: Any) -> int:
    converter = FeedConverter(config)
    try:
        result = converter.convert_audited(
            store, args.price_day, output_path=args.output, file=args.file, url=args.url, dry_run=args.dry_run,
        )
    finally:
        converter.close()
    logger.info("stage_completed", **result.to_dict())
    return 0


def cmd_stage(args, config: PipelineConfig, store, logger: Any) -> int:
    loader = StageLoader(config, store)
    try:
        result = loader.load(args.price_day, file=args.file, url=args.url, dry_run=args.dry_run)
    finally:
        loader.converter.close()
    logger.info("stage_completed", **result.to_dict())
    return 0


def cmd_gate(args, config: PipelineConfig, store, logger: Any) -> int:
    decision = ConsistencyGate(config, store).evaluate(args.price_day, dry_run=args.dry_run)
    if not decision.allowed:
        logger.error("gate_denied", **decision.to_dict())
        return 1
    logger.info("stage_completed", **decision.to_dict())
    return 0


def cmd_merge(args, config: PipelineConfig, store, logger: Any) -> int:
    result = MergeEngine(config, store).merge(args.price_day, dry_run=args.dry_run)
    logger.info("stage_skipped" if result.skipped else "stage_completed", **result.to_dict())
    return 0


def cmd_retention(args, config: PipelineConfig, store, logger: Any) -> int:
    result = RetentionSweeper(config, store).sweep(args.price_day, dry_run=args.dry_run)
    logger.info("stage_skipped" if result.skipped else "stage_completed", **result.to_dict())
    return 0


def cmd_run(args, config: PipelineConfig, store, logger: Any) -> int:
    runner = DailyRunner(config, store)
    try:
        report = runner.run(args.price_day, file=args.file, url=args.url, dry_run=args.dry_run)
    finally:
        runner.converter.close()
    if not report.ok:
        logger.error("run_failed", **report.to_dict())
        return 1
    logger.info("run_completed", **report.to_dict())
    return 0


def cmd_init_db(args, config: PipelineConfig, store, logger: Any) -> int:
    if args.dry_run:
        logger.info("schema_dry_run", with_entity_table=args.with_entity_table)
        return 0
    store.initialize_schema(with_entity_table=args.with_entity_table)
    logger.info("schema_initialized", with_entity_table=args.with_entity_table)
    return 0


COMMANDS = {
    'resolve': cmd_resolve,
    'convert': cmd_convert,
    'stage': cmd_stage,
    'gate': cmd_gate,
    'merge': cmd_merge,
    'retention': cmd_retention,
    'run': cmd_run,
    'init-db': cmd_init_db,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level)
    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    logger = get_logger('pricefeed', level=log_level).bind(stage=args.command)

    store = None
    try:
        config = PipelineConfig.default()
        args.price_day = args.price_day or config.today()
        logger.info("stage_started", price_day=args.price_day, dry_run=args.dry_run)

        # convert runs without a database, but is audited when one is configured
        if args.command in DB_COMMANDS or (args.command == 'convert' and config.database.url and not args.dry_run):
            store = PostgresPriceStore(config.database, config.entity)

        return COMMANDS[args.command](args, config, store, logger)
    except PriceFeedError as e:
        logger.error("stage_failed", error_kind=e.kind, error=e.audit_message())
        return 1
    except Exception as e:
        logger.error("stage_exception", error_kind=type(e).__name__, error=str(e))
        return 1
    finally:
        if store is not None:
            store.close()


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        sys.exit(1)
