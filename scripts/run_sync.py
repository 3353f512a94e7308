#!/usr/bin/env python
"""
Run Sync Script
Command-line script for running sync operations outside the web service.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dashboard_sync.utils.logger import setup_logging, get_logger
from dashboard_sync.utils.helpers import parse_date_arg
from dashboard_sync.orchestrator import SyncOrchestrator


def main():
    """Main entry point for sync script."""
    parser = argparse.ArgumentParser(description='Run reporting dashboard sync jobs')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('ingestion', help='Download and import voicemail files')

    full = subparsers.add_parser('full', help='Sync every active Mautic tenant')
    full.add_argument('--force-full', action='store_true', help='Ignore last sync timestamps')

    tenant = subparsers.add_parser('tenant', help='Sync one Mautic tenant')
    tenant.add_argument('tenant_id', type=int)
    tenant.add_argument('--force-full', action='store_true', help='Ignore the last sync timestamp')

    backfill = subparsers.add_parser('backfill', help='Month-by-month historical report backfill')
    backfill.add_argument('--tenant-id', type=int, help='Tenant to backfill (default: all active)')
    backfill.add_argument('--from-date', help='YYYY-MM-DD')
    backfill.add_argument('--to-date', help='YYYY-MM-DD')
    backfill.add_argument('--page-limit', type=int)

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Print the full result payload'
    )

    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    orchestrator = SyncOrchestrator()

    try:
        logger.info(f"Starting {args.command} sync from command line")

        if args.command == 'ingestion':
            result = orchestrator.run_ingestion(run_type='manual')
        elif args.command == 'full':
            result = orchestrator.run_full_sync(run_type='manual', force_full=args.force_full)
        elif args.command == 'tenant':
            result = orchestrator.run_tenant_sync(args.tenant_id, run_type='manual', force_full=args.force_full)
        else:
            result = orchestrator.run_backfill(
                tenant_id=args.tenant_id,
                from_date=parse_date_arg(args.from_date),
                to_date=parse_date_arg(args.to_date),
                page_limit=args.page_limit
            )

        print(f"\n{'='*50}")
        print(f"Sync Run Complete: {args.command}")
        print(f"{'='*50}")
        print(f"Success: {result.success}")
        print(f"Message: {result.message}")

        if args.verbose and result.data:
            print(json.dumps(result.data, indent=2, default=str))

        if not result.success:
            if result.error:
                print(f"Error: {result.error}")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Sync failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        orchestrator.shutdown(wait=False)


if __name__ == '__main__':
    main()
