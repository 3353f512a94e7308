#!/usr/bin/env python
"""
Initialize Database Script
Creates the database schema and optionally stores SFTP credentials and
Mautic tenants.
"""

import argparse
import getpass
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from dashboard_sync.utils.logger import setup_logging, get_logger
from dashboard_sync.utils.encryption import encrypt
from dashboard_sync.utils.helpers import utcnow
from dashboard_sync.database.connection import get_db, get_session
from dashboard_sync.database.models import Base, Client, MauticTenant, SftpCredential
from dashboard_sync.mautic_client import normalize_url


def add_sftp_credentials(args) -> None:
    """Store a new SFTP credential row; the newest row is the one used."""
    password = args.sftp_password or getpass.getpass("SFTP password: ")
    with get_session() as session:
        session.add(SftpCredential(
            host=args.sftp_host,
            port=args.sftp_port,
            username=args.sftp_user,
            password=password,
            remote_path=args.sftp_path,
            created_at=utcnow(),
            updated_at=utcnow()
        ))
    print(f"SFTP credentials stored for {args.sftp_user}@{args.sftp_host}")


def add_tenant(args) -> None:
    """Create a Mautic tenant and its dashboard client."""
    password = args.tenant_password or getpass.getpass("Mautic API password: ")
    with get_session() as session:
        client = Client(name=args.tenant_name, client_type='mautic', is_active=True)
        session.add(client)
        session.flush()

        session.add(MauticTenant(
            name=args.tenant_name,
            mautic_url=normalize_url(args.tenant_url),
            username=args.tenant_user,
            password=encrypt(password),
            report_id=args.report_id,
            is_active=True,
            client_id=client.id
        ))
    print(f"Tenant '{args.tenant_name}' created")


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Initialize database schema')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing tables before creating (DANGEROUS)'
    )
    parser.add_argument('--sftp-host', help='Store SFTP credentials for this host')
    parser.add_argument('--sftp-port', type=int, default=22)
    parser.add_argument('--sftp-user')
    parser.add_argument('--sftp-password')
    parser.add_argument('--sftp-path', default='/')
    parser.add_argument('--tenant-name', help='Create a Mautic tenant with this name')
    parser.add_argument('--tenant-url')
    parser.add_argument('--tenant-user')
    parser.add_argument('--tenant-password')
    parser.add_argument('--report-id')

    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    try:
        logger.info("Initializing database")

        db = get_db()
        engine = db.engine

        if not db.check_connection():
            print("Error: Cannot connect to database")
            sys.exit(1)

        print("Database connection successful")

        if args.drop:
            confirm = input("Are you sure you want to drop all tables? (yes/no): ")
            if confirm.lower() == 'yes':
                logger.warning("Dropping all tables")
                Base.metadata.drop_all(engine)
                print("All tables dropped")
            else:
                print("Cancelled")
                sys.exit(0)

        logger.info("Creating tables")
        Base.metadata.create_all(engine)

        print(f"\n{'='*50}")
        print("Database Initialized Successfully")
        print(f"{'='*50}")

        tables = inspect(engine).get_table_names()
        print(f"\nTables created: {len(tables)}")
        for table in sorted(tables):
            print(f"  - {table}")

        if args.sftp_host:
            if not args.sftp_user:
                parser.error('--sftp-user is required with --sftp-host')
            add_sftp_credentials(args)

        if args.tenant_name:
            if not (args.tenant_url and args.tenant_user):
                parser.error('--tenant-url and --tenant-user are required with --tenant-name')
            add_tenant(args)

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
