#!/usr/bin/env python3
"""
Database initialization script for the image renamer.

This script:
1. Verifies database connection
2. Creates the document tables (image records, projects, taxonomies, jobs)
3. Optionally displays connection info for debugging

Usage:
    python init_db.py [--verbose] [--check-only]
"""

import argparse
import logging
import sys

from db.database import (
    dispose_engine,
    get_db_info,
    init_db,
    verify_connection,
)
from db.models import Base

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main() -> int:
    """Initialize the database."""
    parser = argparse.ArgumentParser(
        description="Initialize the image renamer database"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed output including connection info"
    )
    parser.add_argument(
        "--check-only",
        action="store_true",
        help="Only verify connection, don't create tables"
    )
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        print("Connection Settings:")
        for key, value in get_db_info().items():
            print(f"  {key}: {value}")
        print()

    try:
        print("[1/2] Verifying database connection...")
        if not verify_connection():
            print()
            print("ERROR: Could not connect to database!")
            print("Check DATABASE_URL or the DB_* settings in your .env file.")
            return 1
        print("  -> Connection successful!")

        if args.check_only:
            print("Check-only mode: Skipping table creation.")
            return 0

        print("[2/2] Creating database tables...")
        if not init_db():
            print("ERROR: Failed to create tables! Check the logs above for details.")
            return 1

        print("  -> Tables created successfully!")
        print()
        print("Tables:")
        for table in Base.metadata.sorted_tables:
            print(f"  - {table.name}")
        print()
        print("Set STORE_BACKEND=sql (the default when a database is configured)")
        print("and run: python run_pipeline.py create-project NAME FOLDER")
        return 0
    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
