#!/usr/bin/env python3

import argparse
import logging
import os
import sys

from aggregation import validator_statistics
from apiconfig import APIConfig
from beacon_api import BeaconClient
from csv_parser import CSVParseError, parse_csv
from database_config import Database
from sync import SyncManager, SyncTarget
from validator_db import IngestionError, ingest_exit_batch, ingest_records

logger = logging.getLogger(__name__)


def load_files(db, csv_files, exit_batch=False, provider=None):
    """
    Loads each CSV file, skipping files that are missing or hold no data.

    :return: The number of files that were loaded
    """
    loaded = 0
    for csv_file in csv_files:
        if not os.path.exists(csv_file):
            logger.warning("CSV file not found: %s, skipping", csv_file)
            continue

        try:
            validators = parse_csv(csv_file)
        except CSVParseError as e:
            logger.error("Error parsing CSV %s: %s", csv_file, e)
            continue

        if not validators:
            logger.warning("No valid data found in %s", csv_file)
            continue

        if provider:
            for validator in validators:
                validator["provider"] = provider

        try:
            if exit_batch:
                result = ingest_exit_batch(db, os.path.basename(csv_file), validators)
                logger.info("%s: exit batch %d with %d validators", csv_file, result.batch_id, result.inserted)
            else:
                result = ingest_records(db, validators)
                logger.info(
                    "%s: %d validators (%d inserted, %d updated)",
                    csv_file,
                    result.total,
                    result.inserted,
                    result.updated,
                )
        except IngestionError as e:
            logger.error("Error loading %s: %s", csv_file, e)
            continue

        loaded += 1
    return loaded


def print_statistics(db, providers):
    stats = validator_statistics(db, providers)

    print("\n=== Database Statistics ===")
    for provider, counts in stats["by_provider"].items():
        print(
            f"{provider}: {counts['total']} validators "
            f"(active {counts['active']}, exit_queue {counts['exit_queue']}, inactive {counts['inactive']})"
        )
    print(f"Total: {stats['totals']['total']} validators")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Load validator CSV files into the tracker database")
    parser.add_argument("csv_files", nargs="+", help="CSV or TSV files to load")
    parser.add_argument("--db-path", help="path to sqlite database file (defaults to config)")
    parser.add_argument(
        "--exit", dest="exit_batch", action="store_true", help="load each file as an exit batch"
    )
    parser.add_argument("--provider", help="provider for every row, overriding the file contents")
    parser.add_argument(
        "--sync", action="store_true", help="sync statuses with the beacon node after loading"
    )
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    args = parse_args(argv)
    cfg = APIConfig()

    db = Database.sqlite(args.db_path) if args.db_path else Database.from_config(cfg)
    try:
        db.create_all()
        loaded = load_files(db, args.csv_files, exit_batch=args.exit_batch, provider=args.provider)
        if loaded == 0:
            logger.error("No CSV file could be loaded")
            return 1

        if args.sync:
            target = SyncTarget.EXIT_VALIDATORS if args.exit_batch else SyncTarget.VALIDATORS
            sync_manager = SyncManager.from_config(db, BeaconClient.from_config(cfg), cfg)
            job = sync_manager.start(target, background=False)
            logger.info("Sync %s %s: %d rows updated", job.id, job.state, job.records_updated)

        print_statistics(db, cfg.providers())
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
