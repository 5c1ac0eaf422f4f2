#!/usr/bin/env python3
import argparse
import logging
import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

sys.path.insert(0, os.path.join(ROOT_DIR, "shipyard-api"))

from management import reconcile_project_owners  # noqa: E402
from storage import DynamoObjectStore, ObjectStore, build_storage  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Grant Project creators membership in their projects")
    parser.add_argument("--table", help="DynamoDB table name (defaults to SHIPYARD_DDB_TABLE)")
    parser.add_argument("--db-path", help="SQLite database path (defaults to SHIPYARD_DB_PATH)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    if args.table:
        storage = DynamoObjectStore(args.table)
    elif args.db_path:
        storage = ObjectStore(args.db_path)
    else:
        storage = build_storage()

    granted = reconcile_project_owners(storage)
    for project, subject in granted:
        print(f"granted {subject} on project {project}")
    print(f"{len(granted)} membership(s) granted")


if __name__ == "__main__":
    main()
