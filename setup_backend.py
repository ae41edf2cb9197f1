#!/usr/bin/env python3
"""
Provision the backend for Leadboard: database, collections, attributes and
the customer documents bucket. Safe to re-run; anything that already exists
is reported and skipped, so it also adds attributes missing from older setups.

Needs a server API key (api_key in leadboard.yaml or LEADBOARD_API_KEY).

Usage:
    python setup_backend.py --config leadboard.yaml
"""
import argparse
import logging
import sys

from pkg.leadboard.appwrite import AppwriteHttp
from pkg.leadboard.config import Config
from pkg.leadboard.errors import StoreConflict, StoreError

# Anyone holding the project may read and write; access is gated by the server's API key
OPEN_PERMISSIONS = ['read("any")', 'create("any")', 'update("any")', 'delete("any")']

# (type, key, size, required); size is ignored for non-string attributes
COLUMN_ATTRIBUTES = [
    ("string", "title", 255, True),
    ("integer", "order", None, True),
]

LEAD_ATTRIBUTES = [
    ("string", "title", 255, True),
    ("string", "details", 2000, False),
    ("string", "status", 255, False),
    ("string", "assigned_to", 255, False),
    ("boolean", "is_emergency", None, False),
    ("integer", "order", None, False),
    ("string", "note", 2000, False),
    ("string", "reminder", 500, False),
    ("integer", "reminder_time", None, False),
    ("boolean", "is_completed", None, False),
]

CUSTOMER_ATTRIBUTES = [
    ("string", "name", 255, True),
    ("string", "phone", 50, False),
    ("string", "email", 255, False),
    ("string", "details", 5000, False),
    ("string", "members", 5000, False),         # JSON array of names
    ("string", "passport_file_id", 255, False),
    ("string", "aadhaar_file_id", 255, False),
    ("string", "pan_file_id", 255, False),
    ("string", "assigned_users", 5000, False),  # JSON array of user ids
]


def _create(http: AppwriteHttp, path: str, payload: dict, label: str) -> bool:
    """POST one resource; True if created, False if it already existed."""
    try:
        http.request("POST", path, json=payload)
    except StoreConflict:
        print(f"   ⚠️  {label} already exists")
        return False
    print(f"   ✅ {label} created")
    return True


def create_collection(http: AppwriteHttp, database_id: str, collection_id: str, name: str, attributes) -> None:
    base = f"databases/{database_id}/collections"
    _create(
        http,
        base,
        {"collectionId": collection_id, "name": name, "permissions": OPEN_PERMISSIONS, "documentSecurity": False},
        f'Collection "{collection_id}"',
    )
    for attr_type, key, size, required in attributes:
        payload = {"key": key, "required": required}
        if attr_type == "string":
            payload["size"] = size
        _create(http, f"{base}/{collection_id}/attributes/{attr_type}", payload, f"Attribute {collection_id}.{key}")


def create_bucket(http: AppwriteHttp, cfg: Config) -> None:
    _create(
        http,
        "storage/buckets",
        {
            "bucketId": cfg.documents_bucket_id,
            "name": "Customer Documents",
            "permissions": OPEN_PERMISSIONS,
            "fileSecurity": False,
            "enabled": True,
            "maximumFileSize": cfg.max_file_bytes,
            "allowedFileExtensions": cfg.allowed_file_extensions,
        },
        f'Bucket "{cfg.documents_bucket_id}"',
    )


def setup(cfg: Config, http: AppwriteHttp) -> None:
    print("\n[1/5] Creating database...")
    _create(http, "databases", {"databaseId": cfg.database_id, "name": "CRM Database"},
            f'Database "{cfg.database_id}"')

    print("\n[2/5] Creating columns collection...")
    create_collection(http, cfg.database_id, cfg.columns_collection_id, "Columns", COLUMN_ATTRIBUTES)

    print("\n[3/5] Creating leads collection...")
    create_collection(http, cfg.database_id, cfg.leads_collection_id, "Leads", LEAD_ATTRIBUTES)

    print("\n[4/5] Creating customers collection...")
    create_collection(http, cfg.database_id, cfg.customers_collection_id, "Customers", CUSTOMER_ATTRIBUTES)

    print("\n[5/5] Creating documents bucket...")
    create_bucket(http, cfg)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Provision the Leadboard backend")
    parser.add_argument("--config", help="Path to leadboard.yaml")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [leadboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    cfg = Config.load(args.config)

    print("=" * 60)
    print("Leadboard Backend Setup")
    print("=" * 60)

    if not cfg.project_id or not cfg.api_key:
        print("❌ Missing project_id or api_key (set LEADBOARD_PROJECT_ID / LEADBOARD_API_KEY)")
        return 1

    http = AppwriteHttp.from_config(cfg)
    try:
        setup(cfg, http)
    except StoreError as e:
        print(f"\n❌ Setup failed: {e}")
        return 1

    print("\n" + "=" * 60)
    print("✅ Setup complete")
    print("   Attributes may take a few seconds to become available.")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
