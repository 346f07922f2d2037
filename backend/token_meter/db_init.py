"""
Token Meter Database Initialization Script

Rules:
1. Environment Guard - requires TOKEN_METER_INIT_CONFIRM=YES when APP_ENV=production
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy ledger creation - ledgers are created on first use, not here
5. Safe index creation - handles "index already exists" gracefully
6. Dry-run mode - --dry-run prints what it would do
7. Version stamp - tracks init version

Usage:
    CLI one-off: token-meter-db-init
    With dry-run: token-meter-db-init --dry-run
    In production: APP_ENV=production TOKEN_METER_INIT_CONFIRM=YES token-meter-db-init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from .config import LEDGER_COLLECTION, META_COLLECTION

logger = logging.getLogger(__name__)

# Version tracking
INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    LEDGER_COLLECTION,
    META_COLLECTION,  # For version tracking
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    (LEDGER_COLLECTION, [("tenant", 1)], {"unique": True, "name": "idx_tenant_unique"}),
    (LEDGER_COLLECTION, [("usage_entries.reservation_id", 1)], {"name": "idx_reservation_id"}),
    (LEDGER_COLLECTION, [("purchases.external_charge_id", 1)], {"sparse": True, "name": "idx_external_charge_id"}),
    (LEDGER_COLLECTION, [("updated_at", -1)], {"name": "idx_updated_at"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("TOKEN_METER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: TOKEN_METER_INIT_CONFIRM=YES\n"
                f"Current value: TOKEN_METER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "token_meter_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def apply_schema(db, dry_run: bool = False) -> List[str]:
    """Create collections, indexes and the version stamp. Returns the log lines."""
    results = []
    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))
    results.append(await update_version_stamp(db, dry_run))
    return results


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from .database import ROOT_DIR
    from dotenv import load_dotenv

    load_dotenv(ROOT_DIR / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        client.close()
        sys.exit(1)

    try:
        for line in await apply_schema(db, dry_run):
            logger.info(line)
    finally:
        client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Token meter DB init completed")
    logger.info("=" * 50)


def main():
    """Console entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Token Meter Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    token-meter-db-init

    # Dry run (no changes)
    token-meter-db-init --dry-run

    # Production
    APP_ENV=production TOKEN_METER_INIT_CONFIRM=YES token-meter-db-init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
