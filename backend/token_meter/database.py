"""
Database connection and configuration

Fails fast with clear error messages if required variables are missing.
The client is created on first use so importing the package needs no database.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

_client = None


def validate_required_env_vars():
    """Fail fast when MONGO_URL or DB_NAME is unset."""
    required_vars = {
        "MONGO_URL": "MongoDB connection string",
        "DB_NAME": "ledger database name",
    }
    missing = [f"{var} ({hint})" for var, hint in required_vars.items() if not os.environ.get(var)]
    if missing:
        raise ValueError(f"token-meter database is not configured, set: {', '.join(missing)}")


def get_client() -> AsyncIOMotorClient:
    """Shared MongoDB client with connection pool configuration."""
    global _client
    if _client is None:
        validate_required_env_vars()
        try:
            _client = AsyncIOMotorClient(
                os.environ['MONGO_URL'],
                maxPoolSize=50,
                minPoolSize=10,
                connectTimeoutMS=5000,
                serverSelectionTimeoutMS=5000,
                retryWrites=True
            )
        except Exception as e:
            raise ValueError(f"Failed to create MongoDB client: {e}")
    return _client


def get_database():
    return get_client()[os.environ['DB_NAME']]


async def check_db_connection():
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        client = get_client()
        await client.admin.command('ping')

        db_name = os.environ['DB_NAME']
        await client[db_name].list_collection_names()

        logger.info(f"Database connected successfully: {db_name}")
        return True, None

    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
