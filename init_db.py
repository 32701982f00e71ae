import asyncio
import logging
import os
import re
import sys

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from core.database import engine
from models import Base

logger = logging.getLogger("init_db")


def get_schema_from_env() -> str:
    """
    Get the schema name from DATABASE_URL or ENVIRONMENT variable.
    Defaults to 'public' if not set.
    """
    db_url = os.getenv("DATABASE_URL", "")
    match = re.search(r"search_path[=%]3D(\w+)", db_url)
    if match:
        return match.group(1)

    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("dev", "staging", "prod"):
        return env

    return "public"


async def init_models(reset: bool = False) -> bool:
    schema = get_schema_from_env()
    logger.info("Using database schema: %s", schema)

    retries = 5
    while retries > 0:
        try:
            async with engine.begin() as conn:
                if reset:
                    logger.warning("Dropping schema '%s' and recreating", schema)
                    await conn.execute(text(f"DROP SCHEMA IF EXISTS {schema} CASCADE"))

                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
                await conn.execute(text(f"SET search_path TO {schema}"))

                logger.info("Creating users, conversations and audit_logs tables in '%s'", schema)
                await conn.run_sync(Base.metadata.create_all)

            logger.info("Database initialization complete for schema '%s'", schema)
            return True
        except OperationalError as e:
            logger.warning("Database not ready yet (%s), retrying in 2 seconds", e)
            retries -= 1
            await asyncio.sleep(2)

    logger.error("Could not connect to database after retries")
    return False


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    reset = "--reset" in sys.argv
    ok = asyncio.run(init_models(reset=reset))
    sys.exit(0 if ok else 1)
