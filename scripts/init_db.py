"""Database initialization script.

Run this to initialize the quest ledger with schema and the campaign editor's
incentive definitions. Any extra arguments are issued as check-in codes:

    python -m scripts.init_db CODE-1 CODE-2
"""

import asyncio
import sys

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging
from src.quest.catalog import load_incentive_definitions

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main(codes: list[str]):
    """Initialize the database."""
    logger.info("Initializing quest database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    try:
        definitions = load_incentive_definitions(config.campaign_data_path)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load campaigns from {config.campaign_data_path}: {e}")
        sys.exit(1)
    await db.save_incentive_definitions(definitions)

    for definition in await db.list_incentive_definitions():
        logger.info(
            f"- {definition.event_id}/{definition.id}: {definition.type.value} "
            f"({definition.discount_bps} bps, expires {definition.expires_at.isoformat()})"
        )

    for code in codes:
        await db.issue_check_in_code(code)

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
