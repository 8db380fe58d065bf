#!/usr/bin/env python3
"""
Create the slot ledger tables in PostgreSQL.

Run with: python scripts/init_ledger_schema.py --print   (show DDL only)
Then:     python scripts/init_ledger_schema.py           (apply to DATABASE_URL)
"""
import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from careslot.config import get_settings
from careslot.database import close_db_pool, init_db_pool
from careslot.services.postgres_ledger import LEDGER_SCHEMA_SQL, PostgresSlotLedger

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def apply_schema() -> None:
    settings = get_settings()
    pool = await init_db_pool(settings)
    try:
        ledger = PostgresSlotLedger(pool, schema=settings.LEDGER_SCHEMA, isolation=settings.LEDGER_ISOLATION)
        await ledger.create_schema()
    finally:
        await close_db_pool()


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Create slot ledger tables")
    parser.add_argument("--print", dest="print_only", action="store_true", help="print the DDL and exit")
    args = parser.parse_args()

    if args.print_only:
        print(LEDGER_SCHEMA_SQL.format(schema=get_settings().LEDGER_SCHEMA))
        return 0

    try:
        asyncio.run(apply_schema())
    except ValueError as e:
        logger.error(str(e))
        return 1
    logger.info("Ledger schema applied")
    return 0


if __name__ == "__main__":
    sys.exit(main())
