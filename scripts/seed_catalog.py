#!/usr/bin/env python3
"""
Seed Catalog Script

Upserts the static feature catalog and plan feature grants into DATABASE_URL.
Safe to rerun: existing rows are updated in place.

Usage:
    python scripts/seed_catalog.py
"""

import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from metering.db.session import close_engines, get_write_session_factory
from metering.observability import get_logger, setup_logging
from metering.registry.catalog import seed_catalog

logger = get_logger(__name__)


async def main() -> None:
    setup_logging()
    try:
        async with get_write_session_factory()() as session:
            features, plan_features = await seed_catalog(session)
        logger.info("seed_complete", features=features, plan_features=plan_features)
    finally:
        await close_engines()


if __name__ == "__main__":
    asyncio.run(main())
