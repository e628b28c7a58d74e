"""
One-off completion sweep
Run this from the project root: python run_completion_sweep.py [--expire]
"""

import asyncio
import json
import logging
import sys

from booking_engine.database import SessionLocal
from booking_engine.domain.bookings.repository import BookingStore
from booking_engine.worker import build_sweeper

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


async def main(expire: bool) -> dict:
    db = SessionLocal()
    try:
        sweeper = build_sweeper(BookingStore(db))
        result = (await sweeper.run()).as_dict()
        if expire:
            result["expiry"] = await sweeper.expire_stale_pending()
        return result
    finally:
        db.close()


if __name__ == "__main__":
    logger.info("🚀 Starting completion sweep...")
    try:
        summary = asyncio.run(main("--expire" in sys.argv[1:]))
        print(json.dumps(summary, indent=2, default=str))
    except KeyboardInterrupt:
        logger.info("👋 Completion sweep stopped by user")
    except Exception as e:
        logger.error(f"❌ Completion sweep crashed: {e}")
        sys.exit(1)
