"""
Run the listing acquisition schedules without the HTTP API.
"""

import asyncio
import logging
import sys
import os

# Add current directory to Python path
sys.path.insert(0, str(os.path.dirname(__file__)))

from config import settings
from pipeline import build_pipeline, connect_gateway

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("start_scheduler")


async def start_scheduler_service():
    """Start the scheduler service and keep it running until interrupted"""
    logger.info("=== Starting Scheduler Service ===")

    db = await connect_gateway()
    pipeline = build_pipeline(db)

    try:
        await pipeline.startup()

        status = await pipeline.scheduler.get_status()
        for name, schedule in status["schedules"].items():
            logger.info(f"  {name}: '{schedule['cron']}' next run {schedule['next_fire_time']}")
        logger.info(f"Proxy pool: {status['proxy_pool']['active_proxies']} active proxies")
        logger.info("Scheduler service is running. Press Ctrl+C to stop")

        # Wait indefinitely
        while True:
            await asyncio.sleep(60)

    except asyncio.CancelledError:
        logger.info("Received shutdown signal...")

    finally:
        await pipeline.shutdown()
        logger.info("Scheduler service stopped gracefully")


if __name__ == "__main__":
    try:
        asyncio.run(start_scheduler_service())
    except KeyboardInterrupt:
        pass
