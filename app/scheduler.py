from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)


def start_scheduler():
    if not scheduler.running:
        scheduler.start()
        logger.info("[Scheduler] Started")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[Scheduler] Shut down")
