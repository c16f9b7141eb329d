from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel.ext.asyncio.session import AsyncSession
from adventure95.database import AsyncSessionLocal
from adventure95.crud import crud_game
from adventure95.core.config import settings
import logging

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")

async def prune_abandoned_games_job():
    """
    An async job function wrapper to be called by the scheduler.
    """
    logger.info("Scheduled job: Starting cleanup of abandoned games...")
    db: AsyncSession = AsyncSessionLocal()
    try:
        deleted_count = await crud_game.remove_abandoned_games(
            db,
            abandoned_hours=settings.ABANDONED_GAME_CLEANUP_HOURS
        )
        logger.info(f"Scheduled job: Cleanup finished. Deleted {deleted_count} abandoned games.")
    except Exception as e:
        logger.error(f"Scheduled job failed: {e}")
    finally:
        await db.close()

def setup_scheduler():
    """
    Adds jobs to the scheduler.
    """
    scheduler.add_job(
        prune_abandoned_games_job,
        'interval',
        hours=settings.ABANDONED_GAME_CLEANUP_HOURS,
        id="prune_games_job",
        replace_existing=True
    )
    logger.info("Cleanup job has been added to the scheduler. It will run every %d hours.", settings.ABANDONED_GAME_CLEANUP_HOURS)
