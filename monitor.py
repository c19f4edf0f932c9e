"""
Background refresh script using APScheduler.
Keeps price history and quotes of tracked assets current and fails
market information left PENDING after a crash.
"""

import asyncio
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from config import get_settings
from context import AppContext
from services.common import market_today
from services.historical_sync import SyncRequest, SyncStatus

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Days of history re-synced on each daily run
SYNC_LOOKBACK_DAYS = 10


async def sync_tracked_history(ctx: AppContext, lookback_days: int = SYNC_LOOKBACK_DAYS):
    """Re-sync the last few days of candles for every tracked asset."""
    assets = await asyncio.to_thread(ctx.assets.get_all)
    if not assets:
        logger.info("No tracked assets to sync")
        return []

    requests = []
    for asset in assets:
        end = market_today(asset.market)
        requests.append(SyncRequest(
            symbol=asset.symbol,
            from_date=end - timedelta(days=lookback_days),
            to_date=end,
            market=asset.market,
            asset_type=asset.asset_type,
        ))

    logger.info("=" * 60)
    logger.info(f"Syncing history for {len(requests)} tracked assets")
    results = await ctx.synchronizer.sync_many(requests)
    failed = [r.symbol for r in results if r.status == SyncStatus.FAILED]
    logger.info(f"History sync complete. Failed: {', '.join(failed) if failed else 'none'}")
    logger.info("=" * 60)
    return results


async def refresh_tracked_prices(ctx: AppContext):
    assets = await asyncio.to_thread(ctx.assets.get_all)
    return await ctx.market_data.refresh_prices([(a.symbol, a.market) for a in assets])


async def sweep_stale_pending(ctx: AppContext) -> int:
    return await ctx.ingestion.fail_stale_pending()


def start_monitor_scheduler(ctx: AppContext) -> AsyncIOScheduler:
    """
    Start the scheduler on the running event loop.
    History syncs after the US close on weekdays, quotes refresh hourly during
    trading hours, and the stale-PENDING sweep runs every few minutes.
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sync_tracked_history,
        trigger=CronTrigger(day_of_week='mon-fri', hour='17', minute='30', timezone='America/New_York'),
        args=[ctx],
        id='history_sync',
        name='Daily History Sync',
        replace_existing=True
    )
    scheduler.add_job(
        refresh_tracked_prices,
        trigger=CronTrigger(day_of_week='mon-fri', hour='9-16', minute='0', timezone='America/New_York'),
        args=[ctx],
        id='price_refresh',
        name='Price Refresh',
        replace_existing=True
    )
    scheduler.add_job(
        sweep_stale_pending,
        trigger=IntervalTrigger(minutes=5),
        args=[ctx],
        id='stale_pending_sweep',
        name='Stale PENDING Sweep',
        replace_existing=True
    )

    scheduler.start()
    logger.info("Monitor scheduler started.")
    return scheduler


async def run_one_time_check(ctx: AppContext):
    """Run every job once (useful for testing)."""
    logger.info("Running one-time refresh...")
    await sweep_stale_pending(ctx)
    await sync_tracked_history(ctx)
    await refresh_tracked_prices(ctx)


async def _serve(ctx: AppContext):
    scheduler = start_monitor_scheduler(ctx)
    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down monitor...")
        scheduler.shutdown()


if __name__ == "__main__":
    import sys

    ctx = AppContext.build(get_settings())

    if len(sys.argv) > 1 and sys.argv[1] == "--once":
        asyncio.run(run_one_time_check(ctx))
    else:
        print("\n" + "=" * 60)
        print("InvestMate Monitor is running...")
        print("Press Ctrl+C to stop.")
        print("=" * 60 + "\n")
        try:
            asyncio.run(_serve(ctx))
        except (KeyboardInterrupt, SystemExit):
            logger.info("Monitor stopped.")
