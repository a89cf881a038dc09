"""
MongoDB-based background worker for ExamFlow
Drains the submission queue in batches without blocking the main API
"""

import argparse
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from motor.motor_asyncio import AsyncIOMotorClient

from examflow.config.settings import settings
from examflow.services import ExamPipeline
from examflow.utils import utcnow

# Setup logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('task_worker')

HOUSEKEEPING_INTERVAL_SECONDS = 600


async def run_once(pipeline: ExamPipeline, batch_size: Optional[int] = None):
    """Run a single batch cycle and return its summary."""
    summary = await pipeline.processor.run_cycle(batch_size=batch_size)
    if summary.processed:
        logger.info(
            f"Cycle {summary.cron_job_id}: {summary.succeeded}/{summary.processed} succeeded "
            f"in {summary.processing_time_ms}ms"
        )
    return summary


async def worker_loop(pipeline: ExamPipeline, interval: float, batch_size: Optional[int] = None):
    """Main worker loop - runs a batch cycle every ``interval`` seconds"""
    logger.info("Submission worker started. Polling the queue...")

    # Track when we last ran housekeeping
    last_housekeeping = None

    while True:
        try:
            now = utcnow()
            if last_housekeeping is None or (now - last_housekeeping).total_seconds() > HOUSEKEEPING_INTERVAL_SECONDS:
                report = await pipeline.housekeeping()
                last_housekeeping = now
                recovered = report["recovered"]
                if recovered["retrying"] or recovered["failed"] or report["purged"]:
                    logger.warning(
                        f"⚠️  Housekeeping: {recovered['retrying']} stale leases released, "
                        f"{recovered['failed']} failed, {report['purged']} purged"
                    )

            summary = await run_once(pipeline, batch_size)
            if not summary.processed:
                await asyncio.sleep(interval)

        except Exception as e:
            logger.error(f"Worker loop error: {str(e)}", exc_info=True)
            await asyncio.sleep(interval)


async def main(argv=None):
    """Entry point"""
    parser = argparse.ArgumentParser(description="ExamFlow submission queue worker")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--interval", type=float, default=settings.WORKER_POLL_SECONDS,
                        help="Seconds to wait between cycles when the queue is empty")
    parser.add_argument("--batch-size", type=int, default=None,
                        help="Override the batch size for every cycle")
    args = parser.parse_args(argv)

    logger.info("="*50)
    logger.info("ExamFlow Submission Worker")
    logger.info(f"MongoDB: {settings.DATABASE_NAME}")
    logger.info("="*50)

    client = AsyncIOMotorClient(settings.MONGODB_URL)
    pipeline = ExamPipeline(client[settings.DATABASE_NAME], settings)
    await pipeline.start()

    try:
        if args.once:
            await pipeline.housekeeping()
            await run_once(pipeline, args.batch_size)
        else:
            await worker_loop(pipeline, args.interval, args.batch_size)
    finally:
        await pipeline.stop()
        client.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
