import asyncio, logging, random
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from bidengine.settings import Settings, configure_logging, load_settings
from bidengine.service import Backend, build_backend

log = logging.getLogger("bidengine.scheduler")

SWEEP_JOB_ID = "sweep-expired-items"


async def run_sweep(backend: Backend) -> int:
    try:
        return await asyncio.to_thread(backend.sweep_expired_items)
    except SQLAlchemyError:
        # next interval retries; the sweep is idempotent
        log.exception("Expiration sweep failed")
        return 0


def build_scheduler(backend: Backend, settings: Settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    cfg = settings.sweeper

    async def wrapper():
        await run_sweep(backend)

    # random initial delay so several workers don't sweep in lockstep
    delay = random.uniform(0, min(cfg.interval_seconds, 5))
    scheduler.add_job(
        wrapper,
        "interval",
        seconds=cfg.interval_seconds,
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=delay),
        id=SWEEP_JOB_ID,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=cfg.misfire_grace_seconds,
    )
    return scheduler


async def _run_forever(settings: Settings):
    backend = build_backend(settings)
    scheduler = build_scheduler(backend, settings)
    scheduler.start()
    log.info("Sweeper started, every %ss", settings.sweeper.interval_seconds)
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


def main(settings: Settings | None = None):
    settings = settings or load_settings()
    configure_logging(settings)
    try:
        asyncio.run(_run_forever(settings))
    except (KeyboardInterrupt, SystemExit):
        pass
