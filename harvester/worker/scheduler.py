"""APScheduler-задачи харвестера."""
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from supabase import Client

from harvester.config import Settings, load_options
from harvester.content_repo import ContentRepository
from harvester.fetch import prune_cache
from harvester.log_sink import prune_logs
from harvester.option_store import OptionStore
from harvester.worker.handlers import discover_site
from harvester.worker.health import check_site_health
from harvester.worker.loop import build_context, drain_chapter_queue, drain_manga_queue

MANGA_JOB_ID = "drain_manga_queue"
CHAPTER_JOB_ID = "drain_chapter_queue"


def queue_trigger(schedule: str) -> tuple[str, dict[str, Any]]:
    """Триггер APScheduler для интервала очередей: minute / hourly / daily."""
    if schedule == "hourly":
        return "interval", {"hours": 1}
    if schedule == "daily":
        return "cron", {"hour": 0, "minute": 0}
    return "interval", {"seconds": 60}


async def run_manga_batch(
    store: OptionStore, repo: ContentRepository, settings: Settings, db: Client | None = None,
) -> None:
    ctx = await build_context(store, repo, settings, db=db)
    await drain_manga_queue(ctx)


async def run_chapter_batch(
    store: OptionStore, repo: ContentRepository, settings: Settings, db: Client | None = None,
) -> None:
    ctx = await build_context(store, repo, settings, db=db)
    await drain_chapter_queue(ctx)


async def discover_sites(
    store: OptionStore, repo: ContentRepository, settings: Settings, db: Client | None = None,
) -> None:
    """Поставить в очередь новые тайтлы с первой страницы списка каждого сайта."""
    ctx = await build_context(store, repo, settings, db=db)
    total = 0
    for site in ctx.options.sites:
        try:
            total += await discover_site(ctx, site)
        except Exception as e:
            logger.error(f"[discover_sites] {site.site_name}: {e}")
    logger.info(f"[discover_sites] Queued {total} new manga tasks")


async def run_health_check(
    store: OptionStore, repo: ContentRepository, settings: Settings, db: Client | None = None,
) -> None:
    ctx = await build_context(store, repo, settings, db=db)
    await check_site_health(ctx)


async def prune_old_logs(db: Client, store: OptionStore, settings: Settings) -> None:
    """Удалить логи старше log_retention_days."""
    options = await load_options(store, settings)
    await prune_logs(db, options.log_retention_days)


async def prune_expired_cache(store: OptionStore) -> None:
    await prune_cache(store)


def reschedule_queues(scheduler: AsyncIOScheduler, schedule: str) -> None:
    """Перенастроить интервал обеих очередей после смены queue_schedule."""
    trigger, trigger_args = queue_trigger(schedule)
    for job_id in (MANGA_JOB_ID, CHAPTER_JOB_ID):
        if scheduler.get_job(job_id) is not None:
            scheduler.reschedule_job(job_id, trigger=trigger, **trigger_args)
    logger.info(f"[scheduler] Queue schedule set to '{schedule}'")


def create_scheduler(
    store: OptionStore,
    repo: ContentRepository,
    settings: Settings,
    db: Client | None = None,
    queue_schedule: str | None = None,
) -> AsyncIOScheduler:
    """Создать и настроить APScheduler."""
    scheduler = AsyncIOScheduler(
        job_defaults={
            # None = job выполнится даже при опоздании event loop
            "misfire_grace_time": None,
            "coalesce": True,
            "max_instances": 1,
        }
    )

    pipeline_kwargs = {"store": store, "repo": repo, "settings": settings, "db": db}
    trigger, trigger_args = queue_trigger(queue_schedule or settings.harvest.queue_schedule)

    # Очереди: по queue_schedule (minute / hourly / daily)
    scheduler.add_job(
        run_manga_batch, trigger, kwargs=pipeline_kwargs, id=MANGA_JOB_ID, **trigger_args,
    )
    scheduler.add_job(
        run_chapter_batch, trigger, kwargs=pipeline_kwargs, id=CHAPTER_JOB_ID, **trigger_args,
    )

    # Каждый час: новые тайтлы со страниц списков
    scheduler.add_job(
        discover_sites,
        "interval",
        hours=1,
        kwargs=pipeline_kwargs,
        id="discover_sites",
    )

    # Ежедневно в 2:00: health-check сайтов
    scheduler.add_job(
        run_health_check,
        "cron",
        hour=2,
        kwargs=pipeline_kwargs,
        id="check_site_health",
    )

    # Каждый час: чистка истёкшего кеша ответов
    scheduler.add_job(
        prune_expired_cache,
        "interval",
        hours=1,
        kwargs={"store": store},
        id="prune_cache",
    )

    # Ежедневно в 3:00: чистка старых логов
    if db is not None:
        scheduler.add_job(
            prune_old_logs,
            "cron",
            hour=3,
            kwargs={"db": db, "store": store, "settings": settings},
            id="prune_logs",
        )

    return scheduler
