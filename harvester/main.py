"""Точка входа харвестера — инициализация и запуск API + планировщика."""
import asyncio
import sys

import uvicorn
from loguru import logger
from supabase import create_client

from harvester.api.app import create_app
from harvester.config import HarvestOptions, load_options, load_settings, seed_default_sites
from harvester.content_repo import SupabaseContentRepository
from harvester.log_sink import create_supabase_sink, make_level_filter
from harvester.option_store import SupabaseOptionStore
from harvester.worker.scheduler import create_scheduler


async def main() -> None:
    """Инициализация и запуск API + планировщика очередей."""
    settings = load_settings()

    # Логирование
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    if settings.log_level == "DEBUG":
        logger.add("logs/harvester.log", rotation="100 MB", retention="7 days")

    logger.info("Starting manga harvester")

    # Supabase
    db = create_client(settings.supabase_url, settings.supabase_service_key.get_secret_value())
    store = SupabaseOptionStore(db)
    repo = SupabaseContentRepository(db)

    if not settings.harvest.sites:
        await seed_default_sites(store)
    options = await load_options(store, settings)
    # Флаг debug читается заново каждым прогоном очереди
    current: dict[str, HarvestOptions] = {"options": options}

    # Персистить логи в Supabase: WARNING+ всегда, INFO в debug-режиме
    logger.add(
        create_supabase_sink(db),
        level="INFO",
        filter=make_level_filter(lambda: current["options"].debug_mode),
        enqueue=True,
        serialize=False,
    )

    scheduler = create_scheduler(store, repo, settings, db=db, queue_schedule=options.queue_schedule)

    async def refresh_options() -> None:
        current["options"] = await load_options(store, settings)

    scheduler.add_job(refresh_options, "interval", minutes=1, id="refresh_options")

    # FastAPI
    app = create_app(store, repo, settings, db=db, scheduler=scheduler)
    config = uvicorn.Config(app, host="0.0.0.0", port=settings.api_port, log_level="warning")
    server = uvicorn.Server(config)

    scheduler.start()
    logger.info(f"Scheduler started (queue schedule: {options.queue_schedule})")
    logger.info(f"API server starting on port {settings.api_port}")

    # uvicorn сам обрабатывает SIGINT/SIGTERM
    try:
        await server.serve()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("Harvester stopped gracefully")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
