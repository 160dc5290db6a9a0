"""Батч-драйверы очередей: drain → параллельная обработка → отчёт."""
import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger
from supabase import Client

from harvester.config import Settings, load_options
from harvester.content_repo import ContentRepository
from harvester.fetch import ClientFactory, FetchClient, Sleep
from harvester.models.task import RunReport, TaskOutcome, now_iso
from harvester.notifier import EmailNotifier
from harvester.option_store import OptionStore, sanitize_error
from harvester.queue_store import chapter_queue, manga_queue
from harvester.worker.handlers import HarvestContext, process_chapter_task, process_manga_task

LAST_REPORT_KEY = "last_report"
LAST_RUN_KEY = "last_run"
LAST_CHAPTER_REPORT_KEY = "last_chapter_report"

# Задачи в этих статусах остаются в очереди до действия оператора
_PARKED_STATUSES = ("paused", "error")

Handler = Callable[[HarvestContext, Any], Awaitable[TaskOutcome]]
CrashHandler = Callable[[HarvestContext, Any, Exception], Awaitable[None]]


def _is_runnable(raw: dict) -> bool:
    return raw.get("status") not in _PARKED_STATUSES


async def build_context(
    store: OptionStore,
    repo: ContentRepository,
    settings: Settings,
    db: Client | None = None,
    client_factory: ClientFactory | None = None,
    sleep: Sleep = asyncio.sleep,
) -> HarvestContext:
    """Прочитать актуальные настройки и собрать контекст на один прогон."""
    options = await load_options(store, settings)
    fetcher = FetchClient(
        store,
        options,
        client_factory=client_factory,
        sleep=sleep,
        notifier=EmailNotifier(options),
    )
    return HarvestContext(
        store=store,
        repo=repo,
        fetcher=fetcher,
        options=options,
        manga_queue=manga_queue(store),
        chapter_queue=chapter_queue(store),
        db=db,
        settings=settings,
    )


async def _run_batch(
    ctx: HarvestContext,
    rows: list[dict],
    handler: Handler,
    label: str,
    on_crash: CrashHandler | None = None,
) -> RunReport:
    """Обработать задачи параллельно (не больше parallel_threads одновременно).

    on_crash вызывается для задачи, обработчик которой упал с исключением.
    """
    semaphore = asyncio.Semaphore(ctx.options.parallel_threads)

    async def _guarded(raw: dict) -> TaskOutcome:
        async with semaphore:
            try:
                return await handler(ctx, raw)
            except Exception as e:
                # Ошибка одной задачи не должна ронять остальные
                logger.exception(f"[{label}] Unhandled error in task: {e}")
                if on_crash is not None:
                    try:
                        await on_crash(ctx, raw, e)
                    except Exception as park_error:
                        logger.exception(f"[{label}] Failed to park crashed task: {park_error}")
                return TaskOutcome(error=True)

    outcomes = await asyncio.gather(*(_guarded(r) for r in rows))
    report = RunReport(timestamp=now_iso())
    for outcome in outcomes:
        report.add(outcome)
    return report


async def _park_crashed_manga(ctx: HarvestContext, raw: Any, error: Exception) -> None:
    """Упавшая задача тайтла возвращается в очередь со статусом error."""
    if not isinstance(raw, dict):
        return
    reason = sanitize_error(f"Unhandled error: {error}")
    await ctx.manga_queue.enqueue_raw({**raw, "status": "error", "error_reason": reason})


async def drain_manga_queue(ctx: HarvestContext) -> RunReport | None:
    """Один прогон очереди тайтлов. None, если очередь на паузе."""
    if ctx.options.manga_paused:
        logger.info("[manga_queue] Processing paused")
        return None

    rows = await ctx.manga_queue.drain_raw(ctx.options.parallel_threads, _is_runnable)
    if not rows:
        logger.debug("[manga_queue] Queue is empty")

    report = await _run_batch(
        ctx, rows, process_manga_task, "manga_queue", on_crash=_park_crashed_manga,
    )
    await ctx.store.set(LAST_REPORT_KEY, report.model_dump())
    await ctx.store.set(LAST_RUN_KEY, report.timestamp)
    logger.info(
        f"[manga_queue] Processed {report.processed} tasks: {report.items_added} added, "
        f"{report.chapters_queued} chapters queued, {report.errors} errors"
    )
    return report


async def drain_chapter_queue(ctx: HarvestContext) -> RunReport | None:
    """Один прогон очереди глав. Упавшие задачи не возвращаются в очередь."""
    if ctx.options.chapter_paused:
        logger.info("[chapter_queue] Processing paused")
        return None

    rows = await ctx.chapter_queue.drain_raw(ctx.options.parallel_threads, _is_runnable)
    if not rows:
        logger.debug("[chapter_queue] Queue is empty")

    report = await _run_batch(ctx, rows, process_chapter_task, "chapter_queue")
    await ctx.store.set(LAST_CHAPTER_REPORT_KEY, report.model_dump())
    logger.info(
        f"[chapter_queue] Processed {report.processed} tasks, {report.errors} errors"
    )
    return report
