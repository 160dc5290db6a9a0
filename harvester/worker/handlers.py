"""Обработчики задач: стадия тайтлов, стадия глав, discovery и re-scrape."""
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import ValidationError
from supabase import Client

from harvester.config import HarvestOptions, Settings
from harvester.content_repo import ContentRepository
from harvester.exceptions import ContentRepositoryError
from harvester.extraction import (
    parse_chapter_images,
    parse_chapter_list,
    parse_manga_details,
    parse_manga_list,
)
from harvester.fetch import FetchClient
from harvester.imaging import merge_chapter_images
from harvester.models.content import SOURCE_MARKER, ChapterEntry, ContentItem, slugify
from harvester.models.site import SiteConfig, find_site
from harvester.models.task import ChapterTask, MangaTask, TaskOutcome, now_iso
from harvester.option_store import OptionStore, sanitize_error
from harvester.queue_store import QueueStore


@dataclass
class HarvestContext:
    """Всё, что нужно обработчикам на один прогон."""

    store: OptionStore
    repo: ContentRepository
    fetcher: FetchClient
    options: HarvestOptions
    manga_queue: QueueStore[MangaTask]
    chapter_queue: QueueStore[ChapterTask]
    # Для склейки страниц (Supabase Storage); без них склейка пропускается
    db: Client | None = None
    settings: Settings | None = None


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0]
    field = ".".join(str(p) for p in first["loc"]) or "task"
    return f"{field}: {first['msg']}"


def _build_content_item(
    options: HarvestOptions, task: MangaTask, details: dict[str, str],
) -> ContentItem:
    return ContentItem(
        title=task.manga_title,
        post_status=options.post_status,
        comment_status="open" if options.enable_comments else "closed",
        ping_status="open" if options.enable_pingback else "closed",
        meta={
            "source": SOURCE_MARKER,
            "source_id": task.manga_id,
            "link": task.manga_link,
            "site_name": task.site_name,
            "poster": task.cover,
            "alternative": details.get("alternative") or task.alternative,
            "genre": details.get("genre") or task.genre,
            "status": details.get("status") or task.manga_status,
            "details": details,
            "chapters": {},
            "last_updated": now_iso(),
        },
    )


async def _requeue_failed_fetch(ctx: HarvestContext, task: MangaTask) -> None:
    """Fetch не удался: расходуем бюджет ретраев, задача возвращается в очередь."""
    retry_count = task.retry_count + 1
    max_retries = ctx.options.max_retries
    if retry_count < max_retries:
        await ctx.manga_queue.enqueue(
            task.model_copy(update={"retry_count": retry_count, "status": "retrying"})
        )
        logger.info(f"[manga] Requeued '{task.manga_title}' for retry {retry_count}")
        return

    reason = f"Failed to fetch chapters after {max_retries} retries"
    await ctx.manga_queue.enqueue(
        task.model_copy(
            update={"retry_count": retry_count, "status": "error", "error_reason": reason}
        )
    )
    logger.error(f"[manga] '{task.manga_title}' failed after max retries")


async def _requeue_as_error(ctx: HarvestContext, task: MangaTask, reason: str) -> None:
    """Терминальная ошибка без расхода бюджета: задача остаётся видна оператору."""
    await ctx.manga_queue.enqueue(
        task.model_copy(update={"status": "error", "error_reason": reason})
    )
    logger.error(f"[manga] '{task.manga_title}' failed: {reason}")


async def process_manga_task(ctx: HarvestContext, raw: MangaTask | dict[str, Any]) -> TaskOutcome:
    """
    Обработать одну задачу тайтла.
    1. Загрузить страницу тайтла и распарсить список глав
    2. Поставить в очередь главы, которых ещё нет у элемента контента
    3. Создать элемент контента, если набран порог глав, и пропатчить placeholder-id
    """
    try:
        task = raw if isinstance(raw, MangaTask) else MangaTask.model_validate(raw)
    except ValidationError as e:
        logger.error(f"[manga] Invalid task dropped ({_validation_message(e)})")
        return TaskOutcome(error=True)

    site = task.site_config
    logger.debug(f"[manga] Processing '{task.manga_title}' ({task.manga_link})")

    html = await ctx.fetcher.fetch(task.manga_link)
    if html is None:
        await _requeue_failed_fetch(ctx, task)
        return TaskOutcome(error=True)

    chapters = parse_chapter_list(html, site)
    if not chapters:
        await _requeue_as_error(ctx, task, f"No chapters parsed from '{task.manga_link}'")
        return TaskOutcome(error=True)

    if ctx.options.dry_run:
        logger.info(
            f"[manga] Dry run: would queue {len(chapters)} chapters for '{task.manga_title}'"
        )
        return TaskOutcome(chapters_queued=len(chapters))

    item = await ctx.repo.find_by_source(task.site_name, task.manga_id)
    attached = set(item.chapters) if item else set()
    # Пока элемента нет, задачи глав ссылаются на source id тайтла
    owner_id = item.id if item else task.manga_id

    new_tasks = [
        ChapterTask(
            site_name=task.site_name,
            site_config=site,
            manga_id=owner_id,
            manga_source_id=task.manga_id,
            manga_title=task.manga_title,
            chapter_title=chapter.title,
            chapter_link=chapter.link,
            chapter_source_id=chapter.id,
        )
        for chapter in chapters
        if chapter.id not in attached
    ]
    await ctx.chapter_queue.enqueue_many(new_tasks)

    outcome = TaskOutcome(chapters_queued=len(new_tasks))
    threshold = ctx.options.chapter_threshold

    if item is None and len(new_tasks) >= threshold:
        details = parse_manga_details(html, site)
        try:
            item_id = await ctx.repo.create(_build_content_item(ctx.options, task, details))
        except ContentRepositoryError as e:
            await _requeue_as_error(
                ctx, task, f"Failed to create content item: {sanitize_error(str(e))}",
            )
            return TaskOutcome(error=True)

        outcome.items_added = 1
        logger.info(f"[manga] Created content item {item_id} for '{task.manga_title}'")

        patched = await ctx.chapter_queue.update_where(
            lambda t: (
                t.site_name == task.site_name
                and t.manga_source_id == task.manga_id
                and t.is_placeholder
            ),
            lambda t: t.model_copy(update={"manga_id": item_id}),
        )
        logger.debug(f"[manga] Back-patched {patched} chapter tasks → {item_id}")
    elif item is None:
        logger.info(
            f"[manga] Threshold ({threshold}) not met for '{task.manga_title}'; "
            f"{len(new_tasks)} chapters queued"
        )

    return outcome


async def _resolve_owner(ctx: HarvestContext, task: ChapterTask) -> str | None:
    if not task.is_placeholder:
        return task.manga_id
    item = await ctx.repo.find_by_source(task.site_name, task.manga_source_id)
    return item.id if item else None


async def process_chapter_task(
    ctx: HarvestContext, raw: ChapterTask | dict[str, Any],
) -> TaskOutcome:
    """Скачать страницу главы и прикрепить список изображений к элементу контента.

    Сбой не ретраится: задача логируется и отбрасывается.
    """
    try:
        task = raw if isinstance(raw, ChapterTask) else ChapterTask.model_validate(raw)
    except ValidationError as e:
        logger.error(f"[chapter] Invalid task dropped ({_validation_message(e)})")
        return TaskOutcome(error=True)

    owner_id = await _resolve_owner(ctx, task)
    if owner_id is None:
        logger.error(
            f"[chapter] No content item yet for '{task.manga_title}' "
            f"({task.site_name}/{task.manga_source_id}), dropping '{task.chapter_title}'"
        )
        return TaskOutcome(error=True)

    html = await ctx.fetcher.fetch(task.chapter_link)
    if html is None:
        logger.error(f"[chapter] Failed to fetch chapter content for '{task.chapter_title}'")
        return TaskOutcome(error=True)

    images = parse_chapter_images(html, task.site_config)
    if not images:
        logger.error(f"[chapter] No images parsed for chapter '{task.chapter_title}'")
        return TaskOutcome(error=True)

    merged: str | None = None
    if ctx.options.merge_images and ctx.db is not None and ctx.settings is not None:
        merged = await merge_chapter_images(
            ctx.db, ctx.settings, ctx.options, images,
            f"{owner_id}/{task.chapter_source_id}",
        )

    entry = ChapterEntry(
        chapter_name=task.chapter_title,
        chapter_slug=slugify(task.chapter_title),
        chapter_images=images,
        chapter_source_id=task.chapter_source_id,
        merged_image=merged,
    )

    def _attach(current: Any) -> dict:
        chapters = dict(current) if isinstance(current, dict) else {}
        chapters[task.chapter_source_id] = entry.model_dump()
        return chapters

    try:
        await ctx.repo.update_meta(owner_id, "chapters", _attach, {})
        await ctx.repo.set_meta(owner_id, {"last_updated": now_iso()})
    except ContentRepositoryError as e:
        logger.error(f"[chapter] '{task.chapter_title}': {sanitize_error(str(e))}")
        return TaskOutcome(error=True)

    logger.info(
        f"[chapter] Added '{task.chapter_title}' with {len(images)} images to item {owner_id}"
    )
    return TaskOutcome()


async def discover_site(ctx: HarvestContext, site: SiteConfig, page: int = 1) -> int:
    """Загрузить страницу списка тайтлов и поставить новые тайтлы в очередь."""
    url, method, body = site.list_request(page)
    html = await ctx.fetcher.fetch(url, method, body)
    if html is None:
        logger.error(f"[discover] Failed to fetch listing for '{site.site_name}' page {page}")
        return 0

    found = parse_manga_list(html, site)
    queued_ids = {
        t.manga_id for t in await ctx.manga_queue.list_all() if t.site_name == site.site_name
    }

    new_tasks: list[MangaTask] = []
    for item in found:
        if item.id in queued_ids:
            continue
        queued_ids.add(item.id)
        new_tasks.append(MangaTask.from_discovery(site, item.title, item.link, item.cover))

    if not ctx.options.dry_run:
        await ctx.manga_queue.enqueue_many(new_tasks)
    logger.info(
        f"[discover] {site.site_name} page {page}: {len(found)} found, "
        f"{len(new_tasks)} new tasks"
    )
    return len(new_tasks)


async def requeue_content_item(ctx: HarvestContext, item_id: str) -> bool:
    """Re-scrape: собрать задачу тайтла из meta элемента контента и поставить в очередь."""
    item = await ctx.repo.get(item_id)
    if item is None:
        logger.warning(f"[rescrape] Content item {item_id} not found")
        return False

    meta = item.meta
    site = find_site(ctx.options.sites, meta.get("site_name", ""))
    if site is None or not meta.get("source_id") or not meta.get("link"):
        logger.warning(f"[rescrape] Item {item_id} has no known site or source link")
        return False

    task = MangaTask(
        site_name=site.site_name,
        site_config=site,
        manga_id=meta["source_id"],
        manga_title=item.title or "Untitled",
        manga_link=meta["link"],
        cover=meta.get("poster") or "",
        alternative=meta.get("alternative") or "",
        genre=meta.get("genre") or "",
        manga_status=meta.get("status") or "",
    )
    await ctx.manga_queue.enqueue(task)
    logger.info(f"[rescrape] Re-queued content item {item_id} for re-scrape")
    return True
