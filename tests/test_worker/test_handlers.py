"""Тесты обработчиков задач воркера."""
from unittest.mock import AsyncMock

import pytest

from harvester.content_repo import MemoryContentRepository
from harvester.exceptions import ContentRepositoryError
from harvester.models.content import SOURCE_MARKER, ContentItem
from harvester.models.task import ChapterTask, MangaTask, source_id
from harvester.option_store import MemoryOptionStore
from harvester.worker.handlers import (
    discover_site,
    process_chapter_task,
    process_manga_task,
    requeue_content_item,
)
from harvester.worker.loop import drain_chapter_queue, drain_manga_queue
from tests.conftest import (
    BASE_URL,
    FakeSite,
    chapter_images_html,
    chapter_list_html,
    make_context,
    make_site,
    manga_list_html,
)

MANGA_LINK = f"{BASE_URL}/manga/one"
LIST_URL = f"{BASE_URL}/wp-admin/admin-ajax.php"


def _chapters(n: int) -> list[tuple[str, str]]:
    return [(f"Chapter {i}", f"{BASE_URL}/manga/one/ch-{i}") for i in range(1, n + 1)]


def _manga_task(**overrides) -> MangaTask:
    task = MangaTask.from_discovery(make_site(), "One", MANGA_LINK)
    return task.model_copy(update=overrides)


def _chapter_task(manga_id: str, n: int = 1) -> ChapterTask:
    link = f"{BASE_URL}/manga/one/ch-{n}"
    return ChapterTask(
        site_name="Test Site",
        site_config=make_site(),
        manga_id=manga_id,
        manga_source_id=source_id(MANGA_LINK),
        manga_title="One",
        chapter_title=f"Chapter {n}",
        chapter_link=link,
        chapter_source_id=source_id(link),
    )


async def _create_item(repo: MemoryContentRepository, chapters: dict | None = None) -> str:
    return await repo.create(ContentItem(
        title="One",
        meta={
            "source": SOURCE_MARKER,
            "source_id": source_id(MANGA_LINK),
            "site_name": "Test Site",
            "link": MANGA_LINK,
            "chapters": chapters or {},
        },
    ))


class TestProcessMangaTask:
    """Стадия тайтлов: порог, dry run, ретраи."""

    @pytest.mark.asyncio
    async def test_invalid_task_dropped(self, store, repo) -> None:
        ctx = make_context(store=store, repo=repo)
        outcome = await process_manga_task(ctx, {"site_name": "Test Site"})
        assert outcome.error
        assert await ctx.manga_queue.count() == 0

    @pytest.mark.asyncio
    async def test_below_threshold_queues_chapters_only(self, store, repo) -> None:
        fake = FakeSite({MANGA_LINK: chapter_list_html(_chapters(2))})
        ctx = make_context(fake, store, repo, chapter_threshold=3)

        outcome = await process_manga_task(ctx, _manga_task())

        assert outcome.chapters_queued == 2
        assert outcome.items_added == 0
        assert repo.items == {}
        tasks = await ctx.chapter_queue.list_all()
        assert len(tasks) == 2
        assert all(t.is_placeholder for t in tasks)

    @pytest.mark.asyncio
    async def test_threshold_met_creates_item_and_patches_tasks(self, store, repo) -> None:
        fake = FakeSite({
            MANGA_LINK: chapter_list_html(
                _chapters(3), extra='<div class="summary">Long story</div>',
            ),
        })
        ctx = make_context(fake, store, repo, chapter_threshold=3, post_status="draft")

        outcome = await process_manga_task(ctx, _manga_task())

        assert outcome.items_added == 1
        assert outcome.chapters_queued == 3
        [item] = repo.items.values()
        assert item.post_status == "draft"
        assert item.meta["source_id"] == source_id(MANGA_LINK)
        assert item.meta["details"]["description"] == "Long story"
        assert item.meta["chapters"] == {}
        tasks = await ctx.chapter_queue.list_all()
        assert {t.manga_id for t in tasks} == {item.id}

    @pytest.mark.asyncio
    async def test_existing_item_gets_only_new_chapters(self, store, repo) -> None:
        attached_link = f"{BASE_URL}/manga/one/ch-1"
        item_id = await _create_item(repo, {source_id(attached_link): {"chapter_name": "1"}})
        fake = FakeSite({MANGA_LINK: chapter_list_html(_chapters(3))})
        ctx = make_context(fake, store, repo)

        outcome = await process_manga_task(ctx, _manga_task())

        assert outcome.chapters_queued == 2
        assert outcome.items_added == 0
        tasks = await ctx.chapter_queue.list_all()
        assert [t.chapter_title for t in tasks] == ["Chapter 2", "Chapter 3"]
        assert all(t.manga_id == item_id for t in tasks)

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store, repo) -> None:
        fake = FakeSite({MANGA_LINK: chapter_list_html(_chapters(4))})
        ctx = make_context(fake, store, repo, dry_run=True)

        outcome = await process_manga_task(ctx, _manga_task())

        assert outcome.chapters_queued == 4
        assert outcome.items_added == 0
        assert await ctx.chapter_queue.count() == 0
        assert await ctx.manga_queue.count() == 0
        assert repo.items == {}

    @pytest.mark.asyncio
    async def test_retry_count_grows_until_error(self, store, repo) -> None:
        """Каждый сбой fetch увеличивает retry_count, на max_retries задача в error."""
        fake = FakeSite({MANGA_LINK: (500, "down")})
        ctx = make_context(fake, store, repo)
        ctx.options = ctx.options.model_copy(update={"max_retries": 3})

        task = _manga_task()
        seen: list[tuple[int, str]] = []
        for _ in range(3):
            await process_manga_task(ctx, task)
            [task] = await ctx.manga_queue.drain(1)
            seen.append((task.retry_count, task.status))

        assert seen == [(1, "retrying"), (2, "retrying"), (3, "error")]
        assert task.error_reason == "Failed to fetch chapters after 3 retries"

    @pytest.mark.asyncio
    async def test_empty_parse_keeps_retry_budget(self, store, repo) -> None:
        fake = FakeSite({MANGA_LINK: "<html><body>no chapters</body></html>"})
        ctx = make_context(fake, store, repo)

        outcome = await process_manga_task(ctx, _manga_task(retry_count=1))

        assert outcome.error
        [task] = await ctx.manga_queue.list_all()
        assert task.status == "error"
        assert task.retry_count == 1
        assert "No chapters parsed" in task.error_reason

    @pytest.mark.asyncio
    async def test_create_failure_requeues_as_error(self, store) -> None:
        repo = MemoryContentRepository()
        repo.create = AsyncMock(side_effect=ContentRepositoryError("create", "db down"))
        fake = FakeSite({MANGA_LINK: chapter_list_html(_chapters(1))})
        ctx = make_context(fake, store, repo)

        outcome = await process_manga_task(ctx, _manga_task())

        assert outcome.error
        [task] = await ctx.manga_queue.list_all()
        assert task.status == "error"
        assert "db down" in task.error_reason


class TestProcessChapterTask:
    """Стадия глав: прикрепление изображений к тайтлу."""

    @pytest.mark.asyncio
    async def test_attaches_images(self, store, repo) -> None:
        item_id = await _create_item(repo)
        task = _chapter_task(item_id)
        images = [f"{BASE_URL}/img/1.jpg", f"{BASE_URL}/img/2.jpg"]
        fake = FakeSite({task.chapter_link: chapter_images_html(images)})
        ctx = make_context(fake, store, repo)

        outcome = await process_chapter_task(ctx, task)

        assert not outcome.error
        item = await repo.get(item_id)
        entry = item.chapters[task.chapter_source_id]
        assert entry["chapter_images"] == images
        assert entry["chapter_slug"] == "chapter-1"
        assert item.meta["last_updated"]

    @pytest.mark.asyncio
    async def test_attach_is_idempotent(self, store, repo) -> None:
        item_id = await _create_item(repo)
        task = _chapter_task(item_id)
        fake = FakeSite({task.chapter_link: chapter_images_html([f"{BASE_URL}/img/1.jpg"])})
        ctx = make_context(fake, store, repo)

        await process_chapter_task(ctx, task)
        await process_chapter_task(ctx, task)

        item = await repo.get(item_id)
        assert list(item.chapters) == [task.chapter_source_id]

    @pytest.mark.asyncio
    async def test_placeholder_resolved_by_source_id(self, store, repo) -> None:
        item_id = await _create_item(repo)
        task = _chapter_task(source_id(MANGA_LINK))
        fake = FakeSite({task.chapter_link: chapter_images_html([f"{BASE_URL}/img/1.jpg"])})
        ctx = make_context(fake, store, repo)

        assert not (await process_chapter_task(ctx, task)).error
        assert task.chapter_source_id in (await repo.get(item_id)).chapters

    @pytest.mark.asyncio
    async def test_placeholder_without_item_fails(self, store, repo) -> None:
        task = _chapter_task(source_id(MANGA_LINK))
        fake = FakeSite()
        ctx = make_context(fake, store, repo)

        assert (await process_chapter_task(ctx, task)).error
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_no_images_is_error(self, store, repo) -> None:
        item_id = await _create_item(repo)
        task = _chapter_task(item_id)
        fake = FakeSite({task.chapter_link: chapter_images_html(["/relative.jpg"])})
        ctx = make_context(fake, store, repo)

        assert (await process_chapter_task(ctx, task)).error
        assert (await repo.get(item_id)).chapters == {}

    @pytest.mark.asyncio
    async def test_fetch_failure_not_requeued(self, store, repo) -> None:
        item_id = await _create_item(repo)
        ctx = make_context(FakeSite(), store, repo)

        assert (await process_chapter_task(ctx, _chapter_task(item_id))).error
        assert await ctx.chapter_queue.count() == 0


class TestDiscoverSite:
    @pytest.mark.asyncio
    async def test_queues_new_titles(self, store, repo) -> None:
        items = [("One", MANGA_LINK), ("Two", f"{BASE_URL}/manga/two")]
        fake = FakeSite({LIST_URL: manga_list_html(items)})
        ctx = make_context(fake, store, repo)

        assert await discover_site(ctx, make_site(), page=2) == 2
        request = fake.requests[0]
        assert request.method == "POST"
        assert request.content == b"action=madara_load_more&page=2"
        tasks = await ctx.manga_queue.list_all()
        assert [t.manga_title for t in tasks] == ["One", "Two"]
        assert tasks[0].cover == f"{BASE_URL}/covers/0.jpg"

    @pytest.mark.asyncio
    async def test_skips_already_queued(self, store, repo) -> None:
        fake = FakeSite({LIST_URL: manga_list_html([("One", MANGA_LINK)])})
        ctx = make_context(fake, store, repo)
        await ctx.manga_queue.enqueue(_manga_task())

        assert await discover_site(ctx, make_site(), page=1) == 0
        assert await ctx.manga_queue.count() == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_returns_zero(self, store, repo) -> None:
        ctx = make_context(FakeSite(), store, repo)
        assert await discover_site(ctx, make_site()) == 0

    @pytest.mark.asyncio
    async def test_dry_run_does_not_enqueue(self, store, repo) -> None:
        fake = FakeSite({LIST_URL: manga_list_html([("One", MANGA_LINK)])})
        ctx = make_context(fake, store, repo, dry_run=True)

        assert await discover_site(ctx, make_site()) == 1
        assert await ctx.manga_queue.count() == 0


class TestEndToEnd:
    """Полный путь: discovery → стадия тайтлов → стадия глав."""

    @pytest.mark.asyncio
    async def test_single_title_harvested(self) -> None:
        store = MemoryOptionStore()
        repo = MemoryContentRepository()
        chapters = _chapters(4)
        pages = {
            LIST_URL: manga_list_html([("One", MANGA_LINK)]),
            MANGA_LINK: chapter_list_html(chapters),
        }
        for n, (_title, link) in enumerate(chapters, start=1):
            pages[link] = chapter_images_html([f"{BASE_URL}/img/{n}-1.jpg", f"{BASE_URL}/img/{n}-2.jpg"])
        ctx = make_context(FakeSite(pages), store, repo, chapter_threshold=1, parallel_threads=4)

        assert await discover_site(ctx, make_site()) == 1
        report = await drain_manga_queue(ctx)
        assert report.items_added == 1
        assert report.chapters_queued == 4
        assert report.errors == 0

        chapter_report = await drain_chapter_queue(ctx)
        assert chapter_report.processed == 4
        assert chapter_report.errors == 0
        assert await ctx.chapter_queue.count() == 0
        [item] = repo.items.values()
        assert len(item.chapters) == 4
        assert all(len(c["chapter_images"]) == 2 for c in item.chapters.values())


class TestRequeueContentItem:
    @pytest.mark.asyncio
    async def test_requeues_from_meta(self, store, repo) -> None:
        item_id = await _create_item(repo)
        ctx = make_context(store=store, repo=repo, sites=[make_site()])

        assert await requeue_content_item(ctx, item_id)
        [task] = await ctx.manga_queue.list_all()
        assert task.manga_id == source_id(MANGA_LINK)
        assert task.manga_link == MANGA_LINK

    @pytest.mark.asyncio
    async def test_unknown_item(self, store, repo) -> None:
        ctx = make_context(store=store, repo=repo, sites=[make_site()])
        assert not await requeue_content_item(ctx, "404")

    @pytest.mark.asyncio
    async def test_site_removed_from_registry(self, store, repo) -> None:
        item_id = await _create_item(repo)
        ctx = make_context(store=store, repo=repo)
        assert not await requeue_content_item(ctx, item_id)
        assert await ctx.manga_queue.count() == 0
