"""Общие фикстуры и хелперы тестов харвестера."""
from collections.abc import Callable

import httpx
import pytest

from harvester.config import HarvestOptions, Settings
from harvester.content_repo import MemoryContentRepository
from harvester.fetch import FetchClient
from harvester.models.site import SiteConfig
from harvester.option_store import MemoryOptionStore
from harvester.queue_store import chapter_queue, manga_queue
from harvester.worker.handlers import HarvestContext

BASE_URL = "https://manga.example.com"


def make_site(**overrides) -> SiteConfig:
    """SiteConfig с селекторами под тестовую разметку."""
    data = {
        "site_name": "Test Site",
        "base_url": BASE_URL,
        "manga_list_method": "POST",
        "manga_list_ajax": "/wp-admin/admin-ajax.php",
        "manga_list_ajax_params": "action=madara_load_more&page={page}",
        "manga_item_selector": "div.manga-item",
        "chapter_list_selector": "li.chapter",
        "chapter_images_selector": "div.reading img",
        "description_selector": "div.summary",
        "genre_selector": "div.genres a",
    }
    data.update(overrides)
    return SiteConfig(**data)


def make_settings(**harvest) -> Settings:
    """Settings без env: фиктивные ключи + переопределения HarvestOptions."""
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_key="service-key",
        harvester_api_key="sk-test-key",
        harvest=HarvestOptions(**harvest),
    )


async def no_sleep(_seconds: float) -> None:
    """Нулевая задержка вместо asyncio.sleep."""


class FakeSite:
    """Маршрутизатор MockTransport: URL → (статус, HTML), плюс журнал запросов."""

    def __init__(self, pages: dict[str, str | tuple[int, str]] | None = None) -> None:
        self.pages: dict[str, str | tuple[int, str]] = dict(pages or {})
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        page = self.pages.get(url)
        if page is None:
            return httpx.Response(404, text="not found")
        if isinstance(page, tuple):
            status, text = page
            return httpx.Response(status, text=text)
        return httpx.Response(200, text=page)

    def client_factory(self) -> Callable[..., httpx.AsyncClient]:
        def _factory(_proxy=None) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

        return _factory


def manga_list_html(items: list[tuple[str, str]]) -> str:
    blocks = "".join(
        f'<div class="manga-item"><a class="manga-title" href="{link}">{title}</a>'
        f'<img class="manga-cover" src="{BASE_URL}/covers/{i}.jpg"></div>'
        for i, (title, link) in enumerate(items)
    )
    return f"<html><body>{blocks}</body></html>"


def chapter_list_html(links: list[tuple[str, str]], extra: str = "") -> str:
    rows = "".join(f'<li class="chapter"><a href="{link}">{title}</a></li>' for title, link in links)
    return f"<html><body>{extra}<ul>{rows}</ul></body></html>"


def chapter_images_html(srcs: list[str]) -> str:
    imgs = "".join(f'<img src="{src}">' for src in srcs)
    return f'<html><body><div class="reading">{imgs}</div></body></html>'


def make_context(
    fake: FakeSite | None = None,
    store: MemoryOptionStore | None = None,
    repo: MemoryContentRepository | None = None,
    **options,
) -> HarvestContext:
    """HarvestContext на in-memory хранилищах и MockTransport."""
    store = store or MemoryOptionStore()
    repo = repo or MemoryContentRepository()
    fake = fake or FakeSite()
    opts = HarvestOptions(**{"request_delay": 0, "max_retries": 0, **options})
    fetcher = FetchClient(store, opts, client_factory=fake.client_factory(), sleep=no_sleep)
    return HarvestContext(
        store=store,
        repo=repo,
        fetcher=fetcher,
        options=opts,
        manga_queue=manga_queue(store),
        chapter_queue=chapter_queue(store),
    )


@pytest.fixture
def store() -> MemoryOptionStore:
    return MemoryOptionStore()


@pytest.fixture
def repo() -> MemoryContentRepository:
    return MemoryContentRepository()
