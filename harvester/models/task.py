"""Pydantic-модели задач очередей и отчёта прогона."""
import hashlib
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, field_validator

from harvester.models.site import SiteConfig

TaskStatus = Literal["queued", "retrying", "paused", "error"]


def source_id(link: str) -> str:
    """Стабильный id источника — md5 ссылки."""
    return hashlib.md5(link.encode()).hexdigest()


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class MangaTask(BaseModel):
    """Задача очереди тайтлов: загрузить список глав одного тайтла."""

    site_name: str
    site_config: SiteConfig
    manga_id: str  # source id = md5(manga_link)
    manga_title: str = "Untitled"
    manga_link: str
    cover: str = ""
    alternative: str = ""
    genre: str = ""
    manga_status: str = ""  # статус выпуска тайтла на сайте
    retry_count: int = 0
    status: TaskStatus = "queued"
    priority: Literal["low", "normal", "high"] = "normal"
    queued_timestamp: str | None = None
    error_reason: str | None = None

    @field_validator("site_name", "manga_id", "manga_link")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("retry_count")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_count must be >= 0")
        return v

    @classmethod
    def from_discovery(
        cls, site: SiteConfig, title: str, link: str, cover: str = "",
    ) -> "MangaTask":
        """Задача для тайтла, найденного на странице списка."""
        return cls(
            site_name=site.site_name,
            site_config=site,
            manga_id=source_id(link),
            manga_title=title,
            manga_link=link,
            cover=cover,
        )


class ChapterTask(BaseModel):
    """Задача очереди глав: скачать список страниц одной главы."""

    site_name: str
    site_config: SiteConfig
    manga_id: str  # id элемента контента или placeholder (= manga_source_id)
    manga_source_id: str
    manga_title: str = ""
    chapter_title: str
    chapter_link: str
    chapter_source_id: str
    status: TaskStatus = "queued"
    queued_timestamp: str | None = None

    @field_validator("site_name", "manga_id", "chapter_link", "chapter_source_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def is_placeholder(self) -> bool:
        """Элемент контента ещё не создан — manga_id указывает на source id."""
        return self.manga_id == self.manga_source_id


class TaskOutcome(BaseModel):
    """Результат обработки одной задачи."""

    error: bool = False
    items_added: int = 0
    chapters_queued: int = 0


class RunReport(BaseModel):
    """Агрегированный отчёт одного прогона очереди."""

    processed: int = 0
    items_added: int = 0
    chapters_queued: int = 0
    errors: int = 0
    timestamp: str | None = None

    def add(self, outcome: TaskOutcome) -> None:
        self.processed += 1
        if outcome.error:
            self.errors += 1
            return
        self.items_added += outcome.items_added
        self.chapters_queued += outcome.chapters_queued
