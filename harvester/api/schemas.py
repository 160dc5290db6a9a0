"""Pydantic-схемы для операторского API харвестера."""
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from harvester.models.site import SiteConfig, SiteStatus
from harvester.models.task import RunReport


class HealthResponse(BaseModel):
    """Ответ GET /api/health."""

    status: str  # "ok" | "degraded"
    manga_queue: int
    chapter_queue: int
    manga_paused: bool
    chapter_paused: bool
    last_run: str | None = None


class QueueListResponse(BaseModel):
    """Страница очереди."""

    tasks: list[dict[str, Any]]
    total: int
    page: int
    per_page: int


class QueueActionRequest(BaseModel):
    """Массовое действие над задачами очереди по позиции."""

    action: Literal["pause", "resume", "delete"]
    indexes: list[int] = Field(min_length=1, max_length=1000)

    @field_validator("indexes")
    @classmethod
    def unique_indexes(cls, v: list[int]) -> list[int]:
        """Убрать отрицательные и повторяющиеся индексы."""
        cleaned = sorted({i for i in v if i >= 0})
        if not cleaned:
            raise ValueError("indexes must contain non-negative positions")
        return cleaned


class QueueActionResponse(BaseModel):
    action: str
    affected: int


class PauseResponse(BaseModel):
    queue: str
    paused: bool


class RunResponse(BaseModel):
    """Ответ на ручной запуск: отчёты обеих очередей (None — очередь на паузе)."""

    manga: RunReport | None
    chapter: RunReport | None


class DiscoverRequest(BaseModel):
    page: int = Field(default=1, ge=1)


class DiscoverResponse(BaseModel):
    site_name: str
    page: int
    queued: int


class SiteInfo(BaseModel):
    """Сайт реестра со статусом последней проверки."""

    config: SiteConfig
    status: SiteStatus


class SiteListResponse(BaseModel):
    sites: list[SiteInfo]


class ReportResponse(BaseModel):
    last_report: RunReport | None = None
    last_chapter_report: RunReport | None = None
    last_run: str | None = None


class LogListResponse(BaseModel):
    logs: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class CountResponse(BaseModel):
    """Ответ операций, возвращающих количество затронутых записей."""

    count: int
