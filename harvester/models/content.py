"""Pydantic-модели элементов хранилища контента."""
import re
import unicodedata
from typing import Any, Literal

from pydantic import BaseModel

# Маркер источника в meta, по нему ищутся тайтлы харвестера
SOURCE_MARKER = "harvester"


def slugify(value: str) -> str:
    """Слаг главы: ASCII, нижний регистр, пробелы → '-'."""
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode()
    normalized = re.sub(r"[^a-zA-Z0-9\s\-_]", "", normalized)
    return re.sub(r"\s+", "-", normalized.strip()).lower()


class ChapterEntry(BaseModel):
    """Глава, прикреплённая к тайтлу."""

    chapter_name: str
    chapter_slug: str
    chapter_images: list[str]
    chapter_source_id: str
    merged_image: str | None = None


class ContentItem(BaseModel):
    """Тайтл в хранилище контента."""

    id: str | None = None
    title: str
    post_status: Literal["publish", "draft"] = "publish"
    comment_status: Literal["open", "closed"] = "closed"
    ping_status: Literal["open", "closed"] = "closed"
    meta: dict[str, Any] = {}

    @property
    def chapters(self) -> dict[str, dict]:
        chapters = self.meta.get("chapters")
        return chapters if isinstance(chapters, dict) else {}
