"""Хранилище контента: тайтлы и прикреплённые к ним главы."""
import asyncio
import copy
import itertools
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from loguru import logger
from postgrest.types import CountMethod
from supabase import Client

from harvester.exceptions import ContentRepositoryError
from harvester.models.content import SOURCE_MARKER, ContentItem
from harvester.option_store import run_in_thread

ITEMS_TABLE = "manga_items"


class ContentRepository(Protocol):
    """Интерфейс хранилища контента."""

    async def find_by_source(self, site_name: str, source_id: str) -> ContentItem | None:
        ...

    async def get(self, item_id: str) -> ContentItem | None:
        ...

    async def create(self, item: ContentItem) -> str:
        """Создать тайтл, вернуть его id. ContentRepositoryError при ошибке."""
        ...

    async def update_meta(
        self, item_id: str, key: str, fn: Callable[[Any], Any], default: Any = None,
    ) -> Any:
        """Атомарно заменить meta[key] на fn(текущее)."""
        ...

    async def set_meta(self, item_id: str, values: dict[str, Any]) -> None:
        ...

    async def delete(self, item_id: str) -> bool:
        ...

    async def list_items(self, limit: int = 50, offset: int = 0) -> tuple[list[ContentItem], int]:
        ...


class MemoryContentRepository:
    """In-process хранилище контента."""

    def __init__(self) -> None:
        self.items: dict[str, ContentItem] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def find_by_source(self, site_name: str, source_id: str) -> ContentItem | None:
        for item in self.items.values():
            meta = item.meta
            if (
                meta.get("source") == SOURCE_MARKER
                and meta.get("site_name") == site_name
                and meta.get("source_id") == source_id
            ):
                return item.model_copy(deep=True)
        return None

    async def get(self, item_id: str) -> ContentItem | None:
        item = self.items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def create(self, item: ContentItem) -> str:
        async with self._lock:
            item_id = str(next(self._ids))
            self.items[item_id] = item.model_copy(update={"id": item_id}, deep=True)
        return item_id

    async def update_meta(
        self, item_id: str, key: str, fn: Callable[[Any], Any], default: Any = None,
    ) -> Any:
        async with self._lock:
            item = self.items.get(item_id)
            if item is None:
                raise ContentRepositoryError("update_meta", f"item {item_id} not found")
            new_value = fn(copy.deepcopy(item.meta.get(key, default)))
            item.meta[key] = copy.deepcopy(new_value)
            return new_value

    async def set_meta(self, item_id: str, values: dict[str, Any]) -> None:
        async with self._lock:
            item = self.items.get(item_id)
            if item is None:
                raise ContentRepositoryError("set_meta", f"item {item_id} not found")
            item.meta.update(copy.deepcopy(values))

    async def delete(self, item_id: str) -> bool:
        async with self._lock:
            return self.items.pop(item_id, None) is not None

    async def list_items(self, limit: int = 50, offset: int = 0) -> tuple[list[ContentItem], int]:
        ordered = list(self.items.values())
        return [i.model_copy(deep=True) for i in ordered[offset:offset + limit]], len(ordered)


class SupabaseContentRepository:
    """Тайтлы в таблице manga_items (meta — jsonb).

    Read-modify-write meta сериализуется локом на id тайтла.
    """

    def __init__(self, db: Client, table: str = ITEMS_TABLE) -> None:
        self.db = db
        self.table = table
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _to_item(row: dict) -> ContentItem:
        return ContentItem(
            id=str(row["id"]),
            title=row.get("title") or "",
            post_status=row.get("post_status") or "publish",
            comment_status=row.get("comment_status") or "closed",
            ping_status=row.get("ping_status") or "closed",
            meta=row.get("meta") or {},
        )

    async def find_by_source(self, site_name: str, source_id: str) -> ContentItem | None:
        result = await run_in_thread(
            self.db.table(self.table)
            .select("*")
            .eq("source", SOURCE_MARKER)
            .eq("site_name", site_name)
            .eq("source_id", source_id)
            .limit(1)
            .execute
        )
        return self._to_item(result.data[0]) if result.data else None

    async def get(self, item_id: str) -> ContentItem | None:
        result = await run_in_thread(
            self.db.table(self.table).select("*").eq("id", item_id).limit(1).execute
        )
        return self._to_item(result.data[0]) if result.data else None

    async def create(self, item: ContentItem) -> str:
        row = {
            "title": item.title,
            "post_status": item.post_status,
            "comment_status": item.comment_status,
            "ping_status": item.ping_status,
            # Колонки для поиска по источнику дублируют meta
            "source": item.meta.get("source", SOURCE_MARKER),
            "site_name": item.meta.get("site_name"),
            "source_id": item.meta.get("source_id"),
            "meta": item.meta,
        }
        try:
            result = await run_in_thread(self.db.table(self.table).insert(row).execute)
        except Exception as e:
            raise ContentRepositoryError("create", str(e)) from e
        if not result.data:
            raise ContentRepositoryError("create", "insert returned no rows")
        item_id = str(result.data[0]["id"])
        logger.debug(f"[content] Created item {item_id} '{item.title}'")
        return item_id

    async def _read_meta(self, item_id: str) -> dict[str, Any]:
        result = await run_in_thread(
            self.db.table(self.table).select("meta").eq("id", item_id).limit(1).execute
        )
        if not result.data:
            raise ContentRepositoryError("read_meta", f"item {item_id} not found")
        return result.data[0].get("meta") or {}

    async def _write_meta(self, item_id: str, meta: dict[str, Any]) -> None:
        try:
            await run_in_thread(
                self.db.table(self.table).update({"meta": meta}).eq("id", item_id).execute
            )
        except Exception as e:
            raise ContentRepositoryError("update_meta", str(e)) from e

    async def update_meta(
        self, item_id: str, key: str, fn: Callable[[Any], Any], default: Any = None,
    ) -> Any:
        async with self._locks[item_id]:
            meta = await self._read_meta(item_id)
            new_value = fn(meta.get(key, default))
            meta[key] = new_value
            await self._write_meta(item_id, meta)
            return new_value

    async def set_meta(self, item_id: str, values: dict[str, Any]) -> None:
        async with self._locks[item_id]:
            meta = await self._read_meta(item_id)
            meta.update(values)
            await self._write_meta(item_id, meta)

    async def delete(self, item_id: str) -> bool:
        result = await run_in_thread(
            self.db.table(self.table).delete().eq("id", item_id).execute
        )
        self._locks.pop(item_id, None)
        return bool(result.data)

    async def list_items(self, limit: int = 50, offset: int = 0) -> tuple[list[ContentItem], int]:
        result = await run_in_thread(
            self.db.table(self.table)
            .select("*", count=CountMethod.exact)
            .eq("source", SOURCE_MARKER)
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute
        )
        return [self._to_item(r) for r in result.data or []], result.count or 0
