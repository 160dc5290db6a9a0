"""Key/value хранилище состояния харвестера (очереди, кеш, статусы, настройки)."""
import asyncio
import copy
import re
from collections.abc import Callable
from typing import Any, Protocol

from loguru import logger
from supabase import Client

OPTIONS_TABLE = "harvest_options"


async def run_in_thread(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Выполнить синхронный вызов Supabase в отдельном потоке."""
    return await asyncio.to_thread(func, *args, **kwargs)


def sanitize_error(error: str) -> str:
    """Убрать креденшалы (например, прокси user:pass@) из сообщения об ошибке."""
    return re.sub(r"://[^@\s/]+@", "://***:***@", error)


class OptionStore(Protocol):
    """Интерфейс хранилища: get/set и атомарный read-modify-write."""

    async def get(self, key: str, default: Any = None) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Атомарно заменить значение на fn(текущее). Вернуть новое значение."""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        """Удалить все ключи с префиксом. Вернуть количество удалённых."""
        ...

    async def items_with_prefix(self, prefix: str) -> dict[str, Any]:
        """Все пары ключ/значение с префиксом."""
        ...


class MemoryOptionStore:
    """In-process хранилище. Значения копируются, чтобы вызывающий код не мутировал их."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        async with self._lock:
            current = copy.deepcopy(self._data.get(key, default))
            new_value = fn(current)
            self._data[key] = copy.deepcopy(new_value)
            return copy.deepcopy(new_value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for k in keys:
                del self._data[k]
            return len(keys)

    async def items_with_prefix(self, prefix: str) -> dict[str, Any]:
        return {
            k: copy.deepcopy(v) for k, v in self._data.items() if k.startswith(prefix)
        }

    def keys(self) -> list[str]:
        return list(self._data)


class SupabaseOptionStore:
    """Хранилище в таблице harvest_options (key text primary key, value jsonb).

    Процесс один, поэтому read-modify-write сериализуется asyncio.Lock.
    """

    def __init__(self, db: Client, table: str = OPTIONS_TABLE) -> None:
        self.db = db
        self.table = table
        self._lock = asyncio.Lock()

    async def get(self, key: str, default: Any = None) -> Any:
        result = await run_in_thread(
            self.db.table(self.table).select("value").eq("key", key).limit(1).execute
        )
        if not result.data:
            return default
        value = result.data[0].get("value")
        return default if value is None else value

    async def _write(self, key: str, value: Any) -> None:
        await run_in_thread(
            self.db.table(self.table)
            .upsert({"key": key, "value": value}, on_conflict="key")
            .execute
        )

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await self._write(key, value)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        async with self._lock:
            current = await self.get(key, default)
            new_value = fn(current)
            await self._write(key, new_value)
            return new_value

    async def delete(self, key: str) -> None:
        async with self._lock:
            await run_in_thread(
                self.db.table(self.table).delete().eq("key", key).execute
            )

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            result = await run_in_thread(
                self.db.table(self.table).delete().like("key", f"{prefix}%").execute
            )
        deleted = len(result.data or [])
        logger.debug(f"[option_store] Deleted {deleted} keys with prefix '{prefix}'")
        return deleted

    async def items_with_prefix(self, prefix: str) -> dict[str, Any]:
        result = await run_in_thread(
            self.db.table(self.table).select("key, value").like("key", f"{prefix}%").execute
        )
        return {row["key"]: row.get("value") for row in result.data or []}
