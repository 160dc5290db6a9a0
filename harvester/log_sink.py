"""Loguru sink для записи логов харвестера в Supabase + чистка и просмотр."""
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger
from postgrest.types import CountMethod
from supabase import Client

from harvester.option_store import run_in_thread

LOGS_TABLE = "harvest_logs"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_INFO_NO = 20
_WARNING_NO = 30


def create_supabase_sink(db: Client, table: str = LOGS_TABLE):
    """Фабрика: вернуть sink-функцию, привязанную к db-клиенту."""

    def sink(message) -> None:
        record = message.record
        try:
            db.table(table).insert({
                "level": record["level"].name,
                "module": record["name"],
                "message": str(record["message"]),
                "logged_at": record["time"].astimezone(UTC).isoformat(),
            }).execute()
        except Exception:
            pass  # Ошибка логирования не должна ронять приложение

    return sink


def make_level_filter(debug_mode: bool | Callable[[], bool]) -> Callable[[dict], bool]:
    """Фильтр sink'а: WARNING+ всегда, INFO — только в debug-режиме.

    debug_mode может быть функцией — тогда флаг читается на каждую запись.
    """

    def _filter(record: dict) -> bool:
        level_no = record["level"].no
        if level_no >= _WARNING_NO:
            return True
        enabled = debug_mode() if callable(debug_mode) else debug_mode
        return enabled and level_no >= _INFO_NO

    return _filter


def retention_threshold(retention_days: int, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return (now - timedelta(days=max(1, retention_days))).isoformat()


async def prune_logs(db: Client, retention_days: int, table: str = LOGS_TABLE) -> int:
    """Удалить записи старше retention_days дней. Вернуть количество удалённых."""
    threshold = retention_threshold(retention_days)
    result = await run_in_thread(
        db.table(table).delete().lt("logged_at", threshold).execute
    )
    deleted = len(result.data or [])
    if deleted:
        logger.info(f"[log_sink] Pruned {deleted} log entries older than {retention_days}d")
    return deleted


async def fetch_logs(
    db: Client,
    level: str | None = None,
    limit: int = 50,
    offset: int = 0,
    table: str = LOGS_TABLE,
) -> tuple[list[dict[str, Any]], int]:
    """Страница логов (новые сверху), опционально по уровню. Вернуть (записи, всего)."""
    query = db.table(table).select("*", count=CountMethod.exact)
    if level:
        query = query.eq("level", level.upper())
    result = await run_in_thread(
        query.order("logged_at", desc=True).range(offset, offset + limit - 1).execute
    )
    return result.data or [], result.count or 0


async def clear_logs(db: Client, table: str = LOGS_TABLE) -> int:
    """Удалить все записи логов."""
    result = await run_in_thread(
        db.table(table).delete().in_("level", list(LOG_LEVELS)).execute
    )
    deleted = len(result.data or [])
    logger.info(f"[log_sink] Cleared {deleted} log entries")
    return deleted
