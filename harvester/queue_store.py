"""Очереди задач поверх option store: FIFO, атомарный drain, мутации по индексу."""
from collections.abc import Callable, Iterable
from typing import Generic, Literal, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from harvester.models.task import ChapterTask, MangaTask, now_iso
from harvester.option_store import OptionStore

MANGA_QUEUE_KEY = "manga_queue"
CHAPTER_QUEUE_KEY = "chapter_queue"

QueueAction = Literal["pause", "resume", "delete"]

T = TypeVar("T", bound=BaseModel)


class QueueStore(Generic[T]):
    """Упорядоченная очередь задач одного типа.

    Все изменения идут через store.update, поэтому drain эксклюзивен:
    параллельные вызовы никогда не получат одну и ту же задачу.
    """

    def __init__(self, store: OptionStore, key: str, model: type[T]) -> None:
        self.store = store
        self.key = key
        self.model = model

    def _parse(self, raw: list) -> list[T]:
        tasks: list[T] = []
        for item in raw:
            if not isinstance(item, dict):
                logger.error(f"[{self.key}] Dropping malformed task: {item!r}")
                continue
            try:
                tasks.append(self.model.model_validate(item))
            except ValidationError as e:
                logger.error(f"[{self.key}] Dropping malformed task: {e.errors()[0]['msg']}")
        return tasks

    @staticmethod
    def _raw(current: object) -> list:
        return list(current) if isinstance(current, list) else []

    def _stamp(self, task: T) -> dict:
        data = task.model_dump(mode="json")
        data["queued_timestamp"] = now_iso()
        data["status"] = data.get("status") or "queued"
        if "retry_count" in data and data["retry_count"] is None:
            data["retry_count"] = 0
        return data

    async def enqueue(self, task: T) -> None:
        """Добавить задачу в конец очереди."""
        await self.enqueue_many([task])

    async def enqueue_many(self, tasks: Iterable[T]) -> int:
        """Добавить несколько задач одной атомарной записью."""
        rows = [self._stamp(t) for t in tasks]
        if not rows:
            return 0
        await self.store.update(self.key, lambda cur: self._raw(cur) + rows, [])
        logger.debug(f"[{self.key}] Enqueued {len(rows)} tasks")
        return len(rows)

    async def enqueue_raw(self, row: dict) -> None:
        """Вернуть в конец очереди снятую запись как есть (без валидации)."""
        stamped = {**row, "queued_timestamp": now_iso()}
        await self.store.update(self.key, lambda cur: self._raw(cur) + [stamped], [])

    async def drain_raw(
        self, n: int, eligible: Callable[[dict], bool] | None = None,
    ) -> list[dict]:
        """Атомарно снять до n записей с головы очереди (FIFO) без валидации.

        Записи, не прошедшие eligible, остаются на своих местах.
        """
        if n <= 0:
            return []
        taken: list = []

        def _take(current: object) -> list:
            remaining = []
            for item in self._raw(current):
                ok = isinstance(item, dict) and (eligible is None or eligible(item))
                if len(taken) < n and (ok or not isinstance(item, dict)):
                    taken.append(item)
                else:
                    remaining.append(item)
            return remaining

        await self.store.update(self.key, _take, [])
        return taken

    async def drain(self, n: int, eligible: Callable[[dict], bool] | None = None) -> list[T]:
        """Атомарно снять до n задач с головы очереди (FIFO)."""
        return self._parse(await self.drain_raw(n, eligible))

    async def list_all(self) -> list[T]:
        return self._parse(self._raw(await self.store.get(self.key, [])))

    async def count(self) -> int:
        return len(self._raw(await self.store.get(self.key, [])))

    async def page(self, page: int = 1, per_page: int = 20) -> tuple[list[T], int]:
        """Страница очереди для операторского просмотра. Вернуть (задачи, всего)."""
        raw = self._raw(await self.store.get(self.key, []))
        offset = (max(1, page) - 1) * per_page
        return self._parse(raw[offset:offset + per_page]), len(raw)

    async def mutate_at(self, indexes: Iterable[int], action: QueueAction) -> int:
        """Пауза/возобновление/удаление задач по позиции. Невалидные индексы игнорируются."""
        wanted = set(indexes)
        affected = 0

        def _mutate(current: object) -> list:
            nonlocal affected
            raw = self._raw(current)
            result = []
            for i, item in enumerate(raw):
                if i not in wanted:
                    result.append(item)
                    continue
                affected += 1
                if action == "delete":
                    continue
                if not isinstance(item, dict):
                    result.append(item)
                    continue
                item = dict(item)
                item["status"] = "paused" if action == "pause" else "queued"
                if action == "resume":
                    item.pop("error_reason", None)
                    if "retry_count" in item:
                        item["retry_count"] = 0
                result.append(item)
            return result

        await self.store.update(self.key, _mutate, [])
        logger.info(f"[{self.key}] {action}: {affected} tasks")
        return affected

    async def update_where(
        self, predicate: Callable[[T], bool], fn: Callable[[T], T],
    ) -> int:
        """Атомарно заменить задачи, подходящие под predicate, на fn(task)."""
        changed = 0

        def _apply(current: object) -> list:
            nonlocal changed
            result = []
            for item in self._raw(current):
                try:
                    task = self.model.model_validate(item)
                except ValidationError:
                    result.append(item)
                    continue
                if predicate(task):
                    changed += 1
                    result.append(fn(task).model_dump(mode="json"))
                else:
                    result.append(item)
            return result

        await self.store.update(self.key, _apply, [])
        return changed

    async def clear(self) -> None:
        await self.store.set(self.key, [])


def manga_queue(store: OptionStore) -> QueueStore[MangaTask]:
    return QueueStore(store, MANGA_QUEUE_KEY, MangaTask)


def chapter_queue(store: OptionStore) -> QueueStore[ChapterTask]:
    return QueueStore(store, CHAPTER_QUEUE_KEY, ChapterTask)
