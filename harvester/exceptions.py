"""Кастомные исключения харвестера."""


class HarvesterError(Exception):
    """Общая ошибка харвестера."""


class ContentRepositoryError(HarvesterError):
    """Не удалось записать в хранилище контента."""

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        super().__init__(f"Content repository {operation} failed: {detail}")
