"""Тесты моделей контента."""
from harvester.models.content import ContentItem, slugify


class TestSlugify:
    def test_basic(self) -> None:
        assert slugify("Chapter 12") == "chapter-12"

    def test_strips_punctuation(self) -> None:
        assert slugify("Chapter 3: The End!") == "chapter-3-the-end"

    def test_collapses_spaces(self) -> None:
        assert slugify("  Vol 1   Ch 2  ") == "vol-1-ch-2"

    def test_non_ascii_removed(self) -> None:
        assert slugify("Café Глава 5") == "cafe-5"


class TestContentItem:
    def test_chapters_default_empty(self) -> None:
        assert ContentItem(title="X").chapters == {}

    def test_chapters_ignores_garbage(self) -> None:
        assert ContentItem(title="X", meta={"chapters": "oops"}).chapters == {}
