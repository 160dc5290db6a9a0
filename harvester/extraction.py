"""Извлечение списков тайтлов, глав и страниц из HTML по селекторам сайта."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol
from urllib.parse import parse_qsl, urlparse

from bs4 import BeautifulSoup, Tag
from loguru import logger
from soupsieve import SelectorSyntaxError

if TYPE_CHECKING:
    from harvester.models.site import SiteConfig

# Фиксированные правила внутри контейнера тайтла
TITLE_LINK_SELECTOR = 'a[class*="manga-title"], a[class*="post-title"]'
COVER_IMAGE_SELECTOR = 'img[class*="manga-cover"], img[class*="thumbnail"]'

# Ленивые атрибуты, если src пустой
_LAZY_SRC_ATTRS = ("data-src", "data-lazy-src")

# Поля страницы тайтла → атрибут SiteConfig с селектором
DETAIL_FIELDS: dict[str, str] = {
    "description": "description_selector",
    "genre": "genre_selector",
    "author": "author_selector",
    "status": "status_selector",
    "alternative": "alternative_titles_selector",
    "tags": "tags_selector",
    "views": "views_selector",
    "rating": "rating_selector",
    "artist": "artist_selector",
    "release": "release_selector",
    "type": "type_selector",
    "publisher": "publisher_selector",
    "serialization": "serialization_selector",
    "volumes": "volumes_selector",
}


@dataclass
class MangaListItem:
    """Тайтл со страницы списка."""

    title: str
    link: str
    id: str
    cover: str = ""


@dataclass
class ChapterListItem:
    """Глава со страницы тайтла."""

    title: str
    link: str
    id: str


class Node(Protocol):
    """Минимальный интерфейс движка запросов к документу."""

    def select_one(self, selector: str) -> Node | None:
        ...

    def select_all(self, selector: str) -> list[Node]:
        ...

    def attribute(self, name: str) -> str:
        ...

    def text(self) -> str:
        ...


class SoupNode:
    """Node поверх BeautifulSoup + CSS-селекторов soupsieve."""

    def __init__(self, tag: Tag) -> None:
        self.tag = tag

    def select_one(self, selector: str) -> SoupNode | None:
        found = self.tag.select_one(selector)
        return SoupNode(found) if found is not None else None

    def select_all(self, selector: str) -> list[SoupNode]:
        return [SoupNode(t) for t in self.tag.select(selector)]

    def attribute(self, name: str) -> str:
        value = self.tag.get(name)
        if isinstance(value, list):
            value = " ".join(value)
        return (value or "").strip()

    def text(self) -> str:
        return " ".join(self.tag.get_text(" ", strip=True).split())


def load_document(html: str) -> SoupNode:
    """Разобрать HTML best-effort (html.parser не падает на битой разметке)."""
    return SoupNode(BeautifulSoup(html, "html.parser"))


def hash_link(link: str) -> str:
    """Стабильный id — md5 ссылки."""
    return hashlib.md5(link.encode()).hexdigest()


def is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.hostname) and " " not in value


def _select(doc: Node, selector: str, what: str) -> list[Node]:
    """Выполнить селектор сайта; невалидный селектор — пустой результат."""
    try:
        return doc.select_all(selector)
    except (SelectorSyntaxError, ValueError) as e:
        logger.error(f"Invalid {what} selector '{selector}': {e}")
        return []


def parse_manga_list(html: str, site: SiteConfig) -> list[MangaListItem]:
    """Тайтлы со страницы списка: ссылка-заголовок + обложка в каждом контейнере."""
    if not html or not site.manga_item_selector:
        logger.error("Invalid HTML or missing manga_item_selector for parsing manga list")
        return []

    containers = _select(load_document(html), site.manga_item_selector, "manga_item")
    if not containers:
        logger.warning(f"No manga items found with selector '{site.manga_item_selector}'")
        return []

    items: list[MangaListItem] = []
    for container in containers:
        title_node = container.select_one(TITLE_LINK_SELECTOR)
        if title_node is None:
            continue
        title = title_node.text()
        href = title_node.attribute("href")
        if not title or not href:
            continue
        link = site.absolute(href)
        cover_node = container.select_one(COVER_IMAGE_SELECTOR)
        cover = _image_src(cover_node) if cover_node else ""
        items.append(MangaListItem(title=title, link=link, id=hash_link(link), cover=cover))

    logger.debug(f"Parsed {len(items)} manga items from HTML")
    return items


def parse_chapter_list(html: str, site: SiteConfig) -> list[ChapterListItem]:
    """Главы в порядке документа: первая ссылка в каждом контейнере."""
    if not html or not site.chapter_list_selector:
        logger.error("Invalid HTML or missing chapter_list_selector for parsing chapter list")
        return []

    containers = _select(load_document(html), site.chapter_list_selector, "chapter_list")
    if not containers:
        logger.warning(f"No chapters found with selector '{site.chapter_list_selector}'")
        return []

    chapters: list[ChapterListItem] = []
    for container in containers:
        anchor = container.select_one("a")
        if anchor is None:
            continue
        title = anchor.text()
        href = anchor.attribute("href")
        if not title or not href:
            continue
        link = site.absolute(href)
        chapters.append(ChapterListItem(title=title, link=link, id=hash_link(link)))

    logger.debug(f"Parsed {len(chapters)} chapters from HTML")
    return chapters


def _image_src(node: Node) -> str:
    src = node.attribute("src")
    if src and not src.startswith("data:"):
        return src
    for attr in _LAZY_SRC_ATTRS:
        lazy = node.attribute(attr)
        if lazy:
            return lazy
    return ""


def parse_chapter_images(html: str, site: SiteConfig) -> list[str]:
    """URL страниц главы в порядке документа. Относительные и битые src отбрасываются."""
    if not html or not site.chapter_images_selector:
        logger.error("Invalid HTML or missing chapter_images_selector for parsing images")
        return []

    nodes = _select(load_document(html), site.chapter_images_selector, "chapter_images")
    if not nodes:
        logger.warning(f"No images found with selector '{site.chapter_images_selector}'")
        return []

    images = [src for src in (_image_src(n) for n in nodes) if src and is_valid_url(src)]
    logger.debug(f"Parsed {len(images)} images from chapter HTML")
    return images


def parse_manga_details(html: str, site: SiteConfig) -> dict[str, str]:
    """Описание, жанры, авторы и прочие поля со страницы тайтла.

    Пустые селекторы пропускаются, несколько совпадений склеиваются через ", ".
    """
    if not html:
        return {}
    doc = load_document(html)
    details: dict[str, str] = {}
    for field, attr in DETAIL_FIELDS.items():
        selector = getattr(site, attr)
        if not selector:
            continue
        values = [n.text() for n in _select(doc, selector, field)]
        values = [v for v in values if v]
        if values:
            details[field] = ", ".join(values)
    return details


def build_params(template: str, page: int) -> dict[str, str] | str:
    """Подставить {page} и разобрать шаблон как query string.

    Если разобрать не удалось — вернуть строку как есть (сырое тело запроса).
    """
    if not template:
        return {}
    params = template.replace("{page}", str(page))
    if "=" not in params:
        return params
    parsed = parse_qsl(params, keep_blank_values=True)
    if parsed:
        return dict(parsed)
    return params
