"""Pydantic-модели конфигурации сайтов-источников и прокси."""
import json
from typing import Literal
from urllib.parse import urljoin, urlencode, urlparse

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from harvester.extraction import build_params

SiteMethod = Literal["GET", "POST", "AJAX"]


def is_absolute_url(value: str | None) -> bool:
    """Проверить, что строка — абсолютный http(s) URL с хостом."""
    if not value or not isinstance(value, str) or any(c.isspace() for c in value):
        return False
    try:
        parsed = urlparse(value)
        port = parsed.port
    except ValueError:
        return False
    if port is not None and not 1 <= port <= 65535:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and bool(parsed.hostname)


class ProxyConfig(BaseModel):
    """Один прокси из пула."""

    url: str
    port: int = Field(ge=1, le=65535)
    username: str = ""
    password: str = ""

    def proxy_url(self) -> str:
        """URL прокси вида scheme://host:port (http:// по умолчанию)."""
        base = self.url.rstrip("/")
        if "://" not in base:
            base = f"http://{base}"
        return f"{base}:{self.port}"

    @property
    def has_auth(self) -> bool:
        return bool(self.username and self.password)


class SiteStatus(BaseModel):
    """Состояние сайта по последнему запросу или health-check."""

    status: Literal["success", "error", "unknown"] = "unknown"
    last_check: str | None = None
    reason: str = ""


class SiteConfig(BaseModel):
    """Декларативные правила извлечения для одного сайта.

    Селекторы — CSS-строки. Модель неизменяемая: снапшот копируется в каждую
    задачу и не меняется во время прогона.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    site_name: str
    base_url: str
    manga_list_method: SiteMethod = "GET"
    manga_list_ajax: str = ""
    manga_list_ajax_params: str = ""

    manga_item_selector: str = ""
    chapter_list_selector: str = ""
    chapter_images_selector: str = ""

    # Поля страницы тайтла
    description_selector: str = ""
    genre_selector: str = ""
    author_selector: str = ""
    status_selector: str = ""
    alternative_titles_selector: str = ""
    tags_selector: str = ""
    views_selector: str = ""
    rating_selector: str = ""
    artist_selector: str = ""
    release_selector: str = ""
    type_selector: str = ""
    publisher_selector: str = ""
    serialization_selector: str = ""
    volumes_selector: str = ""

    @field_validator("site_name")
    @classmethod
    def clean_site_name(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("site_name must not be empty")
        return cleaned

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, v: str) -> str:
        cleaned = v.strip()
        if not is_absolute_url(cleaned):
            raise ValueError(f"base_url must be an absolute URL: {v!r}")
        return cleaned

    @field_validator("manga_list_method", mode="before")
    @classmethod
    def upper_method(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v

    def list_url(self) -> str:
        """URL списка тайтлов: base_url для GET, endpoint для POST/AJAX."""
        if self.manga_list_method in ("POST", "AJAX"):
            return self.base_url.rstrip("/") + "/" + self.manga_list_ajax.lstrip("/")
        return self.base_url

    def list_request(self, page: int = 1) -> tuple[str, str, dict[str, str] | str | None]:
        """Собрать (url, http-метод, тело) для страницы списка.

        POST — параметры уходят формой в теле, AJAX — query string в GET.
        """
        url = self.list_url()
        if self.manga_list_method == "POST":
            return url, "POST", build_params(self.manga_list_ajax_params, page)
        if self.manga_list_method == "AJAX":
            params = build_params(self.manga_list_ajax_params, page)
            if params:
                query = urlencode(params) if isinstance(params, dict) else params
                url = f"{url}{'&' if '?' in url else '?'}{query}"
            return url, "GET", None
        return url.replace("{page}", str(page)), "GET", None

    def absolute(self, link: str) -> str:
        """Разрешить относительную ссылку относительно base_url."""
        return urljoin(self.base_url.rstrip("/") + "/", link)


def parse_sites(raw: str | list | None) -> list[SiteConfig]:
    """Распарсить реестр сайтов из JSON-массива, пропуская невалидные записи."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON for sites config: {e}")
            return []
    if not isinstance(raw, list):
        logger.error(f"Sites config must be a JSON array, got {type(raw).__name__}")
        return []

    sites: list[SiteConfig] = []
    seen: set[str] = set()
    for entry in raw:
        if isinstance(entry, SiteConfig):
            site = entry
        else:
            try:
                site = SiteConfig.model_validate(entry)
            except ValidationError as e:
                logger.error(f"Invalid site config {entry!r}: {e.errors()[0]['msg']}")
                continue
        if site.site_name in seen:
            logger.warning(f"Duplicate site '{site.site_name}' skipped")
            continue
        seen.add(site.site_name)
        sites.append(site)
    return sites


def parse_proxies(raw: str | list | None) -> list[ProxyConfig]:
    """Распарсить пул прокси из JSON-массива {url, port, username, password}."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Proxy list is not valid JSON, proxies disabled")
            return []
    if not isinstance(raw, list):
        return []

    proxies: list[ProxyConfig] = []
    for entry in raw:
        try:
            proxies.append(ProxyConfig.model_validate(entry))
        except ValidationError:
            logger.warning(f"Invalid proxy entry skipped: {entry!r}")
    return proxies


def find_site(sites: list[SiteConfig], site_name: str) -> SiteConfig | None:
    for site in sites:
        if site.site_name == site_name:
            return site
    return None


def site_for_url(sites: list[SiteConfig], url: str) -> SiteConfig | None:
    """Найти сайт, чей base_url — префикс URL."""
    for site in sites:
        if url.startswith(site.base_url):
            return site
    return None


def default_sites() -> list[SiteConfig]:
    """Пример реестра для первого запуска (тема Madara на WordPress)."""
    return [
        SiteConfig(
            site_name="Example Manga Site",
            base_url="https://example.com",
            manga_list_ajax="/wp-admin/admin-ajax.php",
            manga_list_ajax_params="action=madara_load_more&page={page}",
            manga_list_method="POST",
            manga_item_selector="div.c-tabs-item__content",
            chapter_list_selector="ul.chapter-list li",
            chapter_images_selector="img.chapter-image",
            description_selector="div.manga-summary",
            genre_selector="div.manga-genres a",
            author_selector="div.manga-authors a",
            status_selector="div.manga-status",
            alternative_titles_selector="div.manga-alt-titles",
            tags_selector="div.manga-tags a",
            views_selector="span.manga-views",
            rating_selector="span.manga-rating",
            artist_selector="div.manga-artists a",
            release_selector="div.manga-release",
            type_selector="div.manga-type",
            publisher_selector="div.manga-publisher",
            serialization_selector="div.manga-serialization",
            volumes_selector="div.manga-volumes",
        )
    ]
