"""HTTP-клиент харвестера: кеш, прокси, пауза вежливости, retry с backoff."""
import asyncio
import hashlib
import json
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from harvester.config import HarvestOptions
from harvester.models.site import ProxyConfig, SiteStatus, is_absolute_url, site_for_url
from harvester.models.task import now_iso
from harvester.notifier import EmailNotifier
from harvester.option_store import OptionStore, sanitize_error

CACHE_PREFIX = "fetch_cache:"
ERROR_LOG_KEY = "error_log"
SITE_STATUS_KEY = "site_status"
ERROR_LOG_LIMIT = 500
MAX_REDIRECTS = 5

ClientFactory = Callable[[ProxyConfig | None], httpx.AsyncClient]
Sleep = Callable[[float], Awaitable[Any]]


def cache_key(url: str, body: dict[str, str] | str | None = None) -> str:
    """Ключ кеша: md5(url + сериализованное тело)."""
    if body is None:
        serialized = ""
    elif isinstance(body, str):
        serialized = body
    else:
        serialized = json.dumps(body, sort_keys=True, ensure_ascii=False)
    return CACHE_PREFIX + hashlib.md5((url + serialized).encode()).hexdigest()


def backoff_delay(attempt: int) -> int:
    """Экспоненциальный backoff: попытка 0 → 2с, 1 → 4с, 2 → 8с."""
    return 2 ** (attempt + 1)


def _is_expired(entry: Any, now: float) -> bool:
    if not isinstance(entry, dict):
        return True
    expires_at = entry.get("expires_at", 0)
    return not isinstance(expires_at, (int, float)) or expires_at <= now


async def prune_cache(store: OptionStore, now: float | None = None) -> int:
    """Удалить истёкшие и битые записи кеша. Вернуть количество удалённых."""
    now = time.time() if now is None else now
    entries = await store.items_with_prefix(CACHE_PREFIX)
    expired = [key for key, entry in entries.items() if _is_expired(entry, now)]
    for key in expired:
        await store.delete(key)
    if expired:
        logger.info(f"[fetch] Pruned {len(expired)} expired cache entries")
    return len(expired)


class FetchClient:
    """Загрузка страниц с сайтов-источников.

    Побочные эффекты только аддитивные: записи кеша, error_log и site_status
    в option store. Сбой никогда не бросает исключение — fetch возвращает None.
    """

    def __init__(
        self,
        store: OptionStore,
        options: HarvestOptions,
        client_factory: ClientFactory | None = None,
        sleep: Sleep = asyncio.sleep,
        notifier: EmailNotifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.options = options
        self.client_factory = client_factory or self._default_client
        self.sleep = sleep
        self.notifier = notifier or EmailNotifier(options)
        self.clock = clock

    def _default_client(self, proxy: ProxyConfig | None) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {
            "timeout": self.options.request_timeout,
            "follow_redirects": True,
            "max_redirects": MAX_REDIRECTS,
            "verify": True,
        }
        if proxy is not None:
            auth = (proxy.username, proxy.password) if proxy.has_auth else None
            kwargs["proxy"] = httpx.Proxy(proxy.proxy_url(), auth=auth)
        return httpx.AsyncClient(**kwargs)

    def _pick_proxy(self) -> ProxyConfig | None:
        """Случайный прокси из пула на каждый запрос."""
        if not self.options.proxies:
            return None
        return random.choice(self.options.proxies)

    def _headers(self, url: str, method: str) -> dict[str, str]:
        parsed = urlparse(url)
        headers = {
            "User-Agent": self.options.user_agent,
            "Referer": f"{parsed.scheme}://{parsed.netloc}",
            "Accept-Encoding": "gzip, deflate",
        }
        if method == "POST":
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        return headers

    @staticmethod
    def _body_kwargs(method: str, body: dict[str, str] | str | None) -> dict[str, Any]:
        if body is None:
            return {}
        if method == "GET":
            return {"params": body} if isinstance(body, dict) else {}
        if isinstance(body, dict):
            return {"data": body}
        return {"content": body}

    async def _cache_get(self, key: str) -> str | None:
        entry = await self.store.get(key)
        if not isinstance(entry, dict):
            return None
        if _is_expired(entry, self.clock()):
            await self.store.delete(key)
            return None
        return entry.get("body")

    async def _cache_set(self, key: str, body: str) -> None:
        if self.options.cache_duration <= 0:
            return
        await self.store.set(key, {
            "body": body,
            "expires_at": self.clock() + self.options.cache_duration,
        })

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        body: dict[str, str] | str | None = None,
        force: bool = False,
    ) -> str | None:
        """Загрузить страницу. Вернуть тело ответа или None при сбое."""
        if not is_absolute_url(url):
            logger.error(f"[fetch] Invalid URL: {url!r}")
            return None

        method = method.upper()
        key = cache_key(url, body)
        if not (force or self.options.force_fetch):
            cached = await self._cache_get(key)
            if cached is not None:
                logger.debug(f"[fetch] Cache hit: {url}")
                return cached

        headers = self._headers(url, method)
        max_retries = self.options.max_retries

        for attempt in range(max_retries + 1):
            await self.sleep(self.options.request_delay)
            proxy = self._pick_proxy()
            try:
                async with self.client_factory(proxy) as client:
                    response = await client.request(
                        method, url, headers=headers, **self._body_kwargs(method, body),
                    )
                    response.raise_for_status()
                    text = response.text
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                message = sanitize_error(str(e) or type(e).__name__)
                await self._record_failure(url, message)
                if attempt < max_retries:
                    delay = backoff_delay(attempt)
                    logger.warning(
                        f"[fetch] {url} failed ({message}), "
                        f"retry {attempt + 1}/{max_retries} in {delay}s"
                    )
                    await self.sleep(delay)
                    continue
                break

            if not text:
                logger.warning(f"[fetch] Empty response body: {url}")
            await self._cache_set(key, text)
            await self.update_site_status(url, "success")
            logger.debug(f"[fetch] {method} {url} → {response.status_code} ({len(text)} chars)")
            return text

        logger.error(f"[fetch] Giving up on {url} after {max_retries} retries")
        await self.notifier.send(
            "Manga harvester: fetch failed",
            f"Failed to fetch {url} after {max_retries} retries.",
        )
        return None

    async def _record_failure(self, url: str, message: str) -> None:
        entry = {
            "task": {"url": url, "type": "fetch"},
            "message": message,
            "timestamp": now_iso(),
        }

        def _append(current: Any) -> list:
            log = list(current) if isinstance(current, list) else []
            log.append(entry)
            return log[-ERROR_LOG_LIMIT:]

        await self.store.update(ERROR_LOG_KEY, _append, [])
        await self.update_site_status(url, "error", message)

    async def update_site_status(self, url: str, status: str, reason: str = "") -> None:
        """Обновить статус сайта, которому принадлежит URL (last-writer-wins)."""
        site = site_for_url(self.options.sites, url)
        if site is None:
            return
        record = SiteStatus(status=status, last_check=now_iso(), reason=reason)

        def _set(current: Any) -> dict:
            statuses = dict(current) if isinstance(current, dict) else {}
            statuses[site.site_name] = record.model_dump()
            return statuses

        await self.store.update(SITE_STATUS_KEY, _set, {})

    async def clear_cache(self) -> int:
        """Сбросить весь кеш ответов."""
        deleted = await self.store.delete_prefix(CACHE_PREFIX)
        logger.info(f"[fetch] Cache cleared: {deleted} entries")
        return deleted
