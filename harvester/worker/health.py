"""Проверка доступности сайтов-источников."""
from typing import Any

from loguru import logger
from soupsieve import SelectorSyntaxError

from harvester.extraction import load_document
from harvester.fetch import SITE_STATUS_KEY
from harvester.models.site import SiteConfig, SiteStatus
from harvester.models.task import now_iso
from harvester.worker.handlers import HarvestContext


async def check_site(ctx: HarvestContext, site: SiteConfig) -> SiteStatus:
    """Загрузить первую страницу списка и проверить, что селектор тайтлов что-то находит."""
    url, method, body = site.list_request(1)
    html = await ctx.fetcher.fetch(url, method, body, force=True)
    if html is None:
        return SiteStatus(
            status="error", last_check=now_iso(), reason=f"Failed to fetch content from {url}",
        )

    selector = site.manga_item_selector or "div"
    try:
        found = load_document(html).select_all(selector)
    except SelectorSyntaxError as e:
        logger.error(f"[health] '{site.site_name}': invalid selector '{selector}': {e}")
        found = []
    if not found:
        return SiteStatus(
            status="error",
            last_check=now_iso(),
            reason=f"Invalid manga_item_selector '{site.manga_item_selector or 'not set'}'",
        )
    return SiteStatus(status="success", last_check=now_iso())


async def check_site_health(ctx: HarvestContext) -> dict[str, SiteStatus]:
    """Проверить все сайты реестра и сохранить статусы."""
    if not ctx.options.sites:
        logger.warning("[health] No sites configured for health check")
        return {}

    results: dict[str, SiteStatus] = {}
    for site in ctx.options.sites:
        status = await check_site(ctx, site)
        results[site.site_name] = status
        if status.status == "success":
            logger.info(f"[health] Health check passed for '{site.site_name}'")
        else:
            logger.error(f"[health] Health check failed for '{site.site_name}': {status.reason}")

    def _merge(current: Any) -> dict:
        statuses = dict(current) if isinstance(current, dict) else {}
        statuses.update({name: s.model_dump() for name, s in results.items()})
        return statuses

    await ctx.store.update(SITE_STATUS_KEY, _merge, {})
    return results
