"""FastAPI-приложение харвестера: операторские действия над очередями и сайтами."""
import hmac
import time
from collections import defaultdict
from typing import Any, Literal

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import ValidationError
from supabase import Client

from harvester.api.schemas import (
    CountResponse,
    DiscoverRequest,
    DiscoverResponse,
    HealthResponse,
    LogListResponse,
    PauseResponse,
    QueueActionRequest,
    QueueActionResponse,
    QueueListResponse,
    ReportResponse,
    RunResponse,
    SiteInfo,
    SiteListResponse,
)
from harvester.config import Settings, load_options, save_options
from harvester.content_repo import ContentRepository
from harvester.fetch import SITE_STATUS_KEY, ClientFactory
from harvester.log_sink import LOG_LEVELS, clear_logs, fetch_logs
from harvester.models.site import SiteStatus, find_site
from harvester.models.task import RunReport
from harvester.option_store import OptionStore
from harvester.queue_store import QueueStore, chapter_queue, manga_queue
from harvester.worker.handlers import discover_site, requeue_content_item
from harvester.worker.health import check_site_health
from harvester.worker.loop import (
    LAST_CHAPTER_REPORT_KEY,
    LAST_REPORT_KEY,
    LAST_RUN_KEY,
    build_context,
    drain_chapter_queue,
    drain_manga_queue,
)
from harvester.worker.scheduler import reschedule_queues

security = HTTPBearer(auto_error=False)

# Rate limiting: sliding window per IP
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60
_rate_limit_store: dict[str, list[float]] = defaultdict(list)

QueueName = Literal["manga", "chapter"]


def _report_or_none(raw: Any) -> RunReport | None:
    if not isinstance(raw, dict):
        return None
    try:
        return RunReport.model_validate(raw)
    except ValidationError:
        return None


def create_app(
    store: OptionStore,
    repo: ContentRepository,
    settings: Settings,
    db: Client | None = None,
    scheduler: AsyncIOScheduler | None = None,
    client_factory: ClientFactory | None = None,
) -> FastAPI:
    """Создать FastAPI-приложение с зависимостями."""
    app = FastAPI(title="Manga Harvester API", version="0.1.0")

    app.state.store = store
    app.state.repo = repo
    app.state.settings = settings
    app.state.db = db
    app.state.scheduler = scheduler

    queues: dict[str, QueueStore] = {
        "manga": manga_queue(store),
        "chapter": chapter_queue(store),
    }

    async def check_rate_limit(request: Request) -> None:
        """Простой in-memory rate limiter: sliding window per IP."""
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        window_start = now - RATE_LIMIT_WINDOW_SECONDS

        timestamps = _rate_limit_store[client_ip]
        _rate_limit_store[client_ip] = [t for t in timestamps if t > window_start]

        if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_MAX_REQUESTS:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")

        _rate_limit_store[client_ip].append(now)

        # Периодическая очистка стухших IP
        if len(_rate_limit_store) > 100:
            stale_ips = [
                ip for ip, ts in _rate_limit_store.items()
                if not ts or ts[-1] <= window_start
            ]
            for ip in stale_ips:
                del _rate_limit_store[ip]

    async def verify_api_key(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> None:
        """Проверка API-ключа."""
        expected = settings.harvester_api_key.get_secret_value()
        if credentials is None or not hmac.compare_digest(
            credentials.credentials, expected
        ):
            raise HTTPException(status_code=401, detail="Invalid API key")

    protected = [Depends(check_rate_limit), Depends(verify_api_key)]

    def require_db() -> Client:
        if db is None:
            raise HTTPException(status_code=503, detail="Log storage is not configured")
        return db

    @app.get("/api/health", response_model=HealthResponse)
    async def health(response: Response) -> HealthResponse:
        """Healthcheck — без авторизации."""
        try:
            options = await load_options(store, settings)
            manga_count = await queues["manga"].count()
            chapter_count = await queues["chapter"].count()
            last_run = await store.get(LAST_RUN_KEY)
        except Exception as e:
            logger.error(f"[api] Health check failed: {e}")
            response.status_code = 503
            return HealthResponse(
                status="degraded", manga_queue=-1, chapter_queue=-1,
                manga_paused=False, chapter_paused=False,
            )

        return HealthResponse(
            status="ok",
            manga_queue=manga_count,
            chapter_queue=chapter_count,
            manga_paused=options.manga_paused,
            chapter_paused=options.chapter_paused,
            last_run=last_run,
        )

    @app.get(
        "/api/queues/{queue_name}", response_model=QueueListResponse, dependencies=protected,
    )
    async def list_queue(
        queue_name: QueueName,
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=20, ge=1, le=100),
    ) -> dict:
        """Страница очереди в порядке обработки."""
        tasks, total = await queues[queue_name].page(page, per_page)
        return {
            "tasks": [t.model_dump(mode="json") for t in tasks],
            "total": total,
            "page": page,
            "per_page": per_page,
        }

    @app.post(
        "/api/queues/{queue_name}/actions",
        response_model=QueueActionResponse,
        dependencies=protected,
    )
    async def queue_action(queue_name: QueueName, body: QueueActionRequest) -> dict:
        """Пауза / возобновление / удаление задач по позиции."""
        affected = await queues[queue_name].mutate_at(body.indexes, body.action)
        return {"action": body.action, "affected": affected}

    async def _set_paused(queue_name: str, paused: bool) -> dict:
        await save_options(store, {f"{queue_name}_paused": paused})
        logger.info(f"[api] {queue_name} queue {'paused' if paused else 'resumed'}")
        return {"queue": queue_name, "paused": paused}

    @app.post(
        "/api/queues/{queue_name}/pause", response_model=PauseResponse, dependencies=protected,
    )
    async def pause_queue(queue_name: QueueName) -> dict:
        return await _set_paused(queue_name, True)

    @app.post(
        "/api/queues/{queue_name}/resume", response_model=PauseResponse, dependencies=protected,
    )
    async def resume_queue(queue_name: QueueName) -> dict:
        return await _set_paused(queue_name, False)

    @app.post("/api/run", response_model=RunResponse, dependencies=protected)
    async def run_now() -> dict:
        """Ручной прогон: очередь тайтлов, затем очередь глав."""
        ctx = await build_context(store, repo, settings, db=db, client_factory=client_factory)
        manga_report = await drain_manga_queue(ctx)
        chapter_report = await drain_chapter_queue(ctx)
        return {"manga": manga_report, "chapter": chapter_report}

    @app.post(
        "/api/sites/{site_name}/discover",
        response_model=DiscoverResponse,
        dependencies=protected,
    )
    async def discover(
        site_name: str = Path(description="Имя сайта из реестра"),
        body: DiscoverRequest | None = Body(default=None),
    ) -> dict:
        """Поставить в очередь тайтлы со страницы списка сайта."""
        ctx = await build_context(store, repo, settings, db=db, client_factory=client_factory)
        site = find_site(ctx.options.sites, site_name)
        if site is None:
            raise HTTPException(status_code=404, detail="Site not found")
        page = body.page if body else 1
        queued = await discover_site(ctx, site, page)
        return {"site_name": site.site_name, "page": page, "queued": queued}

    @app.post("/api/health-check", dependencies=protected)
    async def health_check() -> dict[str, SiteStatus]:
        """Проверить доступность всех сайтов."""
        ctx = await build_context(store, repo, settings, db=db, client_factory=client_factory)
        return await check_site_health(ctx)

    @app.get("/api/sites", response_model=SiteListResponse, dependencies=protected)
    async def list_sites() -> dict:
        """Реестр сайтов со статусами."""
        options = await load_options(store, settings)
        statuses = await store.get(SITE_STATUS_KEY, {})
        if not isinstance(statuses, dict):
            statuses = {}
        sites = []
        for site in options.sites:
            raw = statuses.get(site.site_name)
            status = SiteStatus.model_validate(raw) if isinstance(raw, dict) else SiteStatus()
            sites.append(SiteInfo(config=site, status=status))
        return {"sites": sites}

    @app.post("/api/cache/clear", response_model=CountResponse, dependencies=protected)
    async def clear_cache() -> dict:
        ctx = await build_context(store, repo, settings, db=db, client_factory=client_factory)
        return {"count": await ctx.fetcher.clear_cache()}

    @app.post("/api/items/{item_id}/rescrape", status_code=202, dependencies=protected)
    async def rescrape_item(item_id: str = Path(description="ID элемента контента")) -> dict:
        """Поставить тайтл в очередь на повторный сбор глав."""
        ctx = await build_context(store, repo, settings, db=db, client_factory=client_factory)
        if not await requeue_content_item(ctx, item_id):
            raise HTTPException(status_code=404, detail="Item not found or not re-scrapable")
        return {"item_id": item_id, "status": "queued"}

    @app.delete("/api/items/{item_id}", status_code=204, dependencies=protected)
    async def delete_item(item_id: str = Path(description="ID элемента контента")) -> Response:
        if not await repo.delete(item_id):
            raise HTTPException(status_code=404, detail="Item not found")
        logger.info(f"[api] Deleted content item {item_id}")
        return Response(status_code=204)

    @app.get("/api/report", response_model=ReportResponse, dependencies=protected)
    async def last_report() -> dict:
        return {
            "last_report": _report_or_none(await store.get(LAST_REPORT_KEY)),
            "last_chapter_report": _report_or_none(await store.get(LAST_CHAPTER_REPORT_KEY)),
            "last_run": await store.get(LAST_RUN_KEY),
        }

    @app.get("/api/logs", response_model=LogListResponse, dependencies=protected)
    async def list_logs(
        level: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        client: Client = Depends(require_db),
    ) -> dict:
        """Логи с фильтром по уровню и пагинацией."""
        if level and level.upper() not in LOG_LEVELS:
            raise HTTPException(status_code=422, detail=f"Unknown log level: {level}")
        logs, total = await fetch_logs(client, level, limit, offset)
        return {"logs": logs, "total": total, "limit": limit, "offset": offset}

    @app.delete("/api/logs", response_model=CountResponse, dependencies=protected)
    async def delete_logs(client: Client = Depends(require_db)) -> dict:
        return {"count": await clear_logs(client)}

    @app.patch("/api/options", dependencies=protected)
    async def update_options(patch: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Частичное переопределение runtime-настроек."""
        try:
            overrides = await save_options(store, patch)
        except ValidationError as e:
            raise HTTPException(
                status_code=422, detail=e.errors(include_url=False, include_context=False),
            )
        if "queue_schedule" in patch and scheduler is not None:
            reschedule_queues(scheduler, overrides["queue_schedule"])
        return overrides

    return app
