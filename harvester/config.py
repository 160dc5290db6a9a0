"""Конфигурация харвестера: bootstrap из env и runtime-настройки."""
from typing import Any, Literal

from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from harvester.models.site import (
    ProxyConfig,
    SiteConfig,
    default_sites,
    parse_proxies,
    parse_sites,
)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; MangaHarvester/1.0)"

# Ключ в option store с переопределениями runtime-настроек
OPTIONS_KEY = "options"


def _clamp(value: Any, low: int, high: int | None = None) -> Any:
    """Привести число к диапазону (как форма настроек: max(low, min(high, v)))."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return value
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


class HarvestOptions(BaseModel):
    """Runtime-настройки пайплайна. Читаются в начале каждого прогона."""

    debug_mode: bool = False
    user_agent: str = DEFAULT_USER_AGENT

    # Fetch
    cache_duration: int = 300  # секунды, 0 = без кеша
    request_timeout: float = 15.0
    max_retries: int = 3
    request_delay: float = 1.0  # пауза вежливости перед каждым запросом
    force_fetch: bool = False
    proxies: list[ProxyConfig] = []

    # Очереди
    parallel_threads: int = 1
    chapter_threshold: int = 1
    dry_run: bool = False
    queue_schedule: Literal["minute", "hourly", "daily"] = "minute"
    manga_paused: bool = False
    chapter_paused: bool = False

    # Создание тайтлов
    post_status: Literal["publish", "draft"] = "publish"
    enable_comments: bool = False
    enable_pingback: bool = False

    # Уведомления
    email_notifications: bool = False
    notify_email: str = ""
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = "harvester@localhost"

    # Логи
    log_retention_days: int = 7

    # Склейка страниц главы
    merge_images: bool = False
    image_merge_direction: Literal["vertical", "horizontal"] = "vertical"
    image_merge_quality: int = 75
    image_merge_format: Literal["avif", "webp", "jpeg"] = "webp"
    image_merge_bg_color: str = "white"

    sites: list[SiteConfig] = []

    @field_validator("max_retries", mode="before")
    @classmethod
    def clamp_retries(cls, v: Any) -> Any:
        return _clamp(v, 0, 10)

    @field_validator("parallel_threads", mode="before")
    @classmethod
    def clamp_threads(cls, v: Any) -> Any:
        return _clamp(v, 1, 10)

    @field_validator("chapter_threshold", "log_retention_days", mode="before")
    @classmethod
    def clamp_positive(cls, v: Any) -> Any:
        return _clamp(v, 1)

    @field_validator("cache_duration", mode="before")
    @classmethod
    def clamp_cache(cls, v: Any) -> Any:
        return _clamp(v, 0)

    @field_validator("image_merge_quality", mode="before")
    @classmethod
    def clamp_quality(cls, v: Any) -> Any:
        return _clamp(v, 0, 100)

    @field_validator("request_delay", mode="before")
    @classmethod
    def clamp_delay(cls, v: Any) -> Any:
        try:
            return max(0.0, float(v))
        except (TypeError, ValueError):
            return v

    @field_validator("sites", mode="before")
    @classmethod
    def parse_site_registry(cls, v: Any) -> Any:
        """Реестр сайтов: JSON-строка или список; невалидные записи отбрасываются."""
        return parse_sites(v)

    @field_validator("proxies", mode="before")
    @classmethod
    def parse_proxy_pool(cls, v: Any) -> Any:
        return parse_proxies(v)


class Settings(BaseSettings):
    """Настройки харвестера — парсятся из env или .env файла.

    Runtime-настройки задаются через HARVEST__<ИМЯ>, например
    HARVEST__MAX_RETRIES=5 или HARVEST__SITES='[...]'.
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str
    supabase_service_key: SecretStr

    # API
    harvester_api_key: SecretStr
    api_port: int = Field(
        default=8001,
        validation_alias=AliasChoices("API_PORT", "PORT"),
    )

    log_level: str = "INFO"

    harvest: HarvestOptions = HarvestOptions()


def load_settings() -> Settings:
    """Создать Settings из переменных окружения (.env файла)."""
    return Settings()  # type: ignore[call-arg]


async def load_options(store, settings: Settings) -> HarvestOptions:
    """Дефолты из Settings + переопределения из option store."""
    overrides = await store.get(OPTIONS_KEY, {})
    if not isinstance(overrides, dict):
        overrides = {}
    merged = {**settings.harvest.model_dump(), **overrides}
    try:
        return HarvestOptions.model_validate(merged)
    except ValidationError as e:
        # Битые переопределения не должны останавливать пайплайн
        logger.error(f"Invalid stored options, falling back to defaults: {e.errors()[0]['msg']}")
        return settings.harvest


async def save_options(store, patch: dict[str, Any]) -> dict[str, Any]:
    """Провалидировать и сохранить частичное переопределение настроек.

    Бросает ValidationError, если патч невалиден.
    """
    # Валидируем патч поверх дефолтов: невалидные поля не попадут в store
    validated = HarvestOptions.model_validate(patch)
    cleaned = validated.model_dump(mode="json", include=set(patch))

    def _merge(current: Any) -> dict[str, Any]:
        base = current if isinstance(current, dict) else {}
        return {**base, **cleaned}

    return await store.update(OPTIONS_KEY, _merge, {})


async def seed_default_sites(store) -> bool:
    """Первый запуск: записать реестр-пример, если переопределений ещё нет."""
    if await store.get(OPTIONS_KEY) is not None:
        return False
    await save_options(store, {"sites": [s.model_dump() for s in default_sites()]})
    logger.info("Seeded example site registry")
    return True
