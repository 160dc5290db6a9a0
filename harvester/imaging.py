"""Склейка страниц главы в одно изображение и загрузка в Supabase Storage."""
import asyncio
import io
import re

import httpx
from loguru import logger
from PIL import Image, UnidentifiedImageError
from supabase import Client

from harvester.config import HarvestOptions, Settings
from harvester.option_store import run_in_thread

IMAGES_BUCKET = "chapter-images"
DOWNLOAD_TIMEOUT = 15.0
MAX_DOWNLOAD_SIZE = 10 * 1024 * 1024  # 10 МБ на страницу
MAX_CONCURRENT_DOWNLOADS = 4
UPLOAD_MAX_RETRIES = 3
UPLOAD_RETRY_DELAY = 1.0

_NAMED_COLORS = {"white": (255, 255, 255), "black": (0, 0, 0)}
_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")

_FORMATS = {
    "webp": ("WEBP", "image/webp"),
    "jpeg": ("JPEG", "image/jpeg"),
    "avif": ("AVIF", "image/avif"),
}


def hex_to_rgb(color: str) -> tuple[int, int, int]:
    """Цвет фона: white, black, #rgb или #rrggbb. Невалидный → белый."""
    value = (color or "").strip().lower()
    if value in _NAMED_COLORS:
        return _NAMED_COLORS[value]
    match = _HEX_RE.match(value)
    if not match:
        return _NAMED_COLORS["white"]
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(c * 2 for c in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def build_public_url(supabase_url: str, path: str) -> str:
    """Постоянный публичный URL для файла в Storage."""
    base = supabase_url.rstrip("/")
    return f"{base}/storage/v1/object/public/{IMAGES_BUCKET}/{path}"


def merge_images(
    blobs: list[bytes],
    direction: str = "vertical",
    bg_color: str = "white",
    fmt: str = "webp",
    quality: int = 75,
) -> tuple[bytes, str] | None:
    """Склеить изображения в одно. Вернуть (bytes, mime) или None, если склеивать нечего.

    vertical: ширина = максимум, высота = сумма; horizontal — наоборот.
    """
    images: list[Image.Image] = []
    for blob in blobs:
        try:
            image = Image.open(io.BytesIO(blob))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"[imaging] Skipping undecodable page: {e}")
            continue
        images.append(image.convert("RGB"))

    if not images:
        return None

    if direction == "horizontal":
        size = (sum(i.width for i in images), max(i.height for i in images))
    else:
        size = (max(i.width for i in images), sum(i.height for i in images))

    canvas = Image.new("RGB", size, hex_to_rgb(bg_color))
    offset = 0
    for image in images:
        if direction == "horizontal":
            canvas.paste(image, (offset, 0))
            offset += image.width
        else:
            canvas.paste(image, (0, offset))
            offset += image.height

    pil_format, mime = _FORMATS.get(fmt, _FORMATS["webp"])
    buffer = io.BytesIO()
    try:
        canvas.save(buffer, format=pil_format, quality=quality)
    except (KeyError, OSError) as e:
        # Сборка Pillow без AVIF-кодека
        logger.warning(f"[imaging] {pil_format} encoding unavailable ({e}), using WEBP")
        pil_format, mime = _FORMATS["webp"]
        buffer = io.BytesIO()
        canvas.save(buffer, format=pil_format, quality=quality)
    return buffer.getvalue(), mime


async def download_image(url: str, client: httpx.AsyncClient) -> bytes | None:
    """Скачать страницу главы. Вернуть bytes или None при ошибке."""
    try:
        response = await client.get(url, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"[imaging] Download failed {url}: {e}")
        return None

    if len(response.content) > MAX_DOWNLOAD_SIZE:
        logger.warning(f"[imaging] Image too large ({len(response.content)} bytes): {url}")
        return None
    return response.content


async def upload_image(db: Client, path: str, data: bytes, content_type: str) -> bool:
    """Загрузить файл в Storage (upsert) с повтором при сбое."""
    for attempt in range(1, UPLOAD_MAX_RETRIES + 1):
        try:
            await run_in_thread(
                db.storage.from_(IMAGES_BUCKET).upload,
                path,
                data,
                {"content-type": content_type, "upsert": "true"},
            )
            return True
        except Exception as e:
            if attempt < UPLOAD_MAX_RETRIES:
                logger.warning(
                    f"[imaging] Upload failed ({path}), attempt {attempt}/{UPLOAD_MAX_RETRIES}: {e}"
                )
                await asyncio.sleep(UPLOAD_RETRY_DELAY * attempt)
                continue
            logger.error(f"[imaging] Upload to Storage failed ({path}): {e}")
    return False


async def merge_chapter_images(
    db: Client,
    settings: Settings,
    options: HarvestOptions,
    urls: list[str],
    path: str,
    client: httpx.AsyncClient | None = None,
) -> str | None:
    """Скачать страницы главы, склеить и загрузить. Вернуть публичный URL или None."""
    if not urls:
        return None

    semaphore = asyncio.Semaphore(MAX_CONCURRENT_DOWNLOADS)

    async def _throttled(http: httpx.AsyncClient, url: str) -> bytes | None:
        async with semaphore:
            return await download_image(url, http)

    if client is None:
        async with httpx.AsyncClient(headers={"User-Agent": options.user_agent}) as http:
            blobs = await asyncio.gather(*(_throttled(http, u) for u in urls))
    else:
        blobs = await asyncio.gather(*(_throttled(client, u) for u in urls))

    pages = [b for b in blobs if b]
    if len(pages) < len(urls):
        logger.warning(f"[imaging] {path}: downloaded {len(pages)}/{len(urls)} pages")

    merged = merge_images(
        pages,
        direction=options.image_merge_direction,
        bg_color=options.image_merge_bg_color,
        fmt=options.image_merge_format,
        quality=options.image_merge_quality,
    )
    if merged is None:
        return None

    data, mime = merged
    extension = mime.split("/")[1]
    full_path = f"{path}.{extension}"
    if not await upload_image(db, full_path, data, mime):
        return None

    logger.info(f"[imaging] Merged {len(pages)} pages → {full_path}")
    return build_public_url(settings.supabase_url, full_path)
