from __future__ import annotations

import asyncio
import hashlib
from io import BytesIO
from typing import Any

import aiohttp
from PIL import Image, ImageDraw, UnidentifiedImageError

from app.providers.errors import ExternalAPIError
from app.services.storage import decode_payload

DEFAULT_HTTP_HEADERS = {
    "User-Agent": "ModelForgeWorker/1.0",
    "Accept": "*/*",
}


async def fetch_bytes(http: aiohttp.ClientSession | None, url: str) -> bytes:
    """Download a provider result. ``data:`` URLs are decoded in place."""
    if url.startswith("data:"):
        return decode_payload(url)
    if http is None:
        raise RuntimeError("An HTTP session is required to download remote files")

    try:
        async with http.get(url, headers=DEFAULT_HTTP_HEADERS) as response:
            if response.status >= 400:
                raise ExternalAPIError(
                    "download",
                    f"Failed to fetch {url}",
                    status_code=response.status,
                )
            return await response.read()
    except asyncio.TimeoutError as exc:
        raise ExternalAPIError("download", f"Timed out fetching {url}") from exc
    except aiohttp.ClientError as exc:
        raise ExternalAPIError("download", f"Failed to fetch {url}: {exc}") from exc


def _normalize_image(data: bytes) -> tuple[bytes, dict[str, Any]]:
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            width, height = img.size
            fmt = (img.format or "PNG").upper()
            if img.mode not in ("RGB", "RGBA", "L"):
                img = img.convert("RGBA")
            output = BytesIO()
            img.save(output, format="PNG")
    except UnidentifiedImageError as exc:
        raise ExternalAPIError("image", "Provider returned an undecodable image") from exc

    return output.getvalue(), {
        "width": width,
        "height": height,
        "source_format": fmt,
        "size_bytes": len(data),
    }


async def normalize_image(data: bytes) -> tuple[bytes, dict[str, Any]]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _normalize_image, data)


def render_placeholder(prompt: str, index: int, size: int = 512) -> bytes:
    digest = hashlib.sha256(f"{prompt}:{index}".encode("utf-8")).digest()
    background = (digest[0], digest[1], digest[2])

    img = Image.new("RGB", (size, size), background)
    draw = ImageDraw.Draw(img)
    draw.rectangle((size // 4, size // 4, size * 3 // 4, size * 3 // 4), outline="white", width=4)
    draw.text((16, 16), f"#{index + 1} {prompt[:40]}", fill="white")

    output = BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()
