from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Protocol

import aiohttp

from app.core.logging import get_logger
from app.providers.errors import ExternalAPIError
from app.services.media import render_placeholder

logger = get_logger("modelforge.providers.image")


class ImageProvider(Protocol):
    name: str

    async def generate_one(self, prompt: str) -> str:
        """Generate exactly one image and return a URL it can be fetched from."""
        ...


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])
    return fallback


class SiliconFlowImageProvider:
    name = "siliconflow"

    def __init__(
        self,
        http: aiohttp.ClientSession,
        *,
        api_key: str,
        endpoint: str,
        model: str,
        image_size: str = "1024x1024",
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._endpoint = endpoint
        self._model = model
        self._image_size = image_size

    async def generate_one(self, prompt: str) -> str:
        if not self._api_key:
            raise ExternalAPIError(self.name, "API key is not configured", status_code=401)

        body = {
            "model": self._model,
            "prompt": prompt,
            "image_size": self._image_size,
            "batch_size": 1,
            "num_inference_steps": 20,
            "guidance_scale": 7.5,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            async with self._http.post(self._endpoint, json=body, headers=headers) as response:
                raw = await response.text()
                status = response.status
        except asyncio.TimeoutError as exc:
            raise ExternalAPIError(self.name, "Request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ExternalAPIError(self.name, f"Request failed: {exc}") from exc

        try:
            payload = json.loads(raw) if raw else {}
        except ValueError:
            payload = {}

        if status >= 400:
            raise ExternalAPIError(
                self.name,
                _error_message(payload, raw[:200] or "empty response"),
                status_code=status,
                code=str(payload.get("code")) if isinstance(payload, dict) and payload.get("code") else None,
            )

        images = payload.get("images") if isinstance(payload, dict) else None
        url = images[0].get("url") if images else None
        if not url:
            raise ExternalAPIError(self.name, "Response did not contain an image URL")

        logger.info(
            "image_provider.generated",
            provider=self.name,
            seed=payload.get("seed"),
            inference_ms=(payload.get("timings") or {}).get("inference"),
        )
        return url


class MockImageProvider:
    """Renders a deterministic placeholder instead of calling a remote service."""

    name = "mock"

    def __init__(self, size: int = 512) -> None:
        self._size = size
        self._generated = 0

    async def generate_one(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(
            None, render_placeholder, prompt, self._generated, self._size
        )
        self._generated += 1
        return "data:image/png;base64," + base64.b64encode(data).decode("ascii")
