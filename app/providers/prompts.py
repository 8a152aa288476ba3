from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from typing import Protocol

import aiohttp

from app.core.logging import get_logger
from app.providers.errors import ExternalAPIError

logger = get_logger("modelforge.providers.prompts")

PRINTABLE_SUFFIX = (
    "single object, centered, plain white background, soft studio lighting, "
    "full view, suitable for 3D printing"
)

STYLE_VARIANTS = (
    "clean product render with smooth surfaces",
    "cute stylized toy figure with rounded shapes",
    "detailed realistic sculpture",
    "bold low-poly geometric design",
)

VARIANT_INSTRUCTIONS = (
    "You rewrite short user prompts into prompts for a text-to-image model. "
    "The generated image will be converted into a 3D printable model, so every "
    "prompt must describe a single object on a plain background. "
    "Return only a JSON array of {count} strings, each a distinct visual style "
    "of the same object."
)


class PromptRewriter(Protocol):
    async def variant(self, prompt: str, index: int, total: int) -> str:
        """Return the prompt to use for image ``index`` of ``total``."""
        ...


class TemplatePromptRewriter:
    async def variant(self, prompt: str, index: int, total: int) -> str:
        style = STYLE_VARIANTS[index % len(STYLE_VARIANTS)]
        return f"{prompt}, {style}, {PRINTABLE_SUFFIX}"


class OpenAIPromptRewriter:
    """Asks an OpenAI-compatible chat endpoint for all variants of a prompt at once.

    Successful rewrites are kept in a small LRU cache so the worker can resume
    at any index without another LLM call. If the call fails the original
    prompt is used for that image and nothing is cached, so the next image
    tries the rewrite again.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        *,
        base_url: str,
        api_key: str,
        model: str,
        cache_size: int = 128,
    ) -> None:
        self._http = http
        self._endpoint = base_url.rstrip("/") + "/chat/completions"
        self._api_key = api_key
        self._model = model
        self._cache_size = cache_size
        self._cache: OrderedDict[tuple[str, int], list[str]] = OrderedDict()

    async def variant(self, prompt: str, index: int, total: int) -> str:
        key = (prompt, total)
        variants = self._cache.get(key)
        if variants is not None:
            self._cache.move_to_end(key)
            return variants[index]

        try:
            variants = await self._request_variants(prompt, total)
        except (ExternalAPIError, ValueError, KeyError, TypeError) as exc:
            logger.warning("prompts.rewrite_failed", prompt=prompt, error=str(exc))
            return prompt

        logger.info("prompts.rewritten", prompt=prompt, variants=variants)
        self._cache[key] = variants
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return variants[index]

    async def _request_variants(self, prompt: str, total: int) -> list[str]:
        body = {
            "model": self._model,
            "temperature": 0.8,
            "messages": [
                {"role": "system", "content": VARIANT_INSTRUCTIONS.format(count=total)},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with self._http.post(self._endpoint, json=body, headers=headers) as response:
                if response.status >= 400:
                    raise ExternalAPIError(
                        "llm", await response.text(), status_code=response.status
                    )
                payload = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ExternalAPIError("llm", "Request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ExternalAPIError("llm", f"Request failed: {exc}") from exc

        content = payload["choices"][0]["message"]["content"].strip()
        if content.startswith("```"):
            content = content.strip("`").removeprefix("json").strip()
        variants = [str(item).strip() for item in json.loads(content)]
        variants = [item for item in variants if item]
        if len(variants) < total:
            raise ValueError(f"Expected {total} prompt variants, got {len(variants)}")
        return variants[:total]
