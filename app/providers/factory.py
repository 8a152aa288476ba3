from __future__ import annotations

import aiohttp

from app.core.config import Settings
from app.providers.image import ImageProvider, MockImageProvider, SiliconFlowImageProvider
from app.providers.model3d import (
    HunyuanModel3DProvider,
    MockModel3DProvider,
    Model3DProvider,
)
from app.providers.prompts import (
    OpenAIPromptRewriter,
    PromptRewriter,
    TemplatePromptRewriter,
)
from app.services.storage import LocalStorage


def build_image_provider(settings: Settings, http: aiohttp.ClientSession) -> ImageProvider:
    if settings.image_provider == "siliconflow":
        return SiliconFlowImageProvider(
            http,
            api_key=settings.siliconflow_api_key,
            endpoint=settings.siliconflow_endpoint,
            model=settings.siliconflow_image_model,
            image_size=settings.siliconflow_image_size,
        )
    return MockImageProvider()


def build_model3d_provider(
    settings: Settings, http: aiohttp.ClientSession
) -> Model3DProvider:
    if settings.model3d_provider == "hunyuan":
        return HunyuanModel3DProvider(
            http,
            secret_id=settings.tencentcloud_secret_id,
            secret_key=settings.tencentcloud_secret_key,
            region=settings.tencentcloud_region,
            endpoint=settings.tencentcloud_ai3d_endpoint,
            result_format=settings.model_format,
        )
    return MockModel3DProvider(result_format=settings.model_format)


def build_prompt_rewriter(
    settings: Settings, http: aiohttp.ClientSession
) -> PromptRewriter:
    if settings.prompt_rewriter == "openai":
        return OpenAIPromptRewriter(
            http,
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            cache_size=settings.llm_cache_size,
        )
    return TemplatePromptRewriter()


def build_storage(settings: Settings) -> LocalStorage:
    return LocalStorage(settings.storage_path, url_prefix=settings.storage_url_prefix)
