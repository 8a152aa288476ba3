import asyncio
import base64

import pytest

from app.core.config import Settings
from app.providers.errors import ExternalAPIError
from app.providers.factory import (
    build_image_provider,
    build_model3d_provider,
    build_prompt_rewriter,
)
from app.providers.image import MockImageProvider, SiliconFlowImageProvider
from app.providers.model3d import (
    HunyuanModel3DProvider,
    MockModel3DProvider,
    ProviderJobState,
    _status_for_error_code,
)
from app.providers.prompts import OpenAIPromptRewriter, TemplatePromptRewriter
from app.services.media import fetch_bytes, normalize_image
from app.services.retry import is_retryable_error
from app.services.storage import LocalStorage, StoragePathError, decode_payload
from tests.fakes import FakeHTTPSession, FakeResponse, chat_completion

pytestmark = pytest.mark.anyio


async def test_mock_image_provider_returns_decodable_png() -> None:
    url = await MockImageProvider(size=24).generate_one("a toy robot")

    assert url.startswith("data:image/png;base64,")
    data, metadata = await normalize_image(await fetch_bytes(None, url))
    assert data.startswith(b"\x89PNG")
    assert (metadata["width"], metadata["height"]) == (24, 24)


async def test_undecodable_image_is_an_external_error() -> None:
    with pytest.raises(ExternalAPIError):
        await normalize_image(b"definitely not an image")


async def test_remote_download_requires_http_session() -> None:
    with pytest.raises(RuntimeError):
        await fetch_bytes(None, "https://example.com/image.png")


async def test_siliconflow_without_key_fails_as_auth_error() -> None:
    provider = SiliconFlowImageProvider(
        None, api_key="", endpoint="https://example.invalid", model="m"
    )
    with pytest.raises(ExternalAPIError) as excinfo:
        await provider.generate_one("robot")
    assert excinfo.value.status_code == 401
    assert not is_retryable_error(excinfo.value)


async def test_mock_model_provider_walks_wait_run_done() -> None:
    provider = MockModel3DProvider(result_format="OBJ")
    submission = await provider.submit("/files/x.png")

    states = [(await provider.poll_status(submission.job_id)).status for _ in range(3)]
    assert states == [ProviderJobState.WAIT, ProviderJobState.RUN, ProviderJobState.DONE]

    done = await provider.poll_status(submission.job_id)
    assert done.result_files[0].type == "OBJ"
    assert (await fetch_bytes(None, done.result_files[0].url)).startswith(b"# mock model")

    with pytest.raises(ExternalAPIError):
        await provider.poll_status("unknown-job")


@pytest.mark.parametrize(
    ("code", "status"),
    [
        ("AuthFailure.SignatureFailure", 401),
        ("ResourceUnavailable.InArrears", 403),
        ("RequestLimitExceeded", 429),
        ("InvalidParameterValue.ImageUrl", 400),
        ("InternalError", None),
    ],
)
def test_hunyuan_error_codes_map_to_http_classes(code, status) -> None:
    assert _status_for_error_code(code) == status


def test_hunyuan_signature_header_shape() -> None:
    provider = HunyuanModel3DProvider(
        None, secret_id="AKID", secret_key="secret", region="ap-guangzhou"
    )
    header = provider._sign('{"JobId": "1"}', 1_700_000_000)

    assert header.startswith("TC3-HMAC-SHA256 Credential=AKID/2023-11-14/ai3d/tc3_request, ")
    assert "SignedHeaders=content-type;host" in header
    assert header == provider._sign('{"JobId": "1"}', 1_700_000_000)


async def test_template_rewriter_gives_distinct_variants() -> None:
    rewriter = TemplatePromptRewriter()
    variants = [await rewriter.variant("a toy robot", index, 4) for index in range(4)]

    assert len(set(variants)) == 4
    assert all(variant.startswith("a toy robot, ") for variant in variants)


def test_factory_defaults_to_offline_adapters() -> None:
    settings = Settings()
    assert isinstance(build_image_provider(settings, None), MockImageProvider)
    assert isinstance(build_model3d_provider(settings, None), MockModel3DProvider)
    assert isinstance(build_prompt_rewriter(settings, None), TemplatePromptRewriter)


async def test_local_storage_round_trip_and_guard(tmp_path) -> None:
    storage = LocalStorage(tmp_path, url_prefix="/files")

    url = await storage.save(base64.b64encode(b"hello").decode(), "a/b.txt")
    assert url == "/files/a/b.txt"
    assert await storage.exists(url)
    assert not await storage.exists("https://elsewhere/a/b.txt")

    with pytest.raises(StoragePathError):
        storage.path_for("../outside.txt")

    await storage.delete("a")
    assert not await storage.exists(url)


def test_decode_payload_accepts_data_urls() -> None:
    encoded = base64.b64encode(b"bytes").decode()
    assert decode_payload(f"data:application/octet-stream;base64,{encoded}") == b"bytes"
    assert decode_payload(b"raw") == b"raw"


async def test_rewriter_failure_is_not_cached() -> None:
    variants = [f"robot variant {i}" for i in range(4)]
    http = FakeHTTPSession([FakeResponse(503, "upstream unavailable"), chat_completion(variants)])
    rewriter = OpenAIPromptRewriter(http, base_url="https://llm.test/v1", api_key="k", model="m")

    assert await rewriter.variant("a toy robot", 0, 4) == "a toy robot"
    assert await rewriter.variant("a toy robot", 1, 4) == "robot variant 1"
    assert await rewriter.variant("a toy robot", 3, 4) == "robot variant 3"
    assert http.requests == ["https://llm.test/v1/chat/completions"] * 2


async def test_rewriter_cache_is_bounded() -> None:
    http = FakeHTTPSession(
        [chat_completion([f"{name} {i}" for i in range(2)]) for name in ("a", "b", "c", "a")]
    )
    rewriter = OpenAIPromptRewriter(
        http, base_url="https://llm.test/v1", api_key="k", model="m", cache_size=2
    )

    for prompt in ("a", "b", "c"):
        await rewriter.variant(prompt, 0, 2)
    assert await rewriter.variant("c", 1, 2) == "c 1"
    assert len(http.requests) == 3

    assert await rewriter.variant("a", 1, 2) == "a 1"
    assert len(http.requests) == 4


async def test_hunyuan_poll_timeout_is_retryable_external_error() -> None:
    http = FakeHTTPSession([asyncio.TimeoutError()])
    provider = HunyuanModel3DProvider(
        http, secret_id="AKID", secret_key="secret", region="ap-guangzhou"
    )

    with pytest.raises(ExternalAPIError) as excinfo:
        await provider.poll_status("job-1")
    assert "timed out" in str(excinfo.value)
    assert is_retryable_error(excinfo.value)


async def test_siliconflow_timeout_is_retryable_external_error() -> None:
    provider = SiliconFlowImageProvider(
        FakeHTTPSession([asyncio.TimeoutError()]),
        api_key="key",
        endpoint="https://images.test",
        model="m",
    )

    with pytest.raises(ExternalAPIError) as excinfo:
        await provider.generate_one("robot")
    assert is_retryable_error(excinfo.value)


async def test_download_timeout_is_retryable_external_error() -> None:
    with pytest.raises(ExternalAPIError) as excinfo:
        await fetch_bytes(FakeHTTPSession([asyncio.TimeoutError()]), "https://cdn.test/a.png")
    assert is_retryable_error(excinfo.value)
