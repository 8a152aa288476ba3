from __future__ import annotations

import asyncio
import base64
import enum
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import aiohttp

from app.core.logging import get_logger
from app.providers.errors import ExternalAPIError

logger = get_logger("modelforge.providers.model3d")


class ProviderJobState(str, enum.Enum):
    """Job states as reported by the 3D provider."""

    WAIT = "WAIT"
    RUN = "RUN"
    DONE = "DONE"
    FAIL = "FAIL"


@dataclass(frozen=True)
class ModelJobSubmission:
    job_id: str
    request_id: str = ""


@dataclass(frozen=True)
class ModelFile:
    type: str | None
    url: str | None
    preview_image_url: str | None = None


@dataclass(frozen=True)
class ModelJobStatus:
    job_id: str
    status: ProviderJobState
    result_files: tuple[ModelFile, ...] = field(default_factory=tuple)
    error_code: str | None = None
    error_message: str | None = None
    request_id: str = ""


class Model3DProvider(Protocol):
    name: str

    async def submit(self, image_url: str) -> ModelJobSubmission: ...

    async def poll_status(self, job_id: str) -> ModelJobStatus: ...


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _status_for_error_code(code: str) -> int | None:
    if code.startswith("AuthFailure"):
        return 401
    if code.startswith(("UnauthorizedOperation", "ResourceUnavailable.InArrears")):
        return 403
    if code.startswith(("RequestLimitExceeded", "LimitExceeded", "ResourceInsufficient")):
        return 429
    if code.startswith(("InvalidParameter", "MissingParameter", "UnknownParameter")):
        return 400
    return None


class HunyuanModel3DProvider:
    """Tencent Cloud Hunyuan image-to-3D (rapid) jobs over signed HTTP calls."""

    name = "hunyuan"
    service = "ai3d"
    api_version = "2025-05-13"

    def __init__(
        self,
        http: aiohttp.ClientSession,
        *,
        secret_id: str,
        secret_key: str,
        region: str,
        endpoint: str = "ai3d.tencentcloudapi.com",
        result_format: str = "OBJ",
    ) -> None:
        self._http = http
        self._secret_id = secret_id
        self._secret_key = secret_key
        self._region = region
        self._host = endpoint
        self._result_format = result_format

    def _sign(self, payload: str, timestamp: int) -> str:
        date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
        canonical_request = "\n".join(
            [
                "POST",
                "/",
                "",
                f"content-type:application/json; charset=utf-8\nhost:{self._host}\n",
                "content-type;host",
                _sha256_hex(payload),
            ]
        )
        credential_scope = f"{date}/{self.service}/tc3_request"
        string_to_sign = "\n".join(
            [
                "TC3-HMAC-SHA256",
                str(timestamp),
                credential_scope,
                _sha256_hex(canonical_request),
            ]
        )
        secret_date = _hmac_sha256(f"TC3{self._secret_key}".encode("utf-8"), date)
        secret_service = _hmac_sha256(secret_date, self.service)
        secret_signing = _hmac_sha256(secret_service, "tc3_request")
        signature = hmac.new(
            secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return (
            f"TC3-HMAC-SHA256 Credential={self._secret_id}/{credential_scope}, "
            f"SignedHeaders=content-type;host, Signature={signature}"
        )

    async def _call(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self._secret_id or not self._secret_key:
            raise ExternalAPIError(self.name, "Tencent Cloud credentials are not configured", status_code=401)

        payload = json.dumps(params)
        timestamp = int(time.time())
        headers = {
            "Authorization": self._sign(payload, timestamp),
            "Content-Type": "application/json; charset=utf-8",
            "Host": self._host,
            "X-TC-Action": action,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Version": self.api_version,
            "X-TC-Region": self._region,
        }

        try:
            async with self._http.post(
                f"https://{self._host}/", data=payload, headers=headers
            ) as response:
                status = response.status
                body = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ExternalAPIError(self.name, f"{action} timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ExternalAPIError(self.name, f"{action} failed: {exc}") from exc

        if status >= 400:
            raise ExternalAPIError(self.name, f"{action} returned HTTP {status}", status_code=status)

        result = (body or {}).get("Response") or {}
        error = result.get("Error")
        if error:
            code = str(error.get("Code", ""))
            raise ExternalAPIError(
                self.name,
                f"{action} failed: {error.get('Message', code)}",
                status_code=_status_for_error_code(code),
                code=code,
            )
        return result

    async def submit(self, image_url: str) -> ModelJobSubmission:
        result = await self._call(
            "SubmitHunyuanTo3DRapidJob",
            {"ImageUrl": image_url, "ResultFormat": self._result_format, "EnablePBR": False},
        )
        job_id = result.get("JobId")
        if not job_id:
            raise ExternalAPIError(self.name, "Submit response did not contain a JobId")
        return ModelJobSubmission(job_id=job_id, request_id=result.get("RequestId", ""))

    async def poll_status(self, job_id: str) -> ModelJobStatus:
        result = await self._call("QueryHunyuanTo3DRapidJob", {"JobId": job_id})
        try:
            state = ProviderJobState(result.get("Status"))
        except ValueError as exc:
            raise ExternalAPIError(
                self.name, f"Unknown job status: {result.get('Status')!r}"
            ) from exc

        files = tuple(
            ModelFile(
                type=item.get("Type"),
                url=item.get("Url"),
                preview_image_url=item.get("PreviewImageUrl"),
            )
            for item in result.get("ResultFile3Ds") or []
        )
        return ModelJobStatus(
            job_id=job_id,
            status=state,
            result_files=files,
            error_code=result.get("ErrorCode") or None,
            error_message=result.get("ErrorMessage") or None,
            request_id=result.get("RequestId", ""),
        )


_MOCK_OBJ = "\n".join(
    [
        "# mock model",
        "v 0 0 0",
        "v 1 0 0",
        "v 0 1 0",
        "v 0 0 1",
        "f 1 2 3",
        "f 1 2 4",
        "f 1 3 4",
        "f 2 3 4",
        "",
    ]
)


class MockModel3DProvider:
    """Walks every submitted job through WAIT -> RUN -> DONE on successive polls."""

    name = "mock"

    def __init__(self, result_format: str = "OBJ", polls_per_state: int = 1) -> None:
        self._result_format = result_format
        self._polls_per_state = polls_per_state
        self._polls: dict[str, int] = {}

    async def submit(self, image_url: str) -> ModelJobSubmission:
        job_id = f"mock-job-{uuid.uuid4().hex}"
        self._polls[job_id] = 0
        logger.info("model_provider.mock_submitted", job_id=job_id, image_url=image_url[:80])
        return ModelJobSubmission(job_id=job_id, request_id=f"mock-request-{uuid.uuid4().hex}")

    async def poll_status(self, job_id: str) -> ModelJobStatus:
        if job_id not in self._polls:
            raise ExternalAPIError(self.name, f"Unknown job {job_id}", status_code=404)

        polls = self._polls[job_id]
        self._polls[job_id] = polls + 1
        step = polls // self._polls_per_state
        if step == 0:
            return ModelJobStatus(job_id=job_id, status=ProviderJobState.WAIT)
        if step == 1:
            return ModelJobStatus(job_id=job_id, status=ProviderJobState.RUN)

        model_data = base64.b64encode(_MOCK_OBJ.encode("utf-8")).decode("ascii")
        return ModelJobStatus(
            job_id=job_id,
            status=ProviderJobState.DONE,
            result_files=(
                ModelFile(
                    type=self._result_format,
                    url=f"data:model/obj;base64,{model_data}",
                ),
            ),
        )
