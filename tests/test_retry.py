import pytest

from app.providers.errors import ExternalAPIError
from app.services.retry import (
    GenerationCancelled,
    RetryPolicy,
    compute_delay,
    is_rate_limit_error,
    is_retryable_error,
    retry_with_backoff,
)
from tests.fakes import RecordingSleep

pytestmark = pytest.mark.anyio

POLICY = RetryPolicy(max_retries=3, base_delay=2.0, rate_limit_delay=30.0)


class FlakyOperation:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


async def test_auth_failure_is_attempted_once() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation([ExternalAPIError("siliconflow", "Invalid token", status_code=401)])

    with pytest.raises(ExternalAPIError):
        await retry_with_backoff(operation, request_id="r1", policy=POLICY, sleep=sleep)

    assert operation.calls == 1
    assert sleep.delays == []


async def test_rate_limit_backoff_doubles_from_rate_limit_base() -> None:
    sleep = RecordingSleep()
    errors = [ExternalAPIError("siliconflow", "slow down", status_code=429) for _ in range(3)]
    operation = FlakyOperation(errors)

    assert await retry_with_backoff(operation, request_id="r1", policy=POLICY, sleep=sleep) == "ok"

    assert operation.calls == 4
    assert sleep.delays == [30.0, 60.0, 120.0]


async def test_transient_errors_use_base_delay() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation([
        ExternalAPIError("hunyuan", "upstream", status_code=502),
        ConnectionResetError("reset by peer"),
    ])

    assert await retry_with_backoff(operation, request_id="r1", policy=POLICY, sleep=sleep) == "ok"
    assert sleep.delays == [2.0, 4.0]


async def test_exhaustion_reraises_last_error() -> None:
    sleep = RecordingSleep()
    last = ExternalAPIError("hunyuan", "still broken", status_code=503)
    operation = FlakyOperation([
        ExternalAPIError("hunyuan", "broken", status_code=500),
        ExternalAPIError("hunyuan", "broken", status_code=500),
        last,
    ])
    policy = RetryPolicy(max_retries=2, base_delay=1.0, rate_limit_delay=10.0)

    with pytest.raises(ExternalAPIError) as excinfo:
        await retry_with_backoff(operation, request_id="r1", policy=policy, sleep=sleep)

    assert excinfo.value is last
    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


async def test_cancellation_is_not_retried() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation([GenerationCancelled("request cancelled")])

    with pytest.raises(GenerationCancelled):
        await retry_with_backoff(operation, request_id="r1", policy=POLICY, sleep=sleep)
    assert operation.calls == 1


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (ExternalAPIError("x", "bad", status_code=400), False),
        (ExternalAPIError("x", "payment", status_code=402), False),
        (ExternalAPIError("x", "missing", status_code=404), False),
        (ExternalAPIError("x", "busy", status_code=429), True),
        (ExternalAPIError("x", "oops", status_code=500), True),
        (RuntimeError("Insufficient balance on account"), False),
        (RuntimeError("connection dropped"), True),
    ],
)
def test_error_classification(error, retryable) -> None:
    assert is_retryable_error(error) is retryable


def test_rate_limit_detected_from_message() -> None:
    error = ExternalAPIError("hunyuan", "RequestLimitExceeded: too many requests")
    assert is_rate_limit_error(error)
    assert compute_delay(error, 2, POLICY) == 120.0
    assert compute_delay(RuntimeError("boom"), 2, POLICY) == 8.0
