import asyncio

import pytest

from app.models import GenerationStatus, JobStatus, RequestPhase, RequestStatus
from app.providers.errors import ExternalAPIError
from app.providers.model3d import ModelFile, ModelJobSubmission, ProviderJobState
from app.services.queues import MODEL_GENERATION_QUEUE, update_queue_config
from app.services.requests import (
    cancel_request,
    create_model_with_job,
    create_request,
    get_request,
    select_image,
)
from tests.fakes import OBJ_DATA_URL, drain, event_names, make_awaiting_selection
from worker.model_worker import (
    JOB_STATUS_MAP,
    PROGRESS_MAP,
    PROVIDER_STATUS_MAP,
    ModelGenerationWorker,
    translate_provider_state,
)

pytestmark = pytest.mark.anyio


async def _selected_request(session_factory, settings, index=2):
    async with session_factory() as session:
        request = await create_request(
            session=session, redis=None, settings=settings, user_id="u1", prompt="a toy robot"
        )
        request_id = request.id
    await make_awaiting_selection(session_factory, request_id)
    async with session_factory() as session:
        await select_image(
            session=session, redis=None, settings=settings, request_id=request_id, index=index
        )
    return request_id


async def _load(session_factory, request_id):
    async with session_factory() as session:
        return await get_request(session=session, request_id=request_id)


def test_every_provider_state_has_exactly_one_translation() -> None:
    assert set(PROVIDER_STATUS_MAP) == set(ProviderJobState)
    assert set(PROGRESS_MAP) == set(ProviderJobState)
    assert set(PROVIDER_STATUS_MAP.values()) == set(GenerationStatus)
    assert set(JOB_STATUS_MAP) == set(GenerationStatus)
    assert translate_provider_state(ProviderJobState.WAIT) == (GenerationStatus.PENDING, 0)
    assert translate_provider_state(ProviderJobState.RUN) == (GenerationStatus.GENERATING, 50)
    assert translate_provider_state(ProviderJobState.DONE) == (GenerationStatus.COMPLETED, 100)
    assert translate_provider_state(ProviderJobState.FAIL) == (GenerationStatus.FAILED, 0)


async def test_generates_model_from_selected_image(
    model_worker, model_provider, session_factory, settings, registry, storage, sleeper
) -> None:
    request_id = await _selected_request(session_factory, settings)
    connection = registry.add_connection(request_id)

    assert await model_worker.poll_once() == 1

    request = await _load(session_factory, request_id)
    assert request.phase == RequestPhase.COMPLETED
    assert request.status == RequestStatus.MODEL_COMPLETED
    assert request.model_generation_started_at is not None
    assert request.completed_at is not None

    model = request.model
    assert model.status == GenerationStatus.COMPLETED
    assert model.source_image_id == request.images[2].id
    assert model.model_url == f"/files/requests/{request_id}/models/model.obj"
    assert model.preview_image_url == f"/files/requests/{request_id}/models/preview.png"
    assert await storage.exists(model.model_url)
    assert model.job.status == JobStatus.COMPLETED
    assert model.job.progress == 100
    assert model.job.provider_job_id == "provider-job-1"

    assert model_provider.submitted == [
        f"{settings.public_base_url}/files/requests/{request_id}/images/2.png"
    ]
    assert sleeper.delays == [settings.model_status_poll_interval] * 3
    assert event_names(await drain(connection)) == [
        "task:updated",
        "model:generating",
        "model:progress",
        "model:progress",
        "model:completed",
        "task:updated",
    ]


async def test_model_completed_reaches_every_open_connection(
    model_worker, session_factory, settings, registry
) -> None:
    request_id = await _selected_request(session_factory, settings)
    first = registry.add_connection(request_id)
    second = registry.add_connection(request_id)
    closed = registry.add_connection(request_id)
    closed.close()

    await model_worker.poll_once()

    assert "model:completed" in event_names(await drain(first))
    assert "model:completed" in event_names(await drain(second))
    assert registry.connection_count(request_id) == 2


async def test_provider_failure_marks_model_failed(
    model_worker, model_provider, session_factory, settings, registry
) -> None:
    model_provider.states = [ProviderJobState.WAIT, ProviderJobState.FAIL]
    model_provider.error_message = "Image contains no recognisable object"
    request_id = await _selected_request(session_factory, settings)
    connection = registry.add_connection(request_id)

    await model_worker.poll_once()

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert request.phase == RequestPhase.MODEL_GENERATION
    assert request.error_message == "Image contains no recognisable object"
    assert request.model.status == GenerationStatus.FAILED
    assert request.model.failed_at is not None
    assert request.model.completed_at is None
    assert request.model.job.status == JobStatus.FAILED
    assert event_names(await drain(connection))[-2:] == ["model:failed", "task:updated"]


async def test_done_without_matching_file_is_fatal(
    model_worker, model_provider, session_factory, settings
) -> None:
    model_provider.result_files = (ModelFile(type="GLB", url=OBJ_DATA_URL),)
    request_id = await _selected_request(session_factory, settings)

    await model_worker.poll_once()

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert "OBJ" in request.error_message
    assert request.model.model_url is None
    assert request.model.status == GenerationStatus.FAILED


async def test_polling_budget_exceeded_times_out(
    model_worker, model_provider, session_factory, settings, sleeper
) -> None:
    model_provider.states = [ProviderJobState.RUN]
    request_id = await _selected_request(session_factory, settings)

    await model_worker.poll_once()

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert request.model.job.status == JobStatus.TIMEOUT
    assert request.model.status == GenerationStatus.FAILED
    budget_polls = int(settings.model_max_poll_seconds / settings.model_status_poll_interval)
    assert model_provider.polls == budget_polls


async def test_non_retryable_submission_failure(
    model_worker, model_provider, session_factory, settings, sleeper
) -> None:
    model_provider.submit_errors = [
        ExternalAPIError("fake3d", "Account in arrears", status_code=403)
    ]
    request_id = await _selected_request(session_factory, settings)

    await model_worker.poll_once()

    assert len(model_provider.submitted) == 1
    assert sleeper.delays == []
    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert request.model is None
    assert "arrears" in request.error_message


async def test_transient_submission_failure_is_retried(
    model_worker, model_provider, session_factory, settings, sleeper
) -> None:
    model_provider.submit_errors = [ExternalAPIError("fake3d", "gateway", status_code=502)]
    request_id = await _selected_request(session_factory, settings)

    await model_worker.poll_once()

    assert len(model_provider.submitted) == 2
    assert sleeper.delays[0] == settings.model_retry_base_delay
    request = await _load(session_factory, request_id)
    assert request.phase == RequestPhase.COMPLETED


async def test_cancellation_stops_polling(
    model_worker, model_provider, session_factory, settings
) -> None:
    model_provider.states = [ProviderJobState.RUN]
    request_id = await _selected_request(session_factory, settings)
    original = model_provider.poll_status

    async def cancel_on_first_poll(job_id):
        result = await original(job_id)
        if model_provider.polls == 1:
            async with session_factory() as session:
                await cancel_request(session=session, request_id=request_id)
        return result

    model_provider.poll_status = cancel_on_first_poll

    await model_worker.poll_once()

    assert model_provider.polls == 1
    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert request.error_message == "cancelled"


async def test_requests_with_a_model_are_not_claimed(
    model_worker, model_provider, session_factory, settings
) -> None:
    request_id = await _selected_request(session_factory, settings)
    await model_worker.poll_once()

    async with session_factory() as session:
        request = await get_request(session=session, request_id=request_id)
        request.status = RequestStatus.MODEL_PENDING
        request.phase = RequestPhase.MODEL_GENERATION
        await session.commit()

    assert await model_worker.poll_once() == 0
    assert len(model_provider.submitted) == 1


async def test_recover_requeues_unsubmitted_claims(
    model_worker, session_factory, settings
) -> None:
    request_id = await _selected_request(session_factory, settings)
    async with session_factory() as session:
        request = await get_request(session=session, request_id=request_id)
        request.status = RequestStatus.MODEL_GENERATING
        await session.commit()

    assert await model_worker.recover() == 1

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.MODEL_PENDING
    assert await model_worker.poll_once() == 1


async def test_transient_poll_timeout_keeps_polling(
    model_worker, model_provider, session_factory, settings
) -> None:
    request_id = await _selected_request(session_factory, settings)
    original = model_provider.poll_status
    timeouts = [asyncio.TimeoutError()]

    async def time_out_once(job_id):
        if timeouts:
            raise timeouts.pop()
        return await original(job_id)

    model_provider.poll_status = time_out_once

    await model_worker.poll_once()

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.MODEL_COMPLETED
    assert request.model.job.status == JobStatus.COMPLETED


async def test_existing_model_fails_request_instead_of_stalling(
    model_worker, model_provider, session_factory, settings, registry
) -> None:
    request_id = await _selected_request(session_factory, settings)
    original = model_provider.submit

    async def racing_submit(image_url):
        async with session_factory() as session:
            request = await get_request(session=session, request_id=request_id)
            await create_model_with_job(
                session=session,
                request=request,
                source_image=request.images[2],
                submission=ModelJobSubmission(job_id="other-worker-job"),
                provider_name="fake3d",
                model_format="OBJ",
            )
        return await original(image_url)

    model_provider.submit = racing_submit
    connection = registry.add_connection(request_id)

    await model_worker.poll_once()

    request = await _load(session_factory, request_id)
    assert request.status == RequestStatus.FAILED
    assert "already has a model" in request.error_message
    assert request.model.job.provider_job_id == "other-worker-job"
    assert model_worker.failed == 1
    assert event_names(await drain(connection))[-2:] == ["model:failed", "task:updated"]


async def test_no_transaction_is_held_across_provider_calls(
    model_provider, session_factory, settings, storage, registry, sleeper
) -> None:
    request_id = await _selected_request(session_factory, settings)
    sessions = []

    def recording_factory():
        session = session_factory()
        sessions.append(session)
        return session

    open_during_calls = []
    original_submit = model_provider.submit
    original_poll = model_provider.poll_status

    async def submit(image_url):
        open_during_calls.append(any(s.in_transaction() for s in sessions))
        return await original_submit(image_url)

    async def poll_status(job_id):
        open_during_calls.append(any(s.in_transaction() for s in sessions))
        return await original_poll(job_id)

    model_provider.submit = submit
    model_provider.poll_status = poll_status
    worker = ModelGenerationWorker(
        session_factory=recording_factory,
        model_provider=model_provider,
        storage=storage,
        registry=registry,
        settings=settings,
        sleep=sleeper,
        clock=sleeper.clock,
    )

    await worker.poll_once()

    assert (await _load(session_factory, request_id)).status == RequestStatus.MODEL_COMPLETED
    assert open_during_calls == [False] * 4


async def test_paused_queue_is_not_claimed(
    model_worker, model_provider, session_factory, settings
) -> None:
    request_id = await _selected_request(session_factory, settings)
    async with session_factory() as session:
        await update_queue_config(
            session=session, queue_name=MODEL_GENERATION_QUEUE, is_active=False
        )

    assert await model_worker.poll_once() == 0
    assert model_provider.submitted == []

    async with session_factory() as session:
        await update_queue_config(
            session=session, queue_name=MODEL_GENERATION_QUEUE, is_active=True
        )
    assert await model_worker.poll_once() == 1
    assert (await _load(session_factory, request_id)).status == RequestStatus.MODEL_COMPLETED


async def test_priority_orders_model_claims(
    model_worker, model_provider, session_factory, settings
) -> None:
    settings.model_max_concurrency = 1
    low = await _selected_request(session_factory, settings)
    async with session_factory() as session:
        urgent = await create_request(
            session=session, redis=None, settings=settings, user_id="u1", prompt="urgent", priority=5
        )
        urgent_id = urgent.id
    await make_awaiting_selection(session_factory, urgent_id)
    async with session_factory() as session:
        await select_image(
            session=session, redis=None, settings=settings, request_id=urgent_id, index=0
        )
        await update_queue_config(
            session=session, queue_name=MODEL_GENERATION_QUEUE, enable_priority=True
        )

    await model_worker.poll_once()

    assert (await _load(session_factory, urgent_id)).status == RequestStatus.MODEL_COMPLETED
    low_request = await _load(session_factory, low)
    assert low_request.status == RequestStatus.MODEL_PENDING
    assert (await _load(session_factory, urgent_id)).model.job.priority == 5
