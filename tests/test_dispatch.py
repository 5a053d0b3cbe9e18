"""Job dispatch tests: strategy selection, QStash publishing, supervised background jobs."""

import asyncio
import json
from urllib.parse import unquote

import httpx
import pytest
from pydantic import ValidationError as SettingsValidationError

from parascene.core.config import Settings
from parascene.services.exceptions import ConfigurationError, QueuePublishError
from parascene.services.queue.qstash import QStashClient
from parascene.workers.creation_job import CreationJobPayload
from parascene.workers.dispatch import (
    FailureSink,
    InProcessDispatcher,
    QueueDispatcher,
    build_dispatcher,
)


def make_payload(image_id: int = 11) -> CreationJobPayload:
    return CreationJobPayload(
        created_image_id=image_id,
        user_id=2,
        server_id=3,
        method="txt2img",
        args={"prompt": "a lighthouse"},
        credit_cost=0.5,
    )


async def noop_runner(payload):
    return None


class TestStrategySelection:
    def test_process_mode_runs_in_process(self):
        settings = Settings(APP_ENV="test", DEPLOYMENT_MODE="process", VERCEL="")

        assert isinstance(build_dispatcher(settings, noop_runner), InProcessDispatcher)

    def test_serverless_without_token_is_configuration_error(self):
        settings = Settings(APP_ENV="test", DEPLOYMENT_MODE="serverless", QSTASH_TOKEN="")

        with pytest.raises(ConfigurationError):
            build_dispatcher(settings, noop_runner)

    def test_vercel_forces_queue_dispatch(self):
        settings = Settings(
            APP_ENV="test",
            DEPLOYMENT_MODE="process",
            VERCEL="1",
            QSTASH_TOKEN="qstash_token",
            APP_BASE_URL="https://app.test/",
        )

        dispatcher = build_dispatcher(settings, noop_runner)

        assert isinstance(dispatcher, QueueDispatcher)
        assert dispatcher.callback_url == "https://app.test/api/create/worker"

    def test_settings_fail_fast_outside_tests(self):
        with pytest.raises(SettingsValidationError) as exc_info:
            Settings(
                APP_ENV="production",
                DEPLOYMENT_MODE="serverless",
                QSTASH_TOKEN="",
                QSTASH_CURRENT_SIGNING_KEY="",
                QSTASH_NEXT_SIGNING_KEY="",
            )
        assert "QSTASH_TOKEN" in str(exc_info.value)

    def test_qstash_client_requires_token(self):
        with pytest.raises(ConfigurationError):
            QStashClient(token="  ")


@pytest.mark.asyncio
class TestQueueDispatcher:
    async def test_publishes_payload_to_callback(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = unquote(request.url.raw_path.decode())
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "msg_123"})

        client = QStashClient(
            token="qstash_token",
            base_url="https://qstash.test",
            transport=httpx.MockTransport(handler),
        )
        dispatcher = QueueDispatcher(client, "https://app.test/api/create/worker")

        result = await dispatcher.dispatch(make_payload())

        assert result.enqueued is True
        assert result.message_id == "msg_123"
        assert seen["path"] == "/v2/publish/https://app.test/api/create/worker"
        assert seen["auth"] == "Bearer qstash_token"
        assert seen["body"] == {
            "created_image_id": 11,
            "user_id": 2,
            "server_id": 3,
            "method": "txt2img",
            "args": {"prompt": "a lighthouse"},
            "credit_cost": 0.5,
        }

    async def test_publish_failure_is_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream down")

        client = QStashClient(
            token="qstash_token",
            base_url="https://qstash.test",
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(QueuePublishError) as exc_info:
            await QueueDispatcher(client, "https://app.test/api/create/worker").dispatch(
                make_payload()
            )
        assert "500" in str(exc_info.value)

    async def test_network_failure_is_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        client = QStashClient(token="qstash_token", transport=httpx.MockTransport(handler))

        with pytest.raises(QueuePublishError):
            await client.publish_json("https://app.test/api/create/worker", {"a": 1})


@pytest.mark.asyncio
class TestInProcessDispatcher:
    async def test_dispatch_returns_before_job_finishes(self):
        release = asyncio.Event()
        finished = []

        async def slow_runner(payload):
            await release.wait()
            finished.append(payload.created_image_id)

        dispatcher = InProcessDispatcher(slow_runner)
        result = await dispatcher.dispatch(make_payload(21))

        assert result.enqueued is False
        assert dispatcher.pending == 1
        assert finished == []

        release.set()
        await dispatcher.drain(timeout=1)

        assert finished == [21]
        assert dispatcher.pending == 0

    async def test_job_failure_goes_to_failure_sink(self):
        async def failing_runner(payload):
            raise RuntimeError("storage unavailable")

        sink = FailureSink(maxlen=5)
        dispatcher = InProcessDispatcher(failing_runner, failure_sink=sink)

        await dispatcher.dispatch(make_payload(31))
        await dispatcher.drain(timeout=1)
        # Done callbacks run on the next loop iteration
        await asyncio.sleep(0)

        assert len(sink.failures) == 1
        failure = sink.failures[0]
        assert failure.created_image_id == 31
        assert failure.error == "storage unavailable"
        assert failure.error_type == "RuntimeError"

    async def test_drain_cancels_jobs_past_timeout(self):
        async def stuck_runner(payload):
            await asyncio.sleep(60)

        dispatcher = InProcessDispatcher(stuck_runner)
        await dispatcher.dispatch(make_payload(41))

        await dispatcher.drain(timeout=0.01)
        await asyncio.sleep(0)

        assert dispatcher.pending == 0
        assert len(dispatcher.failure_sink.failures) == 0

    async def test_failure_sink_is_bounded(self):
        sink = FailureSink(maxlen=2)
        for image_id in (1, 2, 3):
            sink.record(make_payload(image_id), ValueError("boom"))

        assert [f.created_image_id for f in sink.failures] == [2, 3]
