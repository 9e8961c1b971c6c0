import asyncio
import json

import httpx
import pytest

from beatworks.kie import KieProvider
from beatworks.pipeline.errors import ProviderPermanentError, ProviderTransientError
from beatworks.pipeline.models import ErrorKind, GenerationSettings, VideoProvider


def kie_with(handler):
    requests = []

    def record(request: httpx.Request):
        requests.append(request)
        return handler(request)

    return KieProvider(api_key="test-key", transport=httpx.MockTransport(record)), requests


def test_submit_text_to_video():
    provider, requests = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": {"taskId": "task_1"}}))
    settings = GenerationSettings(provider=VideoProvider.VEO_31_FAST)

    task_id = asyncio.run(provider.submit("a harbour at dusk", None, settings))

    assert task_id == "task_1"
    (request,) = requests
    assert request.method == "POST"
    assert request.url.path == "/api/v1/veo/generate"
    assert request.headers["Authorization"] == "Bearer test-key"
    payload = json.loads(request.content)
    assert payload["model"] == "veo3_fast"
    assert payload["duration"] == 5
    assert payload["quality"] == "1080p"
    assert "mode" not in payload
    assert "imageUrls" not in payload


def test_submit_puts_continuity_frame_first():
    provider, requests = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": {"taskId": "task_2"}}))
    settings = GenerationSettings(provider=VideoProvider.RUNWAY_GEN3)

    asyncio.run(provider.submit("go", "https://cdn/ref.png", settings, continuity_frame="https://cdn/last.jpg"))

    request = requests[0]
    assert request.url.path == "/api/v1/runway/generate"
    payload = json.loads(request.content)
    assert payload["mode"] == "REFERENCE_2_VIDEO"
    assert payload["imageUrls"] == ["https://cdn/last.jpg", "https://cdn/ref.png"]


def test_submit_without_task_id_is_permanent():
    provider, _ = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": {}}))
    with pytest.raises(ProviderPermanentError):
        asyncio.run(provider.submit("go", None, GenerationSettings()))


@pytest.mark.parametrize(
    "status_code, error_type, kind",
    [
        (429, ProviderTransientError, "rate_limited"),
        (503, ProviderTransientError, "server_error"),
        (504, ProviderTransientError, "timeout"),
        (402, ProviderPermanentError, "credit_insufficient"),
        (400, ProviderPermanentError, "api_error"),
    ],
)
def test_http_errors_are_classified(status_code, error_type, kind):
    provider, _ = kie_with(lambda r: httpx.Response(status_code, text="nope"))
    with pytest.raises(error_type) as exc_info:
        asyncio.run(provider.submit("go", None, GenerationSettings()))
    assert exc_info.value.kind == kind


def test_error_code_in_body_is_classified():
    provider, _ = kie_with(lambda r: httpx.Response(200, json={"code": 500, "msg": "internal"}))
    with pytest.raises(ProviderTransientError):
        asyncio.run(provider.submit("go", None, GenerationSettings()))


def test_network_failures_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider, _ = kie_with(handler)
    with pytest.raises(ProviderTransientError) as exc_info:
        asyncio.run(provider.poll("task_1"))
    assert exc_info.value.kind == "server_error"


def test_poll_uses_the_model_status_path():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "task_r"}})
        return httpx.Response(200, json={"code": 200, "data": {"status": "GENERATING"}})

    provider, requests = kie_with(handler)

    async def scenario():
        await provider.submit("go", None, GenerationSettings(provider=VideoProvider.RUNWAY_GEN3_TURBO))
        return await provider.poll("task_r")

    status = asyncio.run(scenario())

    assert status.status == "running"
    poll_request = requests[1]
    assert poll_request.url.path == "/api/v1/runway/record-detail"
    assert poll_request.url.params["taskId"] == "task_r"


@pytest.mark.parametrize(
    "record, url",
    [
        ({"successFlag": 1, "response": {"resultUrls": ["https://cdn/a.mp4"]}}, "https://cdn/a.mp4"),
        ({"status": "SUCCESS", "results": [{"videoUrl": "https://cdn/b.mp4"}]}, "https://cdn/b.mp4"),
        ({"status": "success", "videoUrl": "https://cdn/c.mp4"}, "https://cdn/c.mp4"),
    ],
)
def test_poll_success_shapes(record, url):
    record["lastFrameUrl"] = "https://cdn/last.jpg"
    provider, _ = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": record}))

    status = asyncio.run(provider.poll("task_1"))

    assert status.status == "succeeded"
    assert status.result_url == url
    assert status.last_frame_url == "https://cdn/last.jpg"


@pytest.mark.parametrize(
    "record, kind",
    [
        ({"status": "SENSITIVE_WORD_ERROR", "errorMessage": "flagged"}, ErrorKind.CONTENT_REJECTED),
        ({"successFlag": 2, "errorMessage": "Violates content policy"}, ErrorKind.CONTENT_REJECTED),
        ({"status": "GENERATE_FAILED", "failReason": "Generation timed out"}, ErrorKind.TIMEOUT),
        ({"successFlag": 3, "errorMessage": "Invalid image url"}, ErrorKind.INVALID_REFERENCE),
        ({"status": "fail"}, ErrorKind.API_ERROR),
    ],
)
def test_poll_failure_kinds(record, kind):
    provider, _ = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": record}))

    status = asyncio.run(provider.poll("task_1"))

    assert status.status == "failed"
    assert status.error_kind == kind
    assert status.message.startswith("Kie.ai task failed: ")


def test_poll_pending_is_queued():
    provider, _ = kie_with(lambda r: httpx.Response(200, json={"code": 200, "data": {"status": "PENDING"}}))
    assert asyncio.run(provider.poll("task_1")).status == "queued"


def test_cancel_is_unsupported():
    provider, requests = kie_with(lambda r: httpx.Response(500))
    assert asyncio.run(provider.cancel("task_1")) is False
    assert requests == []
