import asyncio
import json

import httpx
import pytest

from beatworks.pipeline.errors import ProviderPermanentError, ProviderTransientError
from beatworks.pipeline.models import ErrorKind, GenerationSettings, VideoProvider
from beatworks.wavespeed import WaveSpeedProvider


def wavespeed_with(handler):
    requests = []

    def record(request: httpx.Request):
        requests.append(request)
        return handler(request)

    return WaveSpeedProvider(api_key="ws-key", transport=httpx.MockTransport(record)), requests


def test_submit_image_to_video():
    provider, requests = wavespeed_with(lambda r: httpx.Response(200, json={"data": {"id": "pred_1"}}))
    settings = GenerationSettings(provider=VideoProvider.LUMA_FLASH, duration=3, resolution="720p")

    job_id = asyncio.run(
        provider.submit("go", "https://cdn/ref.png", settings, continuity_frame="https://cdn/last.jpg")
    )

    assert job_id == "pred_1"
    request = requests[0]
    assert request.url.path == "/api/v3/luma/ray-2-flash"
    assert request.headers["Authorization"] == "Bearer ws-key"
    payload = json.loads(request.content)
    assert payload == {
        "prompt": "go",
        "duration": 3,
        "resolution": "720p",
        "aspect_ratio": "16:9",
        "image": "https://cdn/last.jpg",
    }


def test_submit_without_images():
    provider, requests = wavespeed_with(lambda r: httpx.Response(200, json={"data": {"id": "pred_2"}}))

    asyncio.run(provider.submit("go", None, GenerationSettings(provider=VideoProvider.LUMA)))

    assert requests[0].url.path == "/api/v3/luma/ray-2"
    assert "image" not in json.loads(requests[0].content)


def test_submit_without_id_is_permanent():
    provider, _ = wavespeed_with(lambda r: httpx.Response(200, json={"data": {}}))
    with pytest.raises(ProviderPermanentError):
        asyncio.run(provider.submit("go", None, GenerationSettings(provider=VideoProvider.LUMA)))


def test_rate_limit_is_transient():
    provider, _ = wavespeed_with(lambda r: httpx.Response(429, text="slow down"))
    with pytest.raises(ProviderTransientError) as exc_info:
        asyncio.run(provider.poll("pred_1"))
    assert exc_info.value.kind == "rate_limited"
    assert exc_info.value.provider_job_id == "pred_1"


def test_timeouts_are_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider, _ = wavespeed_with(handler)
    with pytest.raises(ProviderTransientError) as exc_info:
        asyncio.run(provider.poll("pred_1"))
    assert exc_info.value.kind == "timeout"


def test_poll_completed():
    body = {"data": {"status": "completed", "outputs": ["https://cdn/v.mp4", "https://cdn/v.jpg"]}}
    provider, requests = wavespeed_with(lambda r: httpx.Response(200, json=body))

    status = asyncio.run(provider.poll("pred_1"))

    assert requests[0].url.path == "/api/v3/predictions/pred_1/result"
    assert status.status == "succeeded"
    assert status.result_url == "https://cdn/v.mp4"
    assert status.last_frame_url == "https://cdn/v.jpg"


def test_poll_failed():
    body = {"data": {"status": "failed", "error": "NSFW content detected"}}
    provider, _ = wavespeed_with(lambda r: httpx.Response(200, json=body))

    status = asyncio.run(provider.poll("pred_1"))

    assert status.status == "failed"
    assert status.error_kind == ErrorKind.CONTENT_REJECTED


@pytest.mark.parametrize("raw, expected", [("created", "queued"), ("processing", "running")])
def test_poll_in_progress(raw, expected):
    provider, _ = wavespeed_with(lambda r: httpx.Response(200, json={"data": {"status": raw}}))
    assert asyncio.run(provider.poll("pred_1")).status == expected


def test_cancel():
    provider, requests = wavespeed_with(lambda r: httpx.Response(200, json={"data": {}}))
    assert asyncio.run(provider.cancel("pred_1")) is True
    assert requests[0].method == "POST"
    assert requests[0].url.path == "/api/v3/predictions/pred_1/cancel"


def test_cancel_of_finished_prediction_reports_false():
    provider, _ = wavespeed_with(lambda r: httpx.Response(400, text="already completed"))
    assert asyncio.run(provider.cancel("pred_1")) is False


def test_cancel_server_error_propagates():
    provider, _ = wavespeed_with(lambda r: httpx.Response(502))
    with pytest.raises(ProviderTransientError):
        asyncio.run(provider.cancel("pred_1"))
