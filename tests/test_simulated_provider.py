import asyncio

import pytest

from beatworks.kie import KieProvider
from beatworks.pipeline.models import ErrorKind, GenerationSettings
from beatworks.provider_factory import ProviderFactory
from beatworks.simulated import PLACEHOLDER_VIDEO, SimulatedProvider
from beatworks.wavespeed import WaveSpeedProvider


def run_job(provider, prompt, polls=5):
    async def scenario():
        job_id = await provider.submit(prompt, None, GenerationSettings())
        for _ in range(polls):
            status = await provider.poll(job_id)
            if status.status in ("succeeded", "failed"):
                return status
        return status

    return asyncio.run(scenario())


def test_simulated_job_succeeds_after_polls():
    status = run_job(SimulatedProvider(polls_to_complete=2), "a quiet street")
    assert status.status == "succeeded"
    assert status.result_url == PLACEHOLDER_VIDEO
    assert status.last_frame_url
    assert status.duration == 5


def test_simulated_failure_markers():
    provider = SimulatedProvider(polls_to_complete=1)

    assert run_job(provider, "street [fail]").error_kind == ErrorKind.CONTENT_REJECTED
    assert run_job(provider, "street [flaky]").error_kind == ErrorKind.SERVER_ERROR
    assert run_job(provider, "street [flaky]").status == "succeeded"


def test_simulated_cancel():
    provider = SimulatedProvider(polls_to_complete=3)

    async def scenario():
        job_id = await provider.submit("street", None, GenerationSettings())
        cancelled = await provider.cancel(job_id)
        return cancelled, await provider.poll(job_id), await provider.cancel("sim_unknown")

    cancelled, status, unknown = asyncio.run(scenario())
    assert cancelled is True
    assert status.error_kind == ErrorKind.CANCELLED
    assert unknown is False


def test_factory_routes_by_provider_family():
    factory = ProviderFactory(enable_mocks=False)

    assert isinstance(factory("veo-3.1-fast"), KieProvider)
    assert isinstance(factory("runway-gen3"), KieProvider)
    assert isinstance(factory("luma-flash"), WaveSpeedProvider)
    assert factory("veo-3.1") is factory("runway-gen3-turbo")

    with pytest.raises(ValueError):
        factory("sora")


def test_factory_mock_mode_uses_simulator():
    factory = ProviderFactory(enable_mocks=True)
    assert isinstance(factory.get_provider("veo-3.1"), SimulatedProvider)
    assert factory("luma") is factory("veo-3.1")


def test_factory_accepts_prebuilt_adapters():
    simulated = SimulatedProvider()
    factory = ProviderFactory(enable_mocks=False, adapters={"kie": simulated})
    assert factory("veo-3.1") is simulated
