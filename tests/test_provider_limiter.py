import asyncio

import pytest

from beatworks.provider_limiter import ProviderLimiter


def test_per_provider_cap():
    limiter = ProviderLimiter(max_concurrent_jobs=10)
    limiter.set_limit("kie", 2)
    peak = {"kie": 0}

    async def job():
        async with limiter.slot("kie"):
            peak["kie"] = max(peak["kie"], limiter.get_active_jobs("kie"))
            await asyncio.sleep(0.01)

    async def scenario():
        await asyncio.gather(*(job() for _ in range(6)))

    asyncio.run(scenario())

    assert peak["kie"] == 2
    assert limiter.get_active_jobs() == 0


def test_global_cap_spans_providers():
    limiter = ProviderLimiter(max_concurrent_jobs=3, provider_limits={"kie": 3, "wavespeed": 3})
    peak = 0

    async def job(provider):
        nonlocal peak
        async with limiter.slot(provider):
            peak = max(peak, limiter.get_active_jobs())
            await asyncio.sleep(0.01)

    async def scenario():
        await asyncio.gather(*(job(p) for p in ["kie", "wavespeed"] * 4))

    asyncio.run(scenario())
    assert peak == 3


def test_slot_is_released_on_error():
    limiter = ProviderLimiter(max_concurrent_jobs=1)

    async def scenario():
        with pytest.raises(RuntimeError):
            async with limiter.slot("kie"):
                raise RuntimeError("provider blew up")
        async with limiter.slot("kie"):
            return limiter.get_active_jobs("kie")

    assert asyncio.run(scenario()) == 1
    assert limiter.get_active_jobs() == 0


def test_limits_are_fixed_after_first_use():
    limiter = ProviderLimiter(default_provider_limit=2)
    assert limiter.limit_for("wavespeed") == 2

    limiter.set_limit("wavespeed", 0)
    assert limiter.limit_for("wavespeed") == 1

    async def scenario():
        async with limiter.slot("wavespeed"):
            pass

    asyncio.run(scenario())
    limiter.set_limit("wavespeed", 5)
    assert limiter.limit_for("wavespeed") == 1


def test_snapshot():
    limiter = ProviderLimiter(max_concurrent_jobs=4, provider_limits={"kie": 4})
    assert limiter.snapshot() == {
        "max_concurrent_jobs": 4,
        "active_jobs": 0,
        "providers": {"kie": {"active": 0, "limit": 4}},
    }
