import pytest

from lifx_homekit_bridge.health import BackoffPolicy, HealthMonitor


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(base=0.5, factor=2.0, maximum=3.0)
    assert policy.delay(0) == 0.0
    assert policy.delay(1) == 0.5
    assert policy.delay(2) == 1.0
    assert policy.delay(3) == 2.0
    assert policy.delay(10) == 3.0


@pytest.mark.asyncio
async def test_failures_degrade_then_suppress() -> None:
    health = HealthMonitor(("discovery", "api"), failure_threshold=2, cooldown_seconds=60.0)

    await health.record_failure("discovery", RuntimeError("socket busy"))
    assert await health.overall_status() == "degraded"

    await health.record_failure("discovery", RuntimeError("socket busy"))
    snapshot = await health.snapshot()
    assert snapshot["discovery"]["status"] == "suppressed"
    assert snapshot["discovery"]["last_error"] == "socket busy"
    assert snapshot["api"]["status"] == "ok"
    assert await health.overall_status() == "suppressed"

    allowed, remaining = await health.allow_attempt("discovery")
    assert allowed is False
    assert remaining > 0


@pytest.mark.asyncio
async def test_cooldown_allows_recovery() -> None:
    health = HealthMonitor(("homekit",), failure_threshold=1, cooldown_seconds=0.0)
    await health.record_failure("homekit")

    allowed, _ = await health.allow_attempt("homekit")
    assert allowed is True
    assert (await health.snapshot())["homekit"]["status"] == "recovering"

    await health.record_success("homekit")
    assert await health.overall_status() == "ok"
