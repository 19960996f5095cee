import asyncio

import pytest

from reqflow.inflight import InFlightRegistry


@pytest.mark.asyncio
async def test_concurrent_joins_share_one_call():
    registry = InFlightRegistry()
    release = asyncio.Event()
    calls = 0

    async def producer():
        nonlocal calls
        calls += 1
        await release.wait()
        return "value"

    tasks = [asyncio.create_task(registry.join("key", producer)) for _ in range(3)]
    await asyncio.sleep(0)
    assert "key" in registry
    assert registry.waiters("key") == 3

    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert [value for value, _ in results] == ["value"] * 3
    assert [joined for _, joined in results] == [False, True, True]
    assert registry.joined == 2
    assert "key" not in registry


@pytest.mark.asyncio
async def test_failure_is_shared_and_entry_removed():
    registry = InFlightRegistry()

    async def producer():
        await asyncio.sleep(0.01)
        raise ValueError("boom")

    results = await asyncio.gather(
        registry.join("key", producer),
        registry.join("key", producer),
        return_exceptions=True,
    )

    assert all(isinstance(result, ValueError) for result in results)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_call_after_settlement_starts_a_new_entry():
    registry = InFlightRegistry()
    calls = 0

    async def producer():
        nonlocal calls
        calls += 1
        return calls

    first, _ = await registry.join("key", producer)
    second, joined = await registry.join("key", producer)

    assert (first, second) == (1, 2)
    assert joined is False


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_call():
    registry = InFlightRegistry()
    release = asyncio.Event()

    async def producer():
        await release.wait()
        return "value"

    first = asyncio.create_task(registry.join("key", producer))
    second = asyncio.create_task(registry.join("key", producer))
    await asyncio.sleep(0)

    first.cancel()
    await asyncio.sleep(0)
    assert registry.waiters("key") == 1

    release.set()
    assert await second == ("value", True)
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_last_waiter_cancelling_cancels_shared_call():
    registry = InFlightRegistry()
    cancelled = asyncio.Event()

    async def producer():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    waiter = asyncio.create_task(registry.join("key", producer))
    await asyncio.sleep(0)
    waiter.cancel()
    await asyncio.sleep(0.01)

    assert cancelled.is_set()
    assert "key" not in registry
