import asyncio

import pytest

from resheet.resheet_datatypes import Pending
from resheet.resheet_result import (
    AsyncResult, ImmediateResult, async_result, get_result_value, is_awaitable, result_from,
)


def test_plain_values_are_immediate():
    result = result_from(42, lambda r: None)
    assert result == ImmediateResult(42)
    assert get_result_value(result) == 42


def test_get_result_value_for_async_states():
    assert get_result_value(AsyncResult('pending')) is Pending
    error = ValueError("bad")
    assert get_result_value(AsyncResult('failed', error=error)) is error
    assert get_result_value(AsyncResult('finished', value=3)) == 3


def test_get_result_value_rejects_other_objects():
    with pytest.raises(TypeError):
        get_result_value("not a result")


def test_without_running_loop_result_fails():
    async def never():
        return 1

    updates = []
    result = async_result(never(), updates.append)
    assert result.state == 'failed'
    assert isinstance(result.error, RuntimeError)
    assert updates == []


@pytest.mark.asyncio
async def test_async_result_settles_once():
    updates = []

    async def compute():
        await asyncio.sleep(0)
        return "done"

    result = result_from(compute(), updates.append)
    assert isinstance(result, AsyncResult)
    assert get_result_value(result) is Pending

    await asyncio.sleep(0.01)
    assert len(updates) == 1
    assert updates[0].state == 'finished'
    assert updates[0].value == "done"
    assert updates[0].cancellation is result.cancellation


@pytest.mark.asyncio
async def test_async_result_failure_is_reported_as_value():
    updates = []

    async def boom():
        raise KeyError("missing")

    async_result(boom(), updates.append)
    await asyncio.sleep(0.01)
    assert updates[0].state == 'failed'
    assert isinstance(updates[0].error, KeyError)


@pytest.mark.asyncio
async def test_cancelled_result_never_reports():
    updates = []
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)
        return 1

    result = async_result(slow(), updates.append)
    await started.wait()
    result.cancel()
    result.cancel()
    assert result.cancelled
    await asyncio.sleep(0.01)
    assert updates == []


@pytest.mark.asyncio
async def test_foreign_future_is_not_cancelled():
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    updates = []

    result = async_result(future, updates.append)
    result.cancel()
    assert not future.cancelled()
    future.set_result(5)
    await asyncio.sleep(0)
    assert updates == []


def test_is_awaitable():
    async def coro():
        return 1

    c = coro()
    assert is_awaitable(c)
    assert not is_awaitable(1)
    c.close()


def test_immediate_cancel_is_a_noop():
    ImmediateResult(1).cancel()
