import asyncio

import pytest

from tacbroker.channel import (
    Channel,
    ChannelClosed,
    ChannelEmpty,
    ChannelFull,
    bounded,
    unbounded,
)


def test_items_come_out_in_order():
    ch = unbounded()
    for item in ["a", "b", "c"]:
        ch.try_send(item)
    assert len(ch) == 3
    assert [ch.try_recv() for _ in range(3)] == ["a", "b", "c"]
    assert len(ch) == 0


def test_try_recv_on_empty_raises_empty():
    ch = unbounded()
    with pytest.raises(ChannelEmpty):
        ch.try_recv()


def test_bounded_rejects_when_full():
    ch = bounded(2)
    ch.try_send(1)
    ch.try_send(2)
    with pytest.raises(ChannelFull):
        ch.try_send(3)
    assert len(ch) == 2
    assert ch.try_recv() == 1
    ch.try_send(3)
    assert [ch.try_recv(), ch.try_recv()] == [2, 3]


@pytest.mark.parametrize("capacity", [0, -1])
def test_bounded_rejects_bad_capacity(capacity):
    with pytest.raises(ValueError):
        bounded(capacity)


def test_close_reports_first_close_only():
    ch = Channel()
    assert ch.closed() is False
    assert ch.close() is True
    assert ch.close() is False
    assert ch.closed() is True


def test_send_after_close_raises():
    ch = unbounded()
    ch.close()
    with pytest.raises(ChannelClosed):
        ch.try_send(1)


def test_queued_items_survive_close():
    ch = unbounded()
    ch.try_send("x")
    ch.close()
    assert ch.try_recv() == "x"
    with pytest.raises(ChannelClosed):
        ch.try_recv()


@pytest.mark.asyncio
async def test_recv_waits_for_send():
    ch = unbounded()
    task = asyncio.create_task(ch.recv())
    await asyncio.sleep(0)
    assert not task.done()
    ch.try_send(42)
    assert await task == 42


@pytest.mark.asyncio
async def test_recv_wakes_on_close():
    ch = unbounded()
    task = asyncio.create_task(ch.recv())
    await asyncio.sleep(0)
    assert not task.done()
    assert ch.close() is True
    with pytest.raises(ChannelClosed) as excinfo:
        await asyncio.wait_for(task, 1)
    assert excinfo.type is ChannelClosed
    assert task.done()
    assert ch.closed() is True
    assert len(ch) == 0


@pytest.mark.asyncio
async def test_async_iteration_stops_on_close():
    ch = unbounded()
    for item in range(4):
        ch.try_send(item)
    ch.close()
    received = [item async for item in ch]
    assert received == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_cancelled_receiver_does_not_swallow_items():
    ch = unbounded()
    first = asyncio.create_task(ch.recv())
    second = asyncio.create_task(ch.recv())
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)
    ch.try_send("item")
    assert await asyncio.wait_for(second, 1) == "item"
    assert first.cancelled()