from __future__ import annotations

import asyncio
import random

import pytest

from harness.models import BroadcastMessage, MessageKind
from server.events import Broadcaster, format_sse, sse_event_iter


def _out(text: str) -> BroadcastMessage:
    return BroadcastMessage(MessageKind.RUNTIME_OUTPUT, text)


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber_line_by_line():
    b = Broadcaster(queue_size=10)
    s1 = await b.subscribe()
    s2 = await b.subscribe()
    await b.publish(_out("one\ntwo"))
    for sub in (s1, s2):
        assert (await sub.get()).text == "one"
        assert (await sub.get()).text == "two"
    assert b.subscriber_count == 2


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_ends_the_stream():
    b = Broadcaster(queue_size=10)
    sub = await b.subscribe()
    await b.unsubscribe(sub)
    await b.unsubscribe(sub)
    assert b.subscriber_count == 0
    assert sub.closed
    assert await sub.get() is None
    await b.publish(_out("nobody listens"))


@pytest.mark.asyncio
async def test_late_subscriber_sees_no_history():
    b = Broadcaster(queue_size=10)
    early = await b.subscribe()
    await b.publish(_out("before"))
    late = await b.subscribe()
    await b.publish(_out("after"))
    assert (await early.get()).text == "before"
    assert (await late.get()).text == "after"


@pytest.mark.asyncio
async def test_viewer_leaving_mid_stream_does_not_disturb_the_others():
    b = Broadcaster(queue_size=100)
    subs = [await b.subscribe() for _ in range(3)]

    async def produce():
        for i in range(0, 20, 2):
            await b.publish(_out(f"line {i}\nline {i + 1}"))
            await asyncio.sleep(0)

    async def leave():
        await asyncio.sleep(0)
        await b.unsubscribe(subs[1])

    await asyncio.gather(produce(), leave())

    expected = [f"line {i}" for i in range(20)]
    for sub in (subs[0], subs[2]):
        assert [(await sub.get()).text for _ in range(20)] == expected
    assert b.subscriber_count == 2

    partial = [m.text async for m in subs[1].messages()]
    assert partial == expected[: len(partial)]
    assert len(partial) < 20


@pytest.mark.asyncio
async def test_random_interleavings_keep_per_viewer_order():
    rng = random.Random(1234)
    b = Broadcaster(queue_size=1000)
    stable = await b.subscribe()

    async def churn(rounds: int):
        for _ in range(rounds):
            sub = await b.subscribe()
            await asyncio.sleep(rng.random() / 1000)
            await b.unsubscribe(sub)

    async def produce():
        for i in range(200):
            await b.publish(_out(str(i)))
            if rng.random() < 0.3:
                await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(produce(), *(churn(10) for _ in range(5))), timeout=10)

    assert b.subscriber_count == 1
    got = [int((await stable.get()).text) for _ in range(200)]
    assert got == list(range(200))


@pytest.mark.asyncio
async def test_slow_subscriber_is_dropped_without_blocking_others():
    b = Broadcaster(queue_size=3)
    slow = await b.subscribe()
    fast = await b.subscribe()
    for i in range(6):
        await b.publish(_out(str(i)))
        assert (await fast.get()).text == str(i)

    assert slow.closed
    assert b.subscriber_count == 1
    leftovers = [m.text async for m in slow.messages()]
    assert len(leftovers) <= 3


@pytest.mark.asyncio
async def test_close_disconnects_everyone():
    b = Broadcaster()
    subs = [await b.subscribe() for _ in range(2)]
    await b.close()
    assert b.subscriber_count == 0
    for sub in subs:
        assert await sub.get() is None


def test_format_sse_prefixes_and_splits_lines():
    assert format_sse(BroadcastMessage(MessageKind.RUNTIME_OUTPUT, "hi")) == "data: [BRS] hi\n\n"
    assert format_sse(BroadcastMessage(MessageKind.RUNTIME_ERROR, "oops")) == "data: [BRS Error] oops\n\n"
    assert format_sse(BroadcastMessage(MessageKind.INFO, "a\nb")) == "data: a\ndata: b\n\n"


@pytest.mark.asyncio
async def test_sse_stream_frames_lines_and_unsubscribes_on_close():
    b = Broadcaster()
    stream = sse_event_iter(b)
    first = asyncio.ensure_future(stream.__anext__())
    for _ in range(100):
        if b.subscriber_count:
            break
        await asyncio.sleep(0.01)
    assert b.subscriber_count == 1

    await b.publish(BroadcastMessage(MessageKind.RUNTIME_ERROR, "boom"))
    assert await asyncio.wait_for(first, timeout=2) == b"data: [BRS Error] boom\n\n"

    await stream.aclose()
    assert b.subscriber_count == 0
