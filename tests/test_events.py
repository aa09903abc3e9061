"""Tests for yotoctl.events."""

from __future__ import annotations

import asyncio
import contextlib

from yotoctl.events import EventChannel


class TestCallbacks:
    def test_every_listener_receives(self):
        channel: EventChannel[int] = EventChannel("test")
        first: list[int] = []
        second: list[int] = []
        channel.subscribe(first.append)
        channel.subscribe(second.append)

        channel.emit(1)

        assert first == [1]
        assert second == [1]

    def test_unsubscribe(self):
        channel: EventChannel[int] = EventChannel()
        seen: list[int] = []
        unsubscribe = channel.subscribe(seen.append)

        channel.emit(1)
        unsubscribe()
        unsubscribe()
        channel.emit(2)

        assert seen == [1]
        assert channel.listener_count == 0

    def test_broken_listener_does_not_block_others(self, caplog):
        channel: EventChannel[int] = EventChannel("status")
        seen: list[int] = []

        def broken(item: int) -> None:
            raise RuntimeError("nope")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        channel.emit(7)

        assert seen == [7]
        assert "Listener on status channel failed" in caplog.text


class TestStream:
    async def test_stream_receives_in_order(self):
        channel: EventChannel[int] = EventChannel()

        async def collect() -> list[int]:
            items = []
            async with contextlib.aclosing(channel.stream()) as stream:
                async for item in stream:
                    items.append(item)
                    if len(items) == 3:
                        break
            return items

        task = asyncio.create_task(collect())
        await asyncio.sleep(0)
        assert channel.listener_count == 1
        for i in range(3):
            channel.emit(i)

        assert await asyncio.wait_for(task, 1) == [0, 1, 2]
        assert channel.listener_count == 0
