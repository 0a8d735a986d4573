"""Tests for the replayable event stream."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from acp_runtime.application.streams import EventStream, Subscription


async def drain(subscription: Subscription[Any], count: int) -> list[Any]:
    """購読から count 個の要素を受け取る."""
    items: list[Any] = []
    async for item in subscription:
        items.append(item)
        if len(items) == count:
            break
    return items


@pytest.mark.asyncio
async def test_replay_then_live_without_gap_or_duplicate() -> None:
    """リプレイとライブ配信の間に欠落や重複が無いことを確認する."""
    stream: EventStream[int] = EventStream()
    stream.append(1)
    stream.append(2)

    subscription = stream.subscribe(replay=True)
    stream.append(3)

    assert await drain(subscription, 3) == [1, 2, 3]
    await subscription.aclose()


@pytest.mark.asyncio
async def test_live_only_subscription_skips_history() -> None:
    """replay=False の購読は過去の要素を受け取らないことを確認する."""
    stream: EventStream[int] = EventStream()
    stream.append(1)

    subscription = stream.subscribe(replay=False)
    stream.append(2)

    assert await drain(subscription, 1) == [2]
    await subscription.aclose()


@pytest.mark.asyncio
async def test_each_subscriber_gets_every_item() -> None:
    """全ての購読者が全要素を受け取ることを確認する."""
    stream: EventStream[str] = EventStream()
    first = stream.subscribe()
    second = stream.subscribe()
    stream.append("a")
    stream.append("b")

    assert await drain(first, 2) == ["a", "b"]
    assert await drain(second, 2) == ["a", "b"]


@pytest.mark.asyncio
async def test_close_ends_iteration() -> None:
    """close で待機中の反復が終了することを確認する."""
    stream: EventStream[int] = EventStream()
    subscription = stream.subscribe()

    async def collect() -> list[int]:
        return [item async for item in subscription]

    task = asyncio.create_task(collect())
    stream.append(1)
    await asyncio.sleep(0)
    stream.close()

    assert await asyncio.wait_for(task, 1.0) == [1]
    assert subscription.closed


@pytest.mark.asyncio
async def test_subscribe_after_close_replays_then_ends() -> None:
    """クローズ後の購読はリプレイ後に終了することを確認する."""
    stream: EventStream[int] = EventStream()
    stream.append(1)
    stream.close()
    stream.append(2)

    items = [item async for item in stream.subscribe()]
    assert items == [1]


@pytest.mark.asyncio
async def test_aclose_unsubscribes() -> None:
    """aclose 後は要素が配信されないことを確認する."""
    stream: EventStream[int] = EventStream()
    subscription = stream.subscribe()
    await subscription.aclose()
    stream.append(1)

    assert [item async for item in subscription] == []


def test_non_retaining_stream_keeps_no_log() -> None:
    """retain=False のストリームはログを保持しないことを確認する."""
    stream: EventStream[int] = EventStream(retain=False)
    stream.append(1)
    assert stream.snapshot() == []


def test_clear_discards_log() -> None:
    """clear でログが破棄されることを確認する."""
    stream: EventStream[int] = EventStream()
    stream.append(1)
    stream.clear()
    assert stream.snapshot() == []
