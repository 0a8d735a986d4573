"""Tests for the line-delimited channel."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from acp_runtime.infrastructure.line_channel import LineChannel


def make_writer() -> MagicMock:
    """StreamWriter のモックを作成する."""
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    return writer


@pytest.mark.asyncio
async def test_receive_splits_lines_and_skips_blank() -> None:
    """受信データが行単位に分割され、空行が除外されることを確認する."""
    reader = asyncio.StreamReader()
    channel = LineChannel(reader, make_writer())
    channel.start()

    reader.feed_data(b'{"a":1}\n\n   \n{"b":2}\r\n')
    reader.feed_eof()

    assert await channel.receive() == '{"a":1}'
    assert await channel.receive() == '{"b":2}'
    assert await channel.receive() is None
    # 終端後も None を返し続ける
    assert await channel.receive() is None
    await channel.close()


@pytest.mark.asyncio
async def test_partial_line_is_buffered_until_newline() -> None:
    """改行が届くまで行が配信されないことを確認する."""
    reader = asyncio.StreamReader()
    channel = LineChannel(reader, make_writer())
    channel.start()

    reader.feed_data(b'{"partial":')
    receive_task = asyncio.create_task(channel.receive())
    await asyncio.sleep(0.01)
    assert not receive_task.done()

    reader.feed_data(b"true}\n")
    assert await asyncio.wait_for(receive_task, 1.0) == '{"partial":true}'
    await channel.close()


@pytest.mark.asyncio
async def test_send_appends_newline_and_notifies_observer() -> None:
    """送信時に改行が付与され、観測コールバックが呼ばれることを確認する."""
    writer = make_writer()
    outbound: list[str] = []
    channel = LineChannel(
        asyncio.StreamReader(), writer, on_outbound_line=outbound.append
    )

    await channel.send('{"x":1}')

    writer.write.assert_called_once_with(b'{"x":1}\n')
    writer.drain.assert_awaited()
    assert outbound == ['{"x":1}']
    await channel.close()


@pytest.mark.asyncio
async def test_inbound_observer_sees_each_line() -> None:
    """受信行が観測コールバックに渡されることを確認する."""
    reader = asyncio.StreamReader()
    inbound: list[str] = []
    channel = LineChannel(reader, make_writer(), on_inbound_line=inbound.append)
    channel.start()

    reader.feed_data(b"one\ntwo\n")
    reader.feed_eof()
    while await channel.receive() is not None:
        pass

    assert inbound == ["one", "two"]
    await channel.close()


@pytest.mark.asyncio
async def test_write_error_is_swallowed() -> None:
    """書き込みエラーが送信側に伝播しないことを確認する."""
    writer = make_writer()
    writer.drain = AsyncMock(side_effect=BrokenPipeError("closed"))
    channel = LineChannel(asyncio.StreamReader(), writer)

    await channel.send("line")
    await channel.close()


@pytest.mark.asyncio
async def test_diagnostics_are_drained() -> None:
    """診断ストリームが読まれ、コールバックに渡されることを確認する."""
    reader = asyncio.StreamReader()
    diagnostics = asyncio.StreamReader()
    lines: list[str] = []
    channel = LineChannel(
        reader, make_writer(), diagnostics=diagnostics, on_diagnostic_line=lines.append
    )
    channel.start()

    diagnostics.feed_data(b"warning: something\n")
    diagnostics.feed_eof()
    for _ in range(20):
        if lines:
            break
        await asyncio.sleep(0.01)

    assert lines == ["warning: something"]
    await channel.close()


@pytest.mark.asyncio
async def test_close_releases_waiting_receiver() -> None:
    """close で受信待ちの呼び出しが None で解放されることを確認する."""
    channel = LineChannel(asyncio.StreamReader(), make_writer())
    channel.start()

    receive_task = asyncio.create_task(channel.receive())
    await asyncio.sleep(0)
    await channel.close()

    assert await asyncio.wait_for(receive_task, 1.0) is None
    assert channel.closed


@pytest.mark.asyncio
async def test_send_after_close_is_dropped() -> None:
    """クローズ後の送信が書き込まれないことを確認する."""
    writer = make_writer()
    channel = LineChannel(asyncio.StreamReader(), writer)
    await channel.close()
    writer.write.reset_mock()

    await channel.send("late")

    writer.write.assert_not_called()
