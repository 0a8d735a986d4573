"""End-to-end tests for AcpClient against a scripted agent process."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest

from acp_runtime.application.extensions import ExtensionParams
from acp_runtime.application.session import SessionNotFoundError
from acp_runtime.application.updates import (
    AvailableCommandsUpdate,
    MessageDelta,
    StopReason,
    ToolCallStatus,
    TurnEnded,
    Update,
)
from acp_runtime.client import AcpClient
from acp_runtime.infrastructure.transport import StdioTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from acp_runtime.infrastructure.config import Config

MOCK_AGENT = Path(__file__).parent / "fixtures" / "mock_agent.py"


@pytest.fixture
def agent_config(config: Config) -> Config:
    """モックエージェントを起動する設定."""
    return config.model_copy(
        update={"agent_command": [sys.executable, str(MOCK_AGENT)]}
    )


async def collect(stream: AsyncIterator[Update]) -> list[Update]:
    """ストリームが終わるまで更新を集める."""
    return [update async for update in stream]


def assistant_text(updates: list[Update]) -> str:
    """アシスタントのメッセージを連結する."""
    return "".join(
        u.text for u in updates if isinstance(u, MessageDelta) and u.role == "assistant"
    )


@pytest.mark.asyncio
async def test_initialize_and_prompt(agent_config: Config, workspace: Path) -> None:
    """初期化からプロンプトの完了までを確認する."""
    async with await AcpClient.start(agent_config) as client:
        init = await client.initialize()
        assert init.protocol_version == 1
        assert init.supports_load_session
        assert init.agent_info is not None
        assert init.agent_info["name"] == "mock-agent"

        session = await client.new_session(workspace)
        assert session.session_id == "mock-1"
        assert session.modes is not None

        updates = await collect(client.prompt(session.session_id, "hello @notes.md"))

        assert assistant_text(updates) == "echo: hello @notes.md links: 1"
        assert updates[-1] == TurnEnded(StopReason.END_TURN)


@pytest.mark.asyncio
async def test_agent_writes_through_client(
    agent_config: Config, workspace: Path
) -> None:
    """エージェントの書き込み要求がワークスペースに反映されることを確認する."""
    async with await AcpClient.start(agent_config) as client:
        await client.initialize()
        session = await client.new_session(workspace)

        updates = await collect(client.prompt(session.session_id, "please write"))

        assert updates[-1] == TurnEnded(StopReason.END_TURN)
        tool_call = client.tool_calls(session.session_id)["write-1"]
        assert tool_call.status == ToolCallStatus.COMPLETED
        assert tool_call.title == "Write hello.txt"
        written = (workspace / "hello.txt").read_text(encoding="utf-8")
        assert written == "hi from agent"


@pytest.mark.asyncio
async def test_session_updates_replay(agent_config: Config, workspace: Path) -> None:
    """永続ストリームが過去の更新をリプレイすることを確認する."""
    async with await AcpClient.start(agent_config) as client:
        await client.initialize()
        session = await client.new_session(workspace)
        await collect(client.prompt(session.session_id, "first"))

        subscription = client.session_updates(session.session_id)
        seen: list[Update] = []
        async for update in subscription:
            seen.append(update)
            if isinstance(update, TurnEnded):
                break
        await subscription.aclose()

        assert isinstance(seen[0], AvailableCommandsUpdate)
        assert assistant_text(seen) == "echo: first"


@pytest.mark.asyncio
async def test_set_mode(agent_config: Config, workspace: Path) -> None:
    """モードの変更が反映されることを確認する."""
    async with await AcpClient.start(agent_config) as client:
        await client.initialize()
        session = await client.new_session(workspace)

        assert await client.set_mode(session.session_id, "plan")
        modes = client.session_modes(session.session_id)
        assert modes is not None
        assert modes.current_mode_id == "plan"


@pytest.mark.asyncio
async def test_extension_request(agent_config: Config) -> None:
    """拡張メソッドのリクエストと応答を確認する."""
    async with await AcpClient.start(agent_config) as client:
        response = await client.send_extension_request(
            "_mock/ping", ExtensionParams.of({"x": 1})
        )

        assert response["pong"] is True
        assert response["echo"] == {"x": 1}
        assert response.meta is not None
        assert response.meta.vendor_data("mock") == {"version": 1}


@pytest.mark.asyncio
async def test_inbound_extension_notification(agent_config: Config) -> None:
    """エージェントからの拡張通知が登録したハンドラに届くことを確認する."""
    received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def on_status(params: dict[str, Any]) -> None:
        received.put_nowait(params)

    async with await AcpClient.start(agent_config) as client:
        client.on_extension_notification("_mock/status", on_status)
        await client.send_extension_request("_mock/notify", {"n": 1})

        params = await asyncio.wait_for(received.get(), 5.0)

    assert params == {"busy": False, "echo": {"n": 1}}


@pytest.mark.asyncio
async def test_extension_name_is_validated(agent_config: Config) -> None:
    """アンダースコアで始まらない拡張メソッド名が拒否されることを確認する."""
    async with await AcpClient.start(agent_config) as client:
        with pytest.raises(ValueError, match="must start with '_'"):
            await client.send_extension_request("mock/ping")
        with pytest.raises(ValueError, match="must start with '_'"):
            await client.send_extension_notification("mock/event")
        with pytest.raises(ValueError, match="must start with '_'"):
            client.on_extension_notification("mock/status", AsyncMock())


@pytest.mark.asyncio
async def test_prompt_unknown_session(agent_config: Config) -> None:
    """未知のセッションへのプロンプトが失敗することを確認する."""
    async with await AcpClient.start(agent_config) as client:
        with pytest.raises(SessionNotFoundError):
            client.prompt("missing", "hello")


@pytest.mark.asyncio
async def test_protocol_observers_and_dispose(agent_config: Config) -> None:
    """フレームの観測と、dispose でプロセスが停止することを確認する."""
    inbound: list[str] = []
    outbound: list[str] = []
    client = await AcpClient.start(
        agent_config, on_protocol_in=inbound.append, on_protocol_out=outbound.append
    )
    await client.initialize()

    await client.dispose()
    await client.dispose()

    assert any('"initialize"' in line for line in outbound)
    assert any('"mock-agent"' in line for line in inbound)
    assert isinstance(client.transport, StdioTransport)
    assert client.transport.pid is None
