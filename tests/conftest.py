"""Shared fixtures: an in-memory channel that lets a test play the agent."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import pytest

from acp_runtime.infrastructure.config import Config


class MemoryChannel:
    """
    テストがエージェント役を務めるためのインメモリチャネル.

    ピアが送信したメッセージは sent に記録され、next_sent() で順に取り出せる。
    feed() で積んだメッセージはピアの受信ループに届く。
    """

    def __init__(self) -> None:
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    # MessageChannel
    async def receive(self) -> str | None:
        return await self._inbound.get()

    async def send(self, line: str) -> None:
        message = json.loads(line)
        self.sent.append(message)
        self._outbound.put_nowait(message)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(None)

    # エージェント側の操作
    def feed(self, message: dict[str, Any]) -> None:
        self._inbound.put_nowait(json.dumps(message))

    def feed_line(self, line: str) -> None:
        self._inbound.put_nowait(line)

    def end(self) -> None:
        self._inbound.put_nowait(None)

    async def next_sent(self, timeout: float = 2.0) -> dict[str, Any]:
        return await asyncio.wait_for(self._outbound.get(), timeout)

    async def expect_request(self, method: str, timeout: float = 2.0) -> dict[str, Any]:
        message = await self.next_sent(timeout)
        assert message.get("method") == method, message
        return message

    def respond(self, request: dict[str, Any], result: Any) -> None:
        self.feed({"jsonrpc": "2.0", "id": request["id"], "result": result})

    def respond_error(self, request: dict[str, Any], code: int, message: str) -> None:
        self.feed(
            {
                "jsonrpc": "2.0",
                "id": request["id"],
                "error": {"code": code, "message": message},
            }
        )

    def session_update(self, session_id: str, update: dict[str, Any]) -> None:
        self.feed(
            {
                "jsonrpc": "2.0",
                "method": "session/update",
                "params": {"sessionId": session_id, "update": update},
            }
        )

    def call(self, msg_id: int | str, method: str, params: dict[str, Any]) -> None:
        self.feed({"jsonrpc": "2.0", "id": msg_id, "method": method, "params": params})

    async def expect_response(
        self, msg_id: int | str, timeout: float = 2.0
    ) -> dict[str, Any]:
        message = await self.next_sent(timeout)
        assert message.get("id") == msg_id and "method" not in message, message
        return message


@pytest.fixture
def channel() -> MemoryChannel:
    """インメモリチャネル."""
    return MemoryChannel()


@pytest.fixture
def config(monkeypatch: pytest.MonkeyPatch) -> Config:
    """テスト用の Config（環境変数と .env の影響を受けない）."""
    for key in list(os.environ):
        if key.startswith("ACP_"):
            monkeypatch.delenv(key)
    return Config(_env_file=None, fs_write_enabled=True)  # type: ignore[call-arg]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """テスト用のワークスペースルート."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()
