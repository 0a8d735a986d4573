"""Test cases for main entry point."""

from __future__ import annotations

import asyncio
import io
import json
import signal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from acp_runtime.application.models import (
    InitializeResult,
    PermissionOutcome,
    PermissionRequest,
    SessionMode,
    SessionModeState,
    SessionResult,
)
from acp_runtime.application.streams import EventStream
from acp_runtime.application.updates import (
    AvailableCommand,
    AvailableCommandsUpdate,
    MessageDelta,
    StopReason,
    TextContent,
    TurnEnded,
    Update,
)
from acp_runtime.main import (
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    build_parser,
    is_write_like,
    main,
    make_permission_callback,
    wait_for_commands,
)
from acp_runtime.presentation.formatter import OutputFormatter, OutputMode

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

    from acp_runtime.infrastructure.config import Config


def _delta(text: str) -> MessageDelta:
    return MessageDelta("assistant", (TextContent(text),))


def _make_client(config: Config) -> MagicMock:
    """テスト用の AcpClient モックを作成する."""
    client = MagicMock()
    client.config = config
    client.initialize = AsyncMock(return_value=InitializeResult(protocol_version=1))
    client.new_session = AsyncMock(return_value=SessionResult(session_id="sess-1"))
    client.load_session = AsyncMock(return_value=SessionResult(session_id="old"))
    client.session_modes = MagicMock(
        return_value=SessionModeState(
            current_mode_id="default",
            available_modes=(SessionMode("default", "Default"),),
        )
    )
    client.set_mode = AsyncMock(return_value=True)
    client.cancel = AsyncMock()
    client.dispose = AsyncMock()

    async def fake_prompt(session_id: str, content: str) -> AsyncIterator[Update]:
        yield _delta("Hello")
        yield TurnEnded(StopReason.END_TURN)

    client.prompt = fake_prompt
    return client


def _patch_loop_signal_handlers(
    signal_handlers: dict[int, Callable[[], None]],
) -> None:
    """イベントループのシグナルハンドラーをモンキーパッチする."""
    loop = asyncio.get_running_loop()

    def fake_add(sig: int, handler: Callable[[], None]) -> None:
        signal_handlers[sig] = handler

    def fake_remove(sig: int) -> bool:
        signal_handlers.pop(sig, None)
        return True

    loop.add_signal_handler = fake_add  # type: ignore[assignment]
    loop.remove_signal_handler = fake_remove  # type: ignore[method-assign]


def _request(tool_name: str, tool_kind: str | None) -> PermissionRequest:
    return PermissionRequest(
        session_id="sess-1",
        title=tool_name,
        rationale="test",
        tool_name=tool_name,
        tool_kind=tool_kind,
    )


class TestParser:
    """コマンドライン引数のテスト."""

    def test_prompt_words_and_defaults(self) -> None:
        """プロンプトの単語とデフォルト値を確認する."""
        args = build_parser().parse_args(["fix", "the", "bug"])
        assert args.prompt == ["fix", "the", "bug"]
        assert args.output == "text"
        assert not args.write and not args.yolo

    def test_options(self) -> None:
        """各オプションが解析されることを確認する."""
        args = build_parser().parse_args(
            ["-o", "jsonl", "--write", "--mode", "plan", "--resume", "s1", "hi"]
        )
        assert args.output == "jsonl"
        assert args.write
        assert args.mode == "plan"
        assert args.resume == "s1"

    def test_invalid_output_mode(self) -> None:
        """不正な出力モードが拒否されることを確認する."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-o", "xml"])


@pytest.mark.parametrize(
    ("tool_name", "tool_kind", "expected"),
    [
        ("write_text_file", "edit", True),
        ("Move things", "move", True),
        ("fs/delete_file", None, True),
        ("read_text_file", "read", False),
        ("terminal", "execute", False),
    ],
)
def test_is_write_like(tool_name: str, tool_kind: str | None, expected: bool) -> None:
    """書き込み系の操作の判定を確認する."""
    assert is_write_like(tool_name, tool_kind) is expected


class TestPermissionCallback:
    """CLI のパーミッションコールバックのテスト."""

    @pytest.mark.asyncio
    async def test_denies_writes_by_default(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """書き込み系の操作がデフォルトで拒否されることを確認する."""
        decide = make_permission_callback(False, OutputFormatter(OutputMode.TEXT))

        outcome = await decide(_request("write_text_file", "edit"))

        assert outcome == PermissionOutcome.DENY
        out = capsys.readouterr().out
        assert "[permission] auto-deny write_text_file (edit)" in out
        assert "--write" in out

    @pytest.mark.asyncio
    async def test_allows_reads(self) -> None:
        """読み込み系の操作が許可されることを確認する."""
        decide = make_permission_callback(False, OutputFormatter(OutputMode.SIMPLE))
        assert await decide(_request("read_text_file", "read")) == (
            PermissionOutcome.ALLOW
        )

    @pytest.mark.asyncio
    async def test_allows_writes_when_enabled(self) -> None:
        """--write 指定時に書き込みが許可されることを確認する."""
        decide = make_permission_callback(True, OutputFormatter(OutputMode.SIMPLE))
        assert await decide(_request("write_text_file", "edit")) == (
            PermissionOutcome.ALLOW
        )

    @pytest.mark.asyncio
    async def test_jsonl_decision_record(self) -> None:
        """jsonl モードで判定結果が JSON で出力されることを確認する."""
        out = io.StringIO()
        decide = make_permission_callback(False, OutputFormatter(OutputMode.JSONL, out))

        await decide(_request("fs/delete_file", "delete"))

        record = json.loads(out.getvalue())
        assert record["type"] == "permission_decision"
        assert record["decision"] == "deny"
        assert record["hint"] is not None


class TestWaitForCommands:
    """wait_for_commands のテスト."""

    @pytest.mark.asyncio
    async def test_returns_first_commands_update(self) -> None:
        """最初のコマンド一覧が返ることを確認する."""
        stream: EventStream[Update] = EventStream()
        stream.append(_delta("hi"))
        stream.append(AvailableCommandsUpdate((AvailableCommand("web"),)))
        client = MagicMock()
        client.session_updates.return_value = stream.subscribe()

        commands = await wait_for_commands(client, "sess-1", timeout=1.0)

        assert [c.name for c in commands] == ["web"]

    @pytest.mark.asyncio
    async def test_timeout_returns_empty(self) -> None:
        """タイムアウト時に空のタプルが返ることを確認する."""
        stream: EventStream[Update] = EventStream()
        client = MagicMock()
        client.session_updates.return_value = stream.subscribe()

        assert await wait_for_commands(client, "sess-1", timeout=0.05) == ()


class TestMain:
    """main のテスト."""

    @pytest.mark.asyncio
    async def test_empty_prompt_is_usage_error(
        self, config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """プロンプトが空の場合に終了コード 2 を返すことを確認する."""
        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.read_prompt", AsyncMock(return_value="  ")),
        ):
            assert await main([]) == EXIT_USAGE
        assert "empty prompt" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_prompt_is_streamed(
        self, config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """プロンプトの応答が出力され、クライアントが破棄されることを確認する."""
        client = _make_client(config)
        start = AsyncMock(return_value=client)

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", start),
        ):
            assert await main(["-o", "simple", "say", "hello"]) == 0

        assert capsys.readouterr().out == "Hello\n"
        client.new_session.assert_awaited_once()
        client.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_write_flag_enables_fs_write(self, config: Config) -> None:
        """--write で書き込みが有効な設定が渡されることを確認する."""
        config = config.model_copy(update={"fs_write_enabled": False})
        client = _make_client(config)
        start = AsyncMock(return_value=client)

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", start),
        ):
            await main(["-o", "simple", "--write", "hi"])

        passed: Any = start.await_args.args[0]
        assert passed.fs_write_enabled is True
        assert passed.allow_read_outside_workspace is False

    @pytest.mark.asyncio
    async def test_unknown_mode_is_usage_error(self, config: Config) -> None:
        """存在しないモードの指定で終了コード 2 を返すことを確認する."""
        client = _make_client(config)

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", AsyncMock(return_value=client)),
        ):
            code = await main(["-o", "simple", "--mode", "turbo", "hi"])

        assert code == EXIT_USAGE
        client.set_mode.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_requires_load_session(self, config: Config) -> None:
        """loadSession 非対応のエージェントで --resume が拒否されることを確認する."""
        client = _make_client(config)

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", AsyncMock(return_value=client)),
        ):
            code = await main(["-o", "simple", "--resume", "old", "hi"])

        assert code == EXIT_USAGE
        client.load_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_save_session(self, config: Config, tmp_path: Path) -> None:
        """新しいセッション ID がファイルに保存されることを確認する."""
        client = _make_client(config)
        target = tmp_path / "session.txt"

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", AsyncMock(return_value=client)),
        ):
            await main(["-o", "simple", "--save-session", str(target), "hi"])

        assert target.read_text(encoding="utf-8") == "sess-1"

    @pytest.mark.asyncio
    async def test_startup_failure_returns_error(
        self, config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """エージェントの起動失敗で終了コード 1 を返すことを確認する."""
        start = AsyncMock(side_effect=OSError("spawn failed"))

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", start),
        ):
            assert await main(["hi"]) == 1

        assert "spawn failed" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_signal_cancels_turn(self, config: Config) -> None:
        """シグナル受信でターンをキャンセルし、終了コード 130 を返すことを確認する."""
        signal_handlers: dict[int, Callable[[], None]] = {}
        client = _make_client(config)
        turn_cancelled = asyncio.Event()
        client.cancel = AsyncMock(side_effect=lambda _sid: turn_cancelled.set())

        async def slow_prompt(session_id: str, content: str) -> AsyncIterator[Update]:
            yield _delta("partial")
            signal_handlers[signal.SIGINT]()
            await turn_cancelled.wait()
            yield TurnEnded(StopReason.CANCELLED)

        client.prompt = slow_prompt

        with (
            patch("acp_runtime.main.get_config", return_value=config),
            patch("acp_runtime.main.configure_logging"),
            patch("acp_runtime.main.AcpClient.start", AsyncMock(return_value=client)),
        ):
            _patch_loop_signal_handlers(signal_handlers)
            code = await main(["-o", "simple", "hi"])

        assert code == EXIT_INTERRUPTED
        client.cancel.assert_awaited_once_with("sess-1")
        client.dispose.assert_awaited_once()
        # ハンドラーが解除されていることを確認
        assert signal_handlers == {}
