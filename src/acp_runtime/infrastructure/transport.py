"""Agent process transport over standard streams."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Protocol

from acp_runtime.infrastructure.line_channel import (
    LineCallback,
    LineChannel,
    MessageChannel,
)
from acp_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import asyncio.subprocess as aio_subprocess
    from pathlib import Path

logger = get_logger(__name__)

# JSON-RPC の1メッセージが大きくなる場合に備えて StreamReader の上限を広げる
STREAM_LIMIT = 32 * 1024 * 1024

# 起動直後のクラッシュ判定で終了コードを待つ時間（秒）
_EXIT_CHECK_TIMEOUT = 0.01


class AgentProcessError(Exception):
    """エージェントプロセスの起動・実行に失敗した場合の例外."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        """
        Initialize AgentProcessError.

        Args:
            message: エラーメッセージ
            exit_code: プロセスの終了コード（判明している場合）
        """
        super().__init__(message)
        self.exit_code = exit_code


class Transport(Protocol):
    """行単位チャネルを提供するトランスポート."""

    @property
    def channel(self) -> MessageChannel:
        """開始済みのチャネル."""
        ...

    async def start(self) -> None:
        """トランスポートを開始する."""
        ...

    async def stop(self) -> None:
        """トランスポートを停止する."""
        ...


class StdioTransport:
    """エージェントをサブプロセスとして起動し、標準入出力で通信するトランスポート."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env_overrides: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        on_protocol_in: LineCallback | None = None,
        on_protocol_out: LineCallback | None = None,
        startup_grace_period: float = 0.1,
        stop_timeout: float = 5.0,
    ) -> None:
        """
        Initialize StdioTransport.

        Args:
            command: エージェントの実行ファイル
            args: エージェントに渡す引数
            env_overrides: 親プロセスの環境変数に上書きする環境変数
            cwd: エージェントの作業ディレクトリ
            on_protocol_in: 受信フレームの観測用コールバック
            on_protocol_out: 送信フレームの観測用コールバック
            startup_grace_period: 起動直後のクラッシュ検出を待つ時間（秒）
            stop_timeout: SIGTERM 後に SIGKILL へ切り替えるまでの時間（秒）
        """
        self.command = command
        self.args = list(args)
        self.env_overrides = dict(env_overrides or {})
        self.cwd = cwd
        self.on_protocol_in = on_protocol_in
        self.on_protocol_out = on_protocol_out
        self.startup_grace_period = startup_grace_period
        self.stop_timeout = stop_timeout

        self._process: aio_subprocess.Process | None = None
        self._channel: LineChannel | None = None
        self._exit_task: asyncio.Task[int] | None = None

    @property
    def pid(self) -> int | None:
        """起動したエージェントプロセスの PID（未起動なら None）."""
        return self._process.pid if self._process is not None else None

    @property
    def exit_code(self) -> asyncio.Task[int] | None:
        """エージェントプロセスの終了コードを返す Future（未起動なら None）."""
        return self._exit_task

    @property
    def channel(self) -> LineChannel:
        """
        開始済みのチャネルを取得する.

        Raises:
            RuntimeError: start() 前に呼び出された場合
        """
        if self._channel is None:
            msg = "Transport not started"
            raise RuntimeError(msg)
        return self._channel

    async def start(self) -> None:
        """
        エージェントプロセスを起動する.

        起動直後に一定時間待ってプロセスが生存しているか確認し、
        既に終了していれば終了コード付きで失敗させる。

        Raises:
            AgentProcessError: コマンド未指定、起動失敗、または起動直後に終了した場合
        """
        if not self.command or not self.command.strip():
            msg = "StdioTransport requires an explicit agent command"
            raise AgentProcessError(msg)
        if self._process is not None:
            logger.warning("Transport already started", pid=self._process.pid)
            return

        env = dict(os.environ)
        env.update(self.env_overrides)

        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            msg = f"Failed to spawn agent '{self.command}': {e}"
            raise AgentProcessError(msg) from e

        logger.debug(
            "Spawned agent", command=self.command, args=self.args, pid=process.pid
        )
        self._process = process
        self._exit_task = asyncio.create_task(process.wait())

        assert process.stdout is not None
        assert process.stdin is not None
        channel = LineChannel(
            process.stdout,
            process.stdin,
            diagnostics=process.stderr,
            on_diagnostic_line=self._log_agent_stderr,
            on_inbound_line=self.on_protocol_in,
            on_outbound_line=self.on_protocol_out,
        )
        # stderr の読み捨ては猶予期間中から開始する
        channel.start()

        await asyncio.sleep(self.startup_grace_period)
        done, _ = await asyncio.wait({self._exit_task}, timeout=_EXIT_CHECK_TIMEOUT)
        if done:
            exit_code = self._exit_task.result()
            await channel.close()
            self._process = None
            msg = f"Agent process exited immediately with code {exit_code}"
            raise AgentProcessError(msg, exit_code=exit_code)

        self._exit_task.add_done_callback(self._on_process_exit)
        self._channel = channel
        logger.info("Agent process started", command=self.command, pid=process.pid)

    @staticmethod
    def _log_agent_stderr(line: str) -> None:
        logger.debug("Agent stderr", line=line)

    @staticmethod
    def _on_process_exit(task: asyncio.Task[int]) -> None:
        """プロセス終了を監視し、異常終了をログに記録する."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Process exit code monitoring error", error=str(exc))
            return
        code = task.result()
        if code != 0:
            logger.warning("Agent process exited with non-zero code", exit_code=code)
        else:
            logger.info("Agent process exited")

    async def stop(self) -> None:
        """
        トランスポートを停止する（冪等）.

        チャネルを先に破棄し、SIGTERM を送って一定時間待ち、
        終了しなければ SIGKILL に切り替える。各ステップは独立しており、
        途中で失敗しても後続のステップは実行される。
        """
        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception:
                logger.exception("Error closing channel")
            finally:
                self._channel = None

        process = self._process
        if process is None:
            return
        self._process = None

        try:
            if process.returncode is None:
                process.terminate()
        except ProcessLookupError:
            pass
        except Exception:
            logger.exception("Error sending SIGTERM to agent process")

        wait_target = self._exit_task
        if wait_target is None:
            return
        try:
            await asyncio.wait_for(
                asyncio.shield(wait_target), timeout=self.stop_timeout
            )
        except TimeoutError:
            logger.warning(
                "Agent process did not terminate, killing it", pid=process.pid
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(
                    asyncio.shield(wait_target), timeout=self.stop_timeout
                )
            except Exception:
                logger.exception("Error waiting for killed agent process")
        except Exception:
            logger.exception("Error waiting for agent process exit")
