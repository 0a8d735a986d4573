"""Terminal processes spawned on behalf of the agent."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from acp_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import asyncio.subprocess as aio_subprocess
    from pathlib import Path

logger = get_logger(__name__)

_READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class TerminalExitStatus:
    """ターミナルプロセスの終了状態."""

    exit_code: int | None
    signal: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> TerminalExitStatus:
        """
        asyncio の returncode から変換する.

        シグナルで終了した場合（負の returncode）はシグナル名を返し、
        終了コードは None とする。
        """
        if returncode >= 0:
            return cls(exit_code=returncode)
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"SIG{-returncode}"
        return cls(exit_code=None, signal=name)

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する."""
        return {"exitCode": self.exit_code, "signal": self.signal}


class TerminalProcessHandle:
    """
    エージェントの要求で起動した OS プロセス.

    stdout と stderr は同じバッファに追記する。バッファはバイト列のまま保持し、
    読み出し時に UTF-8 として寛容にデコードする（バイナリ出力でも失敗しない）。
    """

    def __init__(
        self,
        terminal_id: str,
        process: aio_subprocess.Process,
        output_byte_limit: int | None = None,
    ) -> None:
        """
        Initialize TerminalProcessHandle.

        Args:
            terminal_id: ターミナル ID
            process: 起動済みのプロセス
            output_byte_limit: 保持する出力の最大バイト数（超過分は先頭から捨てる）
        """
        self.terminal_id = terminal_id
        self.process = process
        self.output_byte_limit = output_byte_limit
        self._buffer = bytearray()
        self._truncated = False
        self._released = False
        self._readers = [
            asyncio.create_task(self._pump(stream))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]

    @property
    def released(self) -> bool:
        """解放済みかどうか."""
        return self._released

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._append(chunk)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.warning(
                "Terminal stream error", terminal_id=self.terminal_id, error=str(e)
            )

    def _append(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        limit = self.output_byte_limit
        if limit is not None and len(self._buffer) > limit:
            del self._buffer[: len(self._buffer) - limit]
            # UTF-8 の継続バイトで始まらないよう文字境界まで進める
            while self._buffer and (self._buffer[0] & 0xC0) == 0x80:
                del self._buffer[0]
            self._truncated = True

    def current_output(self) -> tuple[str, bool]:
        """
        現在バッファされている出力を返す.

        Returns:
            (出力, 切り詰められたか)
        """
        return self._buffer.decode("utf-8", errors="replace"), self._truncated

    def exit_status(self) -> TerminalExitStatus | None:
        """終了済みなら終了状態を返す（待機しない）."""
        returncode = self.process.returncode
        if returncode is None:
            return None
        return TerminalExitStatus.from_returncode(returncode)

    async def wait_for_exit(self) -> TerminalExitStatus:
        """プロセスの終了を待ち、出力の読み込みが終わってから終了状態を返す."""
        returncode = await self.process.wait()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)
        return TerminalExitStatus.from_returncode(returncode)

    async def kill(self) -> None:
        """プロセスに SIGTERM を送る."""
        if self.process.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    async def release(self) -> None:
        """
        リソースを解放する（冪等）.

        実行中であればプロセスを終了させ、出力の読み込みを停止する。
        """
        if self._released:
            return
        self._released = True
        await self.kill()
        for task in self._readers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers.clear()


class TerminalProvider(Protocol):
    """ターミナルプロセスの作成と操作を提供するプロバイダー."""

    async def create(
        self,
        session_id: str,
        command: str,
        args: Sequence[str] = (),
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        output_byte_limit: int | None = None,
    ) -> TerminalProcessHandle:
        """ターミナルプロセスを作成する."""
        ...

    async def current_output(self, handle: TerminalProcessHandle) -> tuple[str, bool]:
        """バッファされた出力を返す."""
        ...

    async def wait_for_exit(self, handle: TerminalProcessHandle) -> TerminalExitStatus:
        """終了を待つ."""
        ...

    async def kill(self, handle: TerminalProcessHandle) -> None:
        """プロセスを終了させる."""
        ...

    async def release(self, handle: TerminalProcessHandle) -> None:
        """リソースを解放する."""
        ...


def shell_command(command: str) -> list[str]:
    """
    シェルのワンライナーとして実行する argv を組み立てる.

    bash があれば bash -lc、なければ sh -c を使う。
    """
    if sys.platform == "win32":
        return ["cmd.exe", "/C", command]
    bash = shutil.which("bash")
    if bash is not None:
        return [bash, "-lc", command]
    return [shutil.which("sh") or "sh", "-c", command]


class DefaultTerminalProvider:
    """asyncio のサブプロセスで実装したターミナルプロバイダー."""

    async def create(
        self,
        session_id: str,
        command: str,
        args: Sequence[str] = (),
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        output_byte_limit: int | None = None,
    ) -> TerminalProcessHandle:
        """
        ターミナルプロセスを起動する.

        args が空の場合、command をシェルのワンライナーとして実行する。

        Raises:
            OSError: 起動に失敗した場合
        """
        argv = [command, *args] if args else shell_command(command)
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=merged_env,
        )
        terminal_id = f"term_{uuid.uuid4().hex}"
        logger.info(
            "Terminal created",
            terminal_id=terminal_id,
            session_id=session_id,
            argv=argv,
            cwd=str(cwd) if cwd is not None else None,
            pid=process.pid,
        )
        return TerminalProcessHandle(terminal_id, process, output_byte_limit)

    async def current_output(self, handle: TerminalProcessHandle) -> tuple[str, bool]:
        """バッファされた出力を返す."""
        return handle.current_output()

    async def wait_for_exit(self, handle: TerminalProcessHandle) -> TerminalExitStatus:
        """終了を待つ."""
        return await handle.wait_for_exit()

    async def kill(self, handle: TerminalProcessHandle) -> None:
        """プロセスを終了させる."""
        await handle.kill()

    async def release(self, handle: TerminalProcessHandle) -> None:
        """リソースを解放する."""
        await handle.release()
        logger.debug("Terminal released", terminal_id=handle.terminal_id)
