"""Line-delimited message channel over a pair of byte streams."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol

from acp_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)

LineCallback = Callable[[str], None]

# 受信キューの終端マーカー
_EOF = object()


class MessageChannel(Protocol):
    """1行 = 1メッセージの双方向チャネル（JSON-RPC ピアが依存する境界）."""

    async def receive(self) -> str | None:
        """次のメッセージを受信する（終端では None）."""
        ...

    async def send(self, line: str) -> None:
        """メッセージを送信する."""
        ...

    async def close(self) -> None:
        """チャネルをクローズする."""
        ...


class LineChannel:
    """
    バイトストリームを「1行 = 1メッセージ」の双方向チャネルとして扱う.

    受信側は primary の出力ストリームを行単位に分割し、空行を除いてキューに積む。
    診断用ストリーム（stderr）は OS のパイプバッファが詰まって子プロセスが
    停止しないよう、コールバックの有無に関わらず常に読み捨てる。
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        diagnostics: asyncio.StreamReader | None = None,
        on_diagnostic_line: LineCallback | None = None,
        on_inbound_line: LineCallback | None = None,
        on_outbound_line: LineCallback | None = None,
    ) -> None:
        """
        Initialize LineChannel.

        Args:
            reader: メッセージを受信するストリーム（子プロセスの stdout）
            writer: メッセージを送信するストリーム（子プロセスの stdin）
            diagnostics: 診断用ストリーム（子プロセスの stderr）
            on_diagnostic_line: 診断行を受け取るコールバック
            on_inbound_line: 受信行の観測用コールバック
            on_outbound_line: 送信行の観測用コールバック
        """
        self._reader = reader
        self._writer = writer
        self._diagnostics = diagnostics
        self._on_diagnostic_line = on_diagnostic_line
        self._on_inbound_line = on_inbound_line
        self._on_outbound_line = on_outbound_line

        self._inbound: asyncio.Queue[object] = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._diagnostics_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """チャネルがクローズ済みかどうか."""
        return self._closed

    def start(self) -> None:
        """受信タスクと診断ストリームの読み捨てタスクを開始する."""
        if self._reader_task is not None:
            return
        self._reader_task = asyncio.create_task(self._read_loop())
        if self._diagnostics is not None:
            self._diagnostics_task = asyncio.create_task(self._drain_diagnostics())

    async def _read_loop(self) -> None:
        """受信ストリームを行単位でキューに流す."""
        try:
            while True:
                raw = await self._reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                if self._on_inbound_line is not None:
                    try:
                        self._on_inbound_line(line)
                    except Exception:
                        logger.exception("Error in inbound line callback")
                self._inbound.put_nowait(line)
        except asyncio.CancelledError:
            raise
        except (ValueError, asyncio.LimitOverrunError):
            logger.exception("Inbound line exceeded the stream buffer limit")
        except (ConnectionError, OSError) as e:
            logger.warning("Inbound stream error", error=str(e))
        finally:
            self._inbound.put_nowait(_EOF)

    async def _drain_diagnostics(self) -> None:
        """診断ストリームを常に読み捨てる（コールバックがあれば転送する）."""
        assert self._diagnostics is not None
        try:
            while True:
                raw = await self._diagnostics.readline()
                if not raw:
                    break
                if self._on_diagnostic_line is not None:
                    try:
                        self._on_diagnostic_line(
                            raw.decode("utf-8", errors="replace").rstrip("\r\n")
                        )
                    except Exception:
                        logger.exception("Error in diagnostic line callback")
        except asyncio.CancelledError:
            raise
        except (ValueError, asyncio.LimitOverrunError, ConnectionError, OSError) as e:
            logger.warning("Diagnostic stream error", error=str(e))

    async def receive(self) -> str | None:
        """
        次の1行を受信する.

        Returns:
            受信した行。ストリーム終端またはクローズ後は None
        """
        if self._closed and self._inbound.empty():
            return None
        item = await self._inbound.get()
        if item is _EOF:
            # 他の待機者にも終端を伝える
            self._inbound.put_nowait(_EOF)
            return None
        assert isinstance(item, str)
        return item

    async def send(self, line: str) -> None:
        """
        1行を送信する.

        書き込みエラー（プロセス終了済みなど）は握りつぶす。
        プロセスの終了はトランスポートの終了コード監視で検出する。

        Args:
            line: 送信するメッセージ（改行は付与される）
        """
        if self._closed:
            logger.debug("Dropping outbound line on closed channel")
            return
        if self._on_outbound_line is not None:
            try:
                self._on_outbound_line(line)
            except Exception:
                logger.exception("Error in outbound line callback")
        async with self._write_lock:
            try:
                self._writer.write(line.encode("utf-8") + b"\n")
                await self._writer.drain()
            except (ConnectionError, OSError, RuntimeError) as e:
                logger.debug("Outbound write failed", error=str(e))

    async def close(self) -> None:
        """
        チャネルをクローズする（冪等）.

        受信・診断タスクを停止し、可能な範囲で送信バッファをフラッシュしたうえで
        受信キューに終端を流す。receive() で待機中の呼び出し側はハングせずに
        None を受け取る。
        """
        if self._closed:
            return
        self._closed = True

        for task in (self._reader_task, self._diagnostics_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Error stopping channel task")

        try:
            await self._writer.drain()
            self._writer.close()
        except (ConnectionError, OSError, RuntimeError):
            pass

        self._inbound.put_nowait(_EOF)
