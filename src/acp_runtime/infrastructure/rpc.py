"""JSON-RPC 2.0 peer for the Agent Client Protocol."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from acp_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from acp_runtime.infrastructure.line_channel import MessageChannel

logger = get_logger(__name__)

# JSON-RPC 2.0 標準エラーコード
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# エージェントから呼び出されるクライアント側メソッド
METHOD_READ_TEXT_FILE = "fs/read_text_file"
METHOD_WRITE_TEXT_FILE = "fs/write_text_file"
METHOD_REQUEST_PERMISSION = "session/request_permission"
METHOD_TERMINAL_CREATE = "terminal/create"
METHOD_TERMINAL_OUTPUT = "terminal/output"
METHOD_TERMINAL_WAIT_FOR_EXIT = "terminal/wait_for_exit"
METHOD_TERMINAL_KILL = "terminal/kill"
METHOD_TERMINAL_RELEASE = "terminal/release"
METHOD_SESSION_UPDATE = "session/update"

RequestHandler = Callable[[dict[str, Any]], Awaitable[Any]]
SessionUpdateListener = Callable[[dict[str, Any]], None]


class JsonRpcError(Exception):
    """JSON-RPC のエラー応答を表す例外."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        """
        Initialize JsonRpcError.

        Args:
            code: JSON-RPC エラーコード
            message: エラーメッセージ
            data: 追加のエラー情報
        """
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """エラーオブジェクトの辞書表現を返す."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @classmethod
    def method_not_found(cls, method: str) -> JsonRpcError:
        """Method not found エラーを作成する."""
        return cls(METHOD_NOT_FOUND, f"Method not found: {method}")


class PeerClosedError(ConnectionError):
    """ピアがクローズされた後に送受信しようとした場合の例外."""


class JsonRpcPeer:
    """
    チャネル上の双方向 JSON-RPC 2.0 ピア.

    送信リクエストは ID で応答と対応付ける。エージェントからのリクエストは
    固定のハンドラスロットに振り分け、それぞれ独立したタスクで処理する。
    session/update 通知だけは受信ループ内で同期的にリスナーへ渡し、
    同じ受信ループで処理される prompt 応答より先に届くことを保証する。
    """

    def __init__(self, channel: MessageChannel) -> None:
        """
        Initialize JsonRpcPeer.

        Args:
            channel: 1行 = 1メッセージのチャネル
        """
        self._channel = channel
        self._next_id = 0
        self._pending: dict[int | str, asyncio.Future[Any]] = {}
        self._handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, RequestHandler] = {}
        self._session_update_listeners: list[SessionUpdateListener] = []
        self._inbound_tasks: set[asyncio.Task[None]] = set()
        self._listen_task: asyncio.Task[None] | None = None
        self._closed = False

    # エージェントから呼ばれるメソッドのハンドラスロット
    def on_read_text_file(self, handler: RequestHandler) -> None:
        """fs/read_text_file のハンドラを登録する."""
        self._handlers[METHOD_READ_TEXT_FILE] = handler

    def on_write_text_file(self, handler: RequestHandler) -> None:
        """fs/write_text_file のハンドラを登録する."""
        self._handlers[METHOD_WRITE_TEXT_FILE] = handler

    def on_request_permission(self, handler: RequestHandler) -> None:
        """session/request_permission のハンドラを登録する."""
        self._handlers[METHOD_REQUEST_PERMISSION] = handler

    def on_terminal_create(self, handler: RequestHandler) -> None:
        """terminal/create のハンドラを登録する."""
        self._handlers[METHOD_TERMINAL_CREATE] = handler

    def on_terminal_output(self, handler: RequestHandler) -> None:
        """terminal/output のハンドラを登録する."""
        self._handlers[METHOD_TERMINAL_OUTPUT] = handler

    def on_terminal_wait_for_exit(self, handler: RequestHandler) -> None:
        """terminal/wait_for_exit のハンドラを登録する."""
        self._handlers[METHOD_TERMINAL_WAIT_FOR_EXIT] = handler

    def on_terminal_kill(self, handler: RequestHandler) -> None:
        """terminal/kill のハンドラを登録する."""
        self._handlers[METHOD_TERMINAL_KILL] = handler

    def on_terminal_release(self, handler: RequestHandler) -> None:
        """terminal/release のハンドラを登録する."""
        self._handlers[METHOD_TERMINAL_RELEASE] = handler

    def on_extension_notification(self, method: str, handler: RequestHandler) -> None:
        """
        エージェントからの拡張通知（"_" で始まるメソッド）のハンドラを登録する.

        Args:
            method: 通知メソッド名
            handler: 通知パラメータを受け取るハンドラ
        """
        self._notification_handlers[method] = handler

    def add_session_update_listener(self, listener: SessionUpdateListener) -> None:
        """
        session/update 通知のリスナーを登録する.

        リスナーは受信ループ内で同期的に呼ばれるため、ブロックしてはならない。

        Args:
            listener: 通知パラメータをそのまま受け取るコールバック
        """
        self._session_update_listeners.append(listener)

    @property
    def closed(self) -> bool:
        """ピアがクローズ済みかどうか."""
        return self._closed

    def start(self) -> None:
        """受信ループを開始する."""
        if self._listen_task is None:
            self._listen_task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        """受信ループ. 失敗はここで捕捉し、ピアをクローズ済みとして扱う."""
        try:
            while True:
                line = await self._channel.receive()
                if line is None:
                    logger.debug("Channel reached end of stream")
                    break
                await self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("JSON-RPC listen loop failed")
        finally:
            self._closed = True
            self._fail_pending(PeerClosedError("Connection closed"))

    async def _handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Received malformed JSON-RPC message", error=str(e))
            await self._send_error(None, JsonRpcError(PARSE_ERROR, "Parse error"))
            return

        if not isinstance(message, dict):
            logger.warning("Received non-object JSON-RPC message")
            await self._send_error(
                None, JsonRpcError(INVALID_REQUEST, "Invalid request")
            )
            return

        method = message.get("method")
        msg_id = message.get("id")

        if isinstance(method, str):
            params = message.get("params")
            if not isinstance(params, dict):
                params = {}
            if msg_id is None:
                self._dispatch_notification(method, params)
            else:
                self._spawn_request_handler(msg_id, method, params)
            return

        if msg_id is not None and ("result" in message or "error" in message):
            self._resolve_response(msg_id, message)
            return

        logger.warning("Received invalid JSON-RPC message", message=message)
        if msg_id is not None:
            await self._send_error(
                msg_id, JsonRpcError(INVALID_REQUEST, "Invalid request")
            )

    def _dispatch_notification(self, method: str, params: dict[str, Any]) -> None:
        if method == METHOD_SESSION_UPDATE:
            for listener in list(self._session_update_listeners):
                try:
                    listener(params)
                except Exception:
                    logger.exception("Error in session/update listener")
            return

        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("Ignoring unhandled notification", method=method)
            return
        task = asyncio.create_task(self._run_notification_handler(handler, params))
        self._track(task)

    async def _run_notification_handler(
        self, handler: RequestHandler, params: dict[str, Any]
    ) -> None:
        try:
            await handler(params)
        except Exception:
            logger.exception("Error in notification handler")

    def _spawn_request_handler(
        self, msg_id: int | str, method: str, params: dict[str, Any]
    ) -> None:
        task = asyncio.create_task(self._run_request_handler(msg_id, method, params))
        self._track(task)

    def _track(self, task: asyncio.Task[None]) -> None:
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)

    async def _run_request_handler(
        self, msg_id: int | str, method: str, params: dict[str, Any]
    ) -> None:
        handler = self._handlers.get(method)
        if handler is None:
            logger.info("Agent called unregistered method", method=method)
            await self._send_error(msg_id, JsonRpcError.method_not_found(method))
            return

        try:
            result = await handler(params)
        except asyncio.CancelledError:
            raise
        except JsonRpcError as e:
            logger.info("Handler returned JSON-RPC error", method=method, code=e.code)
            await self._send_error(msg_id, e)
            return
        except Exception as e:
            logger.warning("Handler failed", method=method, error=str(e))
            await self._send_error(msg_id, JsonRpcError(INTERNAL_ERROR, str(e)))
            return

        await self._send_message(
            {"jsonrpc": "2.0", "id": msg_id, "result": _to_json(result)}
        )

    def _resolve_response(self, msg_id: int | str, message: dict[str, Any]) -> None:
        future = self._pending.pop(msg_id, None)
        if future is None:
            logger.warning("Received response for unknown request", id=msg_id)
            return
        if future.done():
            return
        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                future.set_exception(
                    JsonRpcError(
                        int(error.get("code", INTERNAL_ERROR)),
                        str(error.get("message", "")),
                        error.get("data"),
                    )
                )
            else:
                future.set_exception(JsonRpcError(INTERNAL_ERROR, str(error)))
            return
        future.set_result(message.get("result"))

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    async def _send_message(self, message: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Dropping outbound message on closed peer")
            return
        await self._channel.send(json.dumps(message, ensure_ascii=False))

    async def _send_error(self, msg_id: int | str | None, error: JsonRpcError) -> None:
        await self._send_message(
            {"jsonrpc": "2.0", "id": msg_id, "error": error.to_dict()}
        )

    async def request(self, method: str, params: Any = None) -> Any:
        """
        リクエストを送信し、応答を待つ.

        Args:
            method: メソッド名
            params: パラメータ（pydantic モデルまたは JSON 互換値）

        Returns:
            応答の result

        Raises:
            JsonRpcError: エージェントがエラーを返した場合
            PeerClosedError: 応答前に接続が終了した場合
        """
        if self._closed:
            msg = f"Cannot send '{method}': connection closed"
            raise PeerClosedError(msg)

        self._next_id += 1
        msg_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id, "method": method}
        if params is not None:
            message["params"] = _to_json(params)
        try:
            await self._channel.send(json.dumps(message, ensure_ascii=False))
            return await future
        finally:
            self._pending.pop(msg_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        """
        通知を送信する（応答は待たない）.

        Raises:
            PeerClosedError: 接続が終了している場合
        """
        if self._closed:
            msg = f"Cannot send '{method}': connection closed"
            raise PeerClosedError(msg)
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = _to_json(params)
        await self._channel.send(json.dumps(message, ensure_ascii=False))

    # ACP のエージェント側メソッド
    async def initialize(self, params: dict[str, Any]) -> Any:
        """initialize リクエストを送信する."""
        return await self.request("initialize", params)

    async def new_session(self, params: dict[str, Any]) -> Any:
        """session/new リクエストを送信する."""
        return await self.request("session/new", params)

    async def load_session(self, params: dict[str, Any]) -> Any:
        """session/load リクエストを送信する."""
        return await self.request("session/load", params)

    async def list_sessions(self, params: dict[str, Any]) -> Any:
        """session/list リクエストを送信する."""
        return await self.request("session/list", params)

    async def resume_session(self, params: dict[str, Any]) -> Any:
        """session/resume リクエストを送信する."""
        return await self.request("session/resume", params)

    async def fork_session(self, params: dict[str, Any]) -> Any:
        """session/fork リクエストを送信する."""
        return await self.request("session/fork", params)

    async def prompt(self, params: dict[str, Any]) -> Any:
        """session/prompt リクエストを送信する."""
        return await self.request("session/prompt", params)

    async def cancel(self, session_id: str) -> None:
        """session/cancel 通知を送信する."""
        await self.notify("session/cancel", {"sessionId": session_id})

    async def set_session_mode(self, params: dict[str, Any]) -> Any:
        """session/set_mode リクエストを送信する."""
        return await self.request("session/set_mode", params)

    async def set_config_option(self, params: dict[str, Any]) -> Any:
        """session/set_config_option リクエストを送信する."""
        return await self.request("session/set_config_option", params)

    async def send_raw(self, method: str, params: Any = None) -> Any:
        """任意のメソッドのリクエストを送信する（拡張用）."""
        return await self.request(method, params)

    async def send_notification_raw(self, method: str, params: Any = None) -> None:
        """任意のメソッドの通知を送信する（拡張用）."""
        await self.notify(method, params)

    async def close(self) -> None:
        """
        ピアをクローズする（冪等）.

        先に受信ループとチャネルを止めてから、通知リスナーを解除する。
        応答待ちのリクエストは PeerClosedError で失敗する。
        """
        if self._listen_task is None and self._closed:
            self._session_update_listeners.clear()
            return
        self._closed = True

        try:
            await self._channel.close()
        except Exception:
            logger.exception("Error closing channel")

        if self._listen_task is not None:
            if not self._listen_task.done():
                self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Error stopping listen loop")
            self._listen_task = None

        for task in list(self._inbound_tasks):
            task.cancel()
        self._inbound_tasks.clear()

        self._fail_pending(PeerClosedError("Connection closed"))
        self._session_update_listeners.clear()
        logger.debug("JSON-RPC peer closed")


def _to_json(value: Any) -> Any:
    """pydantic モデルをワイヤ形式（camelCase, null 省略）の辞書に変換する."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_to_json(v) for v in value]
    return value
