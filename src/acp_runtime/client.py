"""High-level ACP client facade."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any

from acp_runtime.application.content import build_prompt_content
from acp_runtime.application.extensions import (
    ExtensionParams,
    ExtensionResponse,
    is_valid_extension_method,
)
from acp_runtime.application.session import SessionManager
from acp_runtime.infrastructure.fs_provider import LocalFsProvider
from acp_runtime.infrastructure.logging import get_logger
from acp_runtime.infrastructure.permission import build_permission_policy
from acp_runtime.infrastructure.rpc import JsonRpcPeer
from acp_runtime.infrastructure.terminal import DefaultTerminalProvider
from acp_runtime.infrastructure.transport import StdioTransport

if TYPE_CHECKING:
    from acp_runtime.application.models import (
        ClientCapabilities,
        ConfigOption,
        InitializeResult,
        SessionListResult,
        SessionModeState,
        SessionResult,
        TerminalEvent,
    )
    from acp_runtime.application.session import TurnState
    from acp_runtime.application.streams import Subscription
    from acp_runtime.application.updates import ToolCall, Update
    from acp_runtime.infrastructure.config import Config
    from acp_runtime.infrastructure.fs_provider import FsProvider
    from acp_runtime.infrastructure.line_channel import LineCallback
    from acp_runtime.infrastructure.permission import (
        PermissionCallback,
        PermissionPolicy,
    )
    from acp_runtime.infrastructure.terminal import (
        TerminalExitStatus,
        TerminalProvider,
    )
    from acp_runtime.infrastructure.transport import Transport

logger = get_logger(__name__)


def _log_protocol_in(line: str) -> None:
    logger.debug("ACP <<", frame=line)


def _log_protocol_out(line: str) -> None:
    logger.debug("ACP >>", frame=line)


class AcpClient:
    """
    ACP クライアント.

    トランスポート、JSON-RPC ピア、セッションマネージャーを束ね、
    呼び出し側に単一の窓口を提供する。

    Example:
        async with await AcpClient.start(config) as client:
            await client.initialize()
            session = await client.new_session("/path/to/workspace")
            async for update in client.prompt(session.session_id, "Hello"):
                ...
    """

    def __init__(
        self,
        config: Config,
        transport: Transport,
        peer: JsonRpcPeer,
        session_manager: SessionManager,
    ) -> None:
        """
        Initialize AcpClient.

        通常は start() を使用する。

        Args:
            config: 設定
            transport: 開始済みのトランスポート
            peer: 受信ループを開始済みの JSON-RPC ピア
            session_manager: セッションマネージャー
        """
        self.config = config
        self.transport = transport
        self.peer = peer
        self.sessions = session_manager
        self._disposed = False

    @classmethod
    async def start(
        cls,
        config: Config,
        transport: Transport | None = None,
        fs_provider: FsProvider | None = None,
        permission_policy: PermissionPolicy | None = None,
        terminal_provider: TerminalProvider | None = None,
        permission_callback: PermissionCallback | None = None,
        on_protocol_in: LineCallback | None = None,
        on_protocol_out: LineCallback | None = None,
    ) -> AcpClient:
        """
        トランスポートを開始し、クライアントを作成する.

        Args:
            config: 設定
            transport: トランスポート（省略時は設定のコマンドで StdioTransport を作成）
            fs_provider: ファイルシステムプロバイダー（省略時はローカルファイル）
            permission_policy: パーミッションポリシー（省略時は設定から作成）
            terminal_provider: ターミナルプロバイダー（省略時はローカルプロセス）
            permission_callback: 対話的なパーミッション判定のコールバック
            on_protocol_in: 受信フレームの観測用コールバック（省略時は DEBUG ログ）
            on_protocol_out: 送信フレームの観測用コールバック（省略時は DEBUG ログ）

        Returns:
            開始済みのクライアント

        Raises:
            AgentProcessError: エージェントの起動に失敗した場合
        """
        if transport is None:
            transport = StdioTransport(
                config.agent_executable,
                config.agent_args,
                env_overrides=config.agent_env,
                cwd=config.agent_cwd,
                on_protocol_in=on_protocol_in or _log_protocol_in,
                on_protocol_out=on_protocol_out or _log_protocol_out,
                startup_grace_period=config.startup_grace_period,
                stop_timeout=config.stop_timeout,
            )

        await transport.start()
        try:
            peer = JsonRpcPeer(transport.channel)
            session_manager = SessionManager(
                peer,
                config,
                permission_policy
                or build_permission_policy(config, permission_callback),
                fs_provider=fs_provider or LocalFsProvider(),
                terminal_provider=terminal_provider or DefaultTerminalProvider(),
            )
            peer.start()
        except Exception:
            await transport.stop()
            raise

        logger.info("ACP client started", agent=config.agent_executable)
        return cls(config, transport, peer, session_manager)

    async def __aenter__(self) -> AcpClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.dispose()

    # ===== プロトコル =====

    async def initialize(
        self, capabilities: ClientCapabilities | None = None
    ) -> InitializeResult:
        """プロトコルバージョンと機能をネゴシエーションする."""
        return await self.sessions.initialize(capabilities)

    async def new_session(self, workspace_root: str | Path) -> SessionResult:
        """新しいセッションを作成する."""
        return await self.sessions.new_session(workspace_root)

    async def load_session(
        self, session_id: str, workspace_root: str | Path
    ) -> SessionResult:
        """既存のセッションを読み込む（履歴は更新ストリームにリプレイされる）."""
        return await self.sessions.load_session(session_id, workspace_root)

    async def resume_session(
        self, session_id: str, workspace_root: str | Path
    ) -> SessionResult:
        """既存のセッションを履歴の再送なしで再開する."""
        return await self.sessions.resume_session(session_id, workspace_root)

    async def fork_session(self, session_id: str) -> SessionResult:
        """既存のセッションを分岐する."""
        return await self.sessions.fork_session(session_id)

    async def list_sessions(
        self, cwd: str | Path | None = None, cursor: str | None = None
    ) -> SessionListResult:
        """エージェントが保持するセッションの一覧を取得する."""
        return await self.sessions.list_sessions(cwd, cursor)

    async def set_config_option(
        self, session_id: str, config_id: str, value: str
    ) -> list[ConfigOption]:
        """セッションの設定オプションを変更する."""
        return await self.sessions.set_config_option(session_id, config_id, value)

    def prompt(
        self, session_id: str, content: str | Sequence[Any]
    ) -> AsyncIterator[Update]:
        """
        プロンプトを送信し、このターンの更新ストリームを返す.

        文字列の場合は @-メンションを resource_link に変換したコンテンツを
        組み立てる。コンテンツブロックのリストはそのまま送信する。

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        if isinstance(content, str):
            root = self.sessions.workspace_root(session_id)
            return self.sessions.prompt(
                session_id, build_prompt_content(content, root)
            )
        return self.sessions.prompt(session_id, content)

    def session_updates(self, session_id: str) -> Subscription[Update]:
        """セッションの永続的な更新ストリーム（リプレイ付き）を購読する."""
        return self.sessions.session_updates(session_id)

    async def cancel(self, session_id: str) -> None:
        """現在のターンをキャンセルする."""
        await self.sessions.cancel(session_id)

    # ===== モード・状態 =====

    def session_modes(self, session_id: str) -> SessionModeState | None:
        """セッションの既知のモード情報を返す."""
        return self.sessions.session_modes(session_id)

    async def set_mode(self, session_id: str, mode_id: str) -> bool:
        """セッションのモードを変更する（拒否された場合 False）."""
        return await self.sessions.set_mode(session_id, mode_id)

    def session_state(self, session_id: str) -> TurnState:
        """セッションのターン状態を返す."""
        return self.sessions.session_state(session_id)

    def tool_calls(self, session_id: str) -> dict[str, ToolCall]:
        """セッションのツール呼び出し表のスナップショットを返す."""
        return self.sessions.tool_calls(session_id)

    # ===== ターミナル =====

    def terminal_events(self) -> Subscription[TerminalEvent]:
        """ターミナルのライフサイクルイベントを購読する."""
        return self.sessions.terminal_events()

    async def terminal_output(self, terminal_id: str) -> str:
        return await self.sessions.read_terminal_output(terminal_id)

    async def terminal_kill(self, terminal_id: str) -> None:
        await self.sessions.kill_terminal(terminal_id)

    async def terminal_wait_for_exit(
        self, terminal_id: str
    ) -> TerminalExitStatus | None:
        return await self.sessions.wait_terminal(terminal_id)

    async def terminal_release(self, terminal_id: str) -> None:
        await self.sessions.release_terminal(terminal_id)

    # ===== 拡張 =====

    async def send_raw(self, method: str, params: Any = None) -> Any:
        """任意のメソッドのリクエストを送信する."""
        return await self.peer.send_raw(method, params)

    async def send_notification_raw(self, method: str, params: Any = None) -> None:
        """任意のメソッドの通知を送信する."""
        await self.peer.send_notification_raw(method, params)

    async def send_extension_request(
        self, method: str, params: ExtensionParams | dict[str, Any] | None = None
    ) -> ExtensionResponse:
        """
        拡張メソッドのリクエストを送信する.

        Raises:
            ValueError: メソッド名が "_" で始まらない場合
        """
        if not is_valid_extension_method(method):
            msg = f"Extension method names must start with '_': {method}"
            raise ValueError(msg)
        if isinstance(params, ExtensionParams):
            params = params.to_dict()
        result = await self.peer.send_raw(method, params or {})
        return ExtensionResponse.from_wire(result)

    async def send_extension_notification(
        self, method: str, params: ExtensionParams | dict[str, Any] | None = None
    ) -> None:
        """
        拡張メソッドの通知を送信する.

        Raises:
            ValueError: メソッド名が "_" で始まらない場合
        """
        if not is_valid_extension_method(method):
            msg = f"Extension method names must start with '_': {method}"
            raise ValueError(msg)
        if isinstance(params, ExtensionParams):
            params = params.to_dict()
        await self.peer.send_notification_raw(method, params or {})

    def on_extension_notification(
        self,
        method: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
    ) -> None:
        """
        エージェントから届く拡張通知のハンドラを登録する.

        ハンドラは受信ループとは別のタスクで実行され、例外はログに記録される。

        Raises:
            ValueError: メソッド名が "_" で始まらない場合
        """
        if not is_valid_extension_method(method):
            msg = f"Extension method names must start with '_': {method}"
            raise ValueError(msg)
        self.peer.on_extension_notification(method, handler)

    # ===== 破棄 =====

    async def dispose(self) -> None:
        """
        クライアントを破棄する（冪等）.

        ピア → セッションマネージャー → トランスポートの順に停止する。
        各ステップは独立しており、途中で失敗しても後続のステップは実行される。
        """
        if self._disposed:
            return
        self._disposed = True

        try:
            await self.peer.close()
        except Exception:
            logger.exception("Error closing JSON-RPC peer")

        try:
            await self.sessions.dispose()
        except Exception:
            logger.exception("Error disposing session manager")

        try:
            await self.transport.stop()
        except Exception:
            logger.exception("Error stopping transport")

        logger.info("ACP client disposed")
