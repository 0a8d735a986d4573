"""Session management - the ACP protocol state machine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from acp import (
    PROTOCOL_VERSION,
    ReadTextFileResponse,
    RequestPermissionResponse,
    WriteTextFileResponse,
    text_block,
)
from acp.schema import (
    AllowedOutcome,
    CreateTerminalRequest,
    DeniedOutcome,
    Implementation,
    KillTerminalCommandRequest,
    ReadTextFileRequest,
    ReleaseTerminalRequest,
    RequestPermissionRequest,
    TerminalOutputRequest,
    WaitForTerminalExitRequest,
    WriteTextFileRequest,
)
from pydantic import BaseModel, ValidationError

from acp_runtime.application.models import (
    ClientCapabilities,
    ConfigOption,
    InitializeResult,
    PermissionOptionInfo,
    PermissionOutcome,
    PermissionRequest,
    SessionListResult,
    SessionModeState,
    SessionResult,
    TerminalCreated,
    TerminalEvent,
    TerminalExited,
    TerminalOutputEvent,
    TerminalReleased,
    parse_config_options,
)
from acp_runtime.application.streams import EventStream, Subscription
from acp_runtime.application.updates import (
    Diff,
    DiffUpdate,
    ModeUpdate,
    Plan,
    PlanUpdate,
    StopReason,
    ToolCall,
    ToolCallUpdate,
    TurnEnded,
    UnknownUpdate,
    Update,
    parse_available_commands,
    parse_message_delta,
)
from acp_runtime.infrastructure.logging import get_logger
from acp_runtime.infrastructure.permission import PermissionDeniedError
from acp_runtime.infrastructure.rpc import INVALID_PARAMS, JsonRpcError
from acp_runtime.infrastructure.terminal import TerminalExitStatus
from acp_runtime.infrastructure.workspace_jail import WorkspaceJail

if TYPE_CHECKING:
    from acp_runtime.infrastructure.config import Config
    from acp_runtime.infrastructure.fs_provider import FsProvider
    from acp_runtime.infrastructure.permission import PermissionPolicy
    from acp_runtime.infrastructure.rpc import JsonRpcPeer
    from acp_runtime.infrastructure.terminal import (
        TerminalProcessHandle,
        TerminalProvider,
    )

logger = get_logger(__name__)

CLIENT_NAME = "acp-runtime"
CLIENT_VERSION = "0.1.0"

PromptContent = str | Sequence[Any]


class TurnState(StrEnum):
    """セッションのターン状態."""

    IDLE = "idle"
    PROMPTING = "prompting"
    STREAMING = "streaming"
    WAITING_PERMISSION = "waiting_permission"
    CANCELLING = "cancelling"
    COMPLETED = "completed"


class ProtocolVersionError(Exception):
    """エージェントのプロトコルバージョンがサポート範囲外の場合の例外."""

    def __init__(self, negotiated: int, minimum: int) -> None:
        """
        Initialize ProtocolVersionError.

        Args:
            negotiated: エージェントが返したバージョン
            minimum: クライアントがサポートする最小バージョン
        """
        super().__init__(
            f"Unsupported ACP protocol version: {negotiated}. "
            f"Minimum required: {minimum}."
        )
        self.negotiated = negotiated
        self.minimum = minimum


class SessionNotFoundError(ValueError):
    """セッションが見つからない場合の例外."""

    def __init__(self, session_id: str) -> None:
        """
        Initialize SessionNotFoundError.

        Args:
            session_id: 見つからなかったセッション ID
        """
        super().__init__(f"Invalid session ID: {session_id}")
        self.session_id = session_id


@dataclass
class Session:
    """1つのエージェント会話の状態."""

    session_id: str
    workspace_root: Path | None = None
    updates: EventStream[Update] = field(default_factory=EventStream)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    modes: SessionModeState | None = None
    state: TurnState = TurnState.IDLE
    pending_permissions: int = 0
    prompt_task: asyncio.Task[None] | None = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


_RequestT = TypeVar("_RequestT", bound=BaseModel)


def _parse_params(model: type[_RequestT], params: dict[str, Any]) -> _RequestT:
    """
    エージェントからのリクエストの params を acp.schema のモデルで検証する.

    sessionId を省略するエージェントもあるため、省略時は空文字列として扱う。
    acp.schema は一部のフィールドの不正な値を黙って None に置き換えるため、
    値が送られたのに None になったフィールドも不正として扱う。

    Raises:
        JsonRpcError: params がスキーマに合わない場合 (Invalid params)
    """
    try:
        req = model.model_validate({"sessionId": "", **params})
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        msg = f"Invalid params for {model.__name__}: {details}"
        raise JsonRpcError(INVALID_PARAMS, msg) from e

    dropped: list[str] = []
    for name, field in model.model_fields.items():
        key = field.alias or name
        if key.startswith("_"):
            continue
        if params.get(key) is not None and getattr(req, name) is None:
            dropped.append(f"{key}: invalid value {params[key]!r}")
    if dropped:
        msg = f"Invalid params for {model.__name__}: {'; '.join(dropped)}"
        raise JsonRpcError(INVALID_PARAMS, msg)
    return req


async def _until_turn_ended(
    subscription: Subscription[Update],
) -> AsyncIterator[Update]:
    """TurnEnded を転送した直後に購読を閉じる1ターン分のストリーム."""
    try:
        async for update in subscription:
            yield update
            if isinstance(update, TurnEnded):
                break
    finally:
        await subscription.aclose()


class SessionManager:
    """
    ACP プロトコルのオーケストレーター.

    セッションごとの状態（ターン状態、リプレイバッファ、ツール呼び出し表、
    ワークスペースルート、モード）を保持し、エージェントからのコールバックを
    ワークスペースジェイルとパーミッションポリシーを通して処理する。
    """

    def __init__(
        self,
        peer: JsonRpcPeer,
        config: Config,
        permission_policy: PermissionPolicy,
        fs_provider: FsProvider | None = None,
        terminal_provider: TerminalProvider | None = None,
    ) -> None:
        """
        Initialize SessionManager.

        Args:
            peer: JSON-RPC ピア
            config: 設定
            permission_policy: パーミッション判定ポリシー
            fs_provider: ファイルシステムプロバイダー（None ならファイル操作は非対応）
            terminal_provider: ターミナルプロバイダー（None ならターミナルは非対応）
        """
        self._peer = peer
        self._config = config
        self._permission_policy = permission_policy
        self._fs_provider = fs_provider
        self._terminal_provider = terminal_provider
        self._jail = WorkspaceJail(
            allow_read_outside=config.allow_read_outside_workspace
        )

        self._sessions: dict[str, Session] = {}
        # キャンセル中のセッション ID（未知の ID でもセッション状態は作らない）
        self._cancelling: set[str] = set()
        self._terminals: dict[str, TerminalProcessHandle] = {}
        self._terminal_events: EventStream[TerminalEvent] = EventStream(retain=False)

        # エージェント → クライアントのハンドラを登録
        peer.on_read_text_file(self._on_read_text_file)
        peer.on_write_text_file(self._on_write_text_file)
        peer.on_request_permission(self._on_request_permission)
        peer.on_terminal_create(self._on_terminal_create)
        peer.on_terminal_output(self._on_terminal_output)
        peer.on_terminal_wait_for_exit(self._on_terminal_wait_for_exit)
        peer.on_terminal_kill(self._on_terminal_kill)
        peer.on_terminal_release(self._on_terminal_release)
        peer.add_session_update_listener(self._route_session_update)

    # ===== セッション状態 =====

    def _ensure_session(self, session_id: str) -> Session:
        """セッションを取得する（未知のセッションは遅延初期化する）."""
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id)
            self._sessions[session_id] = session
        return session

    def _get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _register_session(
        self, session_id: str, workspace_root: str | Path
    ) -> Session:
        session = self._ensure_session(session_id)
        session.workspace_root = Path(workspace_root).expanduser().resolve()
        return session

    def _session_result(
        self, session: Session, response: dict[str, Any]
    ) -> SessionResult:
        """セッション系メソッドの応答からモード情報を取り込み、結果を作成する."""
        modes = response.get("modes")
        if isinstance(modes, dict):
            session.modes = SessionModeState.from_wire(modes)
        meta = response.get("_meta")
        return SessionResult(
            session_id=session.session_id,
            config_options=parse_config_options(response.get("configOptions")),
            modes=session.modes,
            meta=meta if isinstance(meta, dict) else None,
        )

    def workspace_root(self, session_id: str) -> Path:
        """
        セッションのワークスペースルートを取得する.

        Raises:
            SessionNotFoundError: セッションが存在しないかルートが未設定の場合
        """
        session = self._sessions.get(session_id)
        if session is None or session.workspace_root is None:
            raise SessionNotFoundError(session_id)
        return session.workspace_root

    def session_state(self, session_id: str) -> TurnState:
        """
        セッションのターン状態を取得する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        return self._get_session(session_id).state

    def tool_calls(self, session_id: str) -> dict[str, ToolCall]:
        """セッションのツール呼び出し表のスナップショットを返す."""
        session = self._sessions.get(session_id)
        return dict(session.tool_calls) if session is not None else {}

    def session_modes(self, session_id: str) -> SessionModeState | None:
        """セッションの既知のモード情報を返す."""
        session = self._sessions.get(session_id)
        return session.modes if session is not None else None

    def session_updates(self, session_id: str) -> Subscription[Update]:
        """
        セッションの永続的な更新ストリームを購読する.

        これまでの全更新をリプレイし、その後のライブ更新を続けて配信する。
        """
        return self._ensure_session(session_id).updates.subscribe(replay=True)

    def terminal_events(self) -> Subscription[TerminalEvent]:
        """ターミナルのライフサイクルイベントを購読する."""
        return self._terminal_events.subscribe(replay=False)

    # ===== プロトコルメソッド =====

    def default_capabilities(self) -> ClientCapabilities:
        """設定と注入されたプロバイダーからクライアントの機能を作成する."""
        return ClientCapabilities(
            read_text_file=self._config.fs_read_enabled
            and self._fs_provider is not None,
            write_text_file=self._config.fs_write_enabled
            and self._fs_provider is not None,
            terminal=self._config.terminal_enabled
            and self._terminal_provider is not None,
        )

    async def initialize(
        self, capabilities: ClientCapabilities | None = None
    ) -> InitializeResult:
        """
        プロトコルバージョンと機能をネゴシエーションする.

        Args:
            capabilities: 通知するクライアント機能（省略時は設定から作成）

        Returns:
            ネゴシエーション結果

        Raises:
            ProtocolVersionError: エージェントのバージョンが最小バージョン未満の場合
        """
        caps = capabilities or self.default_capabilities()
        response = await self._peer.initialize(
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientCapabilities": caps.to_dict(),
                "clientInfo": Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
            }
        )
        result = InitializeResult.from_wire(_as_dict(response))
        minimum = self._config.minimum_protocol_version
        if result.protocol_version < minimum:
            raise ProtocolVersionError(result.protocol_version, minimum)
        logger.info(
            "ACP agent initialized",
            protocol_version=result.protocol_version,
            agent_info=result.agent_info,
        )
        return result

    async def new_session(self, workspace_root: str | Path) -> SessionResult:
        """
        新しいセッションを作成する.

        Args:
            workspace_root: ワークスペースルート（ファイル・ターミナル操作の境界）

        Returns:
            セッションの作成結果
        """
        root = Path(workspace_root).expanduser().resolve()
        response = await self._peer.new_session(
            {"cwd": str(root), "mcpServers": self._config.mcp_servers}
        )
        if not isinstance(response, dict) or not isinstance(
            response.get("sessionId"), str
        ):
            msg = "session/new response did not include a sessionId"
            raise JsonRpcError(INVALID_PARAMS, msg, response)
        session = self._register_session(response["sessionId"], root)
        logger.info(
            "Session created", session_id=session.session_id, workspace=str(root)
        )
        return self._session_result(session, response)

    async def load_session(
        self, session_id: str, workspace_root: str | Path
    ) -> SessionResult:
        """
        既存のセッションを読み込む.

        エージェントは履歴を通常の session/update 通知として再送するため、
        リクエスト送信前にセッションの状態を用意しておく。
        """
        session = self._register_session(session_id, workspace_root)
        response = await self._peer.load_session(
            {
                "sessionId": session_id,
                "cwd": str(session.workspace_root),
                "mcpServers": self._config.mcp_servers,
            }
        )
        logger.info("Session loaded", session_id=session_id)
        return self._session_result(session, _as_dict(response))

    async def resume_session(
        self, session_id: str, workspace_root: str | Path
    ) -> SessionResult:
        """履歴を再送させずに既存のセッションを再開する."""
        session = self._register_session(session_id, workspace_root)
        response = await self._peer.resume_session(
            {
                "sessionId": session_id,
                "cwd": str(session.workspace_root),
                "mcpServers": self._config.mcp_servers,
            }
        )
        logger.info("Session resumed", session_id=session_id)
        return self._session_result(session, _as_dict(response))

    async def fork_session(self, session_id: str) -> SessionResult:
        """
        既存のセッションを分岐する（ワークスペースルートは引き継ぐ）.

        Raises:
            SessionNotFoundError: 分岐元のワークスペースルートが不明な場合
        """
        root = self.workspace_root(session_id)
        response = await self._peer.fork_session(
            {
                "sessionId": session_id,
                "cwd": str(root),
                "mcpServers": self._config.mcp_servers,
            }
        )
        if not isinstance(response, dict) or not isinstance(
            response.get("sessionId"), str
        ):
            msg = "session/fork response did not include a sessionId"
            raise JsonRpcError(INVALID_PARAMS, msg, response)
        forked = self._register_session(response["sessionId"], root)
        logger.info(
            "Session forked", source=session_id, session_id=forked.session_id
        )
        return self._session_result(forked, response)

    async def list_sessions(
        self, cwd: str | Path | None = None, cursor: str | None = None
    ) -> SessionListResult:
        """エージェントが保持するセッションの一覧を取得する."""
        params: dict[str, Any] = {}
        if cwd is not None:
            params["cwd"] = str(cwd)
        if cursor is not None:
            params["cursor"] = cursor
        response = await self._peer.list_sessions(params)
        return SessionListResult.from_wire(_as_dict(response))

    async def set_config_option(
        self, session_id: str, config_id: str, value: str
    ) -> list[ConfigOption]:
        """
        セッションの設定オプションを変更する.

        Returns:
            変更後の設定オプション一覧
        """
        response = await self._peer.set_config_option(
            {"sessionId": session_id, "configId": config_id, "value": value}
        )
        options = parse_config_options(
            response.get("configOptions") if isinstance(response, dict) else None
        )
        return options or []

    async def set_mode(self, session_id: str, mode_id: str) -> bool:
        """
        セッションのモードを変更する.

        成功した場合は応答の通知を待たずに現在のモードを更新する。

        Returns:
            エージェントが受け付けた場合 True、拒否した場合 False
        """
        try:
            await self._peer.set_session_mode(
                {"sessionId": session_id, "modeId": mode_id}
            )
        except JsonRpcError as e:
            logger.warning(
                "Agent rejected mode change",
                session_id=session_id,
                mode_id=mode_id,
                error=e.message,
            )
            return False
        session = self._sessions.get(session_id)
        if session is not None:
            current = session.modes or SessionModeState(current_mode_id=mode_id)
            session.modes = replace(current, current_mode_id=mode_id)
        logger.info("Session mode changed", session_id=session_id, mode_id=mode_id)
        return True

    def prompt(self, session_id: str, content: PromptContent) -> AsyncIterator[Update]:
        """
        プロンプトを送信し、このターンの更新ストリームを返す.

        ストリームはリプレイを含まず、TurnEnded を転送した直後に終了する。
        プロンプトの失敗時も stop_reason=other の TurnEnded で必ず終了する。

        Args:
            session_id: セッション ID
            content: テキスト、またはコンテンツブロックのリスト

        Returns:
            このターンの更新ストリーム

        Raises:
            SessionNotFoundError: セッションが存在しない場合（エージェントには送信しない）
        """
        session = self._get_session(session_id)
        if session.prompt_task is not None and not session.prompt_task.done():
            logger.warning(
                "Prompt sent while a turn is in progress", session_id=session_id
            )

        blocks = [text_block(content)] if isinstance(content, str) else list(content)
        # ライブ購読はリクエスト送信前に登録する
        subscription = session.updates.subscribe(replay=False)
        self._cancelling.discard(session_id)
        session.state = TurnState.PROMPTING
        session.prompt_task = asyncio.create_task(self._run_prompt(session, blocks))
        return _until_turn_ended(subscription)

    async def _run_prompt(self, session: Session, blocks: list[Any]) -> None:
        """プロンプトの応答を待ち、ターンの終了を記録する."""
        try:
            response = await self._peer.prompt(
                {"sessionId": session.session_id, "prompt": blocks}
            )
            stop_reason = StopReason.from_wire(
                response.get("stopReason") if isinstance(response, dict) else None
            )
            turn_ended = TurnEnded(stop_reason)
        except Exception as e:
            logger.warning(
                "Prompt failed", session_id=session.session_id, error=str(e)
            )
            turn_ended = TurnEnded(StopReason.OTHER, error=str(e))

        if turn_ended.stop_reason == StopReason.CANCELLED:
            self._cancelling.discard(session.session_id)
        session.state = TurnState.COMPLETED
        session.updates.append(turn_ended)
        logger.info(
            "Turn ended",
            session_id=session.session_id,
            stop_reason=turn_ended.stop_reason.value,
        )

    async def cancel(self, session_id: str) -> None:
        """
        現在のターンをキャンセルする（応答は待たない）.

        キャンセル中フラグは通知の送信より先に立てる。並行して届いた
        パーミッション要求はポリシーに渡さず cancelled で応答される。
        """
        self._cancelling.add(session_id)
        session = self._sessions.get(session_id)
        if session is not None and session.state in (
            TurnState.PROMPTING,
            TurnState.STREAMING,
            TurnState.WAITING_PERMISSION,
        ):
            session.state = TurnState.CANCELLING
        logger.info("Cancelling turn", session_id=session_id)
        await self._peer.cancel(session_id)

    # ===== session/update の振り分け =====

    def _route_session_update(self, params: dict[str, Any]) -> None:
        """session/update 通知を型付きの更新に変換して配信する."""
        session_id = params.get("sessionId")
        update = params.get("update")
        if not isinstance(session_id, str) or not isinstance(update, dict):
            logger.debug("Ignoring malformed session/update", params=params)
            return

        # セッション作成直後の更新を落とさないよう遅延初期化する
        session = self._ensure_session(session_id)
        typed = self._to_update(session, update, params)
        if session.state == TurnState.PROMPTING:
            session.state = TurnState.STREAMING
        session.updates.append(typed)

    def _to_update(
        self, session: Session, update: dict[str, Any], params: dict[str, Any]
    ) -> Update:
        kind = update.get("sessionUpdate")
        if kind in ("user_message_chunk", "agent_message_chunk", "agent_thought_chunk"):
            return parse_message_delta(kind, update)
        if kind in ("tool_call", "tool_call_update"):
            return ToolCallUpdate(self._merge_tool_call(session, kind, update))
        if kind == "plan":
            return PlanUpdate(Plan.from_wire(update))
        if kind == "diff":
            return DiffUpdate(Diff.from_wire(update))
        if kind == "available_commands_update":
            return parse_available_commands(update)
        if kind == "current_mode_update":
            mode_id = update.get("currentModeId")
            if isinstance(mode_id, str):
                if session.modes is not None:
                    session.modes = replace(session.modes, current_mode_id=mode_id)
                else:
                    session.modes = SessionModeState(current_mode_id=mode_id)
            return ModeUpdate(mode_id if isinstance(mode_id, str) else "")
        return UnknownUpdate(params)

    @staticmethod
    def _merge_tool_call(
        session: Session, kind: str, update: dict[str, Any]
    ) -> ToolCall:
        """
        ツール呼び出し表を更新する.

        tool_call は全体を置き換え、tool_call_update は既存のエントリに
        null 以外のフィールドだけをマージする。対応する tool_call が無い
        更新はエラーとせず、更新内容だけから新しいエントリを作成する。
        """
        incoming = ToolCall.from_wire(update)
        existing = session.tool_calls.get(incoming.tool_call_id)
        if kind == "tool_call" or existing is None:
            tool_call = incoming
        else:
            tool_call = existing.merge(update)
        session.tool_calls[tool_call.tool_call_id] = tool_call
        return tool_call

    # ===== エージェント → クライアントのコールバック =====

    def _callback_context(self, session_id: str) -> tuple[str, Path]:
        """コールバックのセッション ID とワークスペースルートを解決する."""
        if session_id:
            session = self._sessions.get(session_id)
            root = session.workspace_root if session is not None else None
        else:
            # sessionId を省略するエージェント向けに既知のルートを使う
            root = next(
                (s.workspace_root for s in self._sessions.values() if s.workspace_root),
                None,
            )
        if root is None:
            msg = "No workspace root available for this session"
            raise JsonRpcError(INVALID_PARAMS, msg)
        return session_id, root

    async def _authorize(self, request: PermissionRequest, operation: str) -> None:
        """
        パーミッションポリシーに問い合わせる.

        エージェントが明示的に許可を求めなくても、全てのコールバックは
        ここを通る。

        Raises:
            PermissionDeniedError: ポリシーが許可しなかった場合
        """
        outcome = await self._permission_policy.decide(request)
        if outcome != PermissionOutcome.ALLOW:
            logger.info(
                "Denied by permission policy",
                operation=operation,
                session_id=request.session_id,
                outcome=outcome.value,
            )
            raise PermissionDeniedError(operation, f"policy returned {outcome.value}")

    async def _on_read_text_file(self, params: dict[str, Any]) -> ReadTextFileResponse:
        if self._fs_provider is None or not self._config.fs_read_enabled:
            msg = "fs/read_text_file"
            raise PermissionDeniedError(msg, "file system read is not supported")
        req = _parse_params(ReadTextFileRequest, params)
        session_id, root = self._callback_context(req.session_id)
        path = self._jail.check_read(req.path, root)

        await self._authorize(
            PermissionRequest(
                session_id=session_id,
                title="Read file",
                rationale="Agent requested to read a file",
                tool_name="read_text_file",
                tool_kind="read",
                path=str(path),
            ),
            "fs/read_text_file",
        )
        logger.debug(
            "fs/read_text_file", path=str(path), line=req.line, limit=req.limit
        )
        content = await self._fs_provider.read_text_file(
            path, line=req.line, limit=req.limit
        )
        return ReadTextFileResponse(content=content)

    async def _on_write_text_file(
        self, params: dict[str, Any]
    ) -> WriteTextFileResponse:
        if self._fs_provider is None or not self._config.fs_write_enabled:
            msg = "fs/write_text_file"
            raise PermissionDeniedError(msg, "file system write is not enabled")
        req = _parse_params(WriteTextFileRequest, params)
        session_id, root = self._callback_context(req.session_id)
        # 書き込みは設定に関わらずワークスペース内に限る
        path = self._jail.check_write(req.path, root)

        await self._authorize(
            PermissionRequest(
                session_id=session_id,
                title="Write file",
                rationale="Agent requested to write a file",
                tool_name="write_text_file",
                tool_kind="edit",
                path=str(path),
            ),
            "fs/write_text_file",
        )
        logger.debug("fs/write_text_file", path=str(path), size=len(req.content))
        await self._fs_provider.write_text_file(path, req.content)
        return WriteTextFileResponse()

    async def _on_request_permission(
        self, params: dict[str, Any]
    ) -> RequestPermissionResponse:
        req = _parse_params(RequestPermissionRequest, params)
        session_id = req.session_id
        session = self._sessions.get(session_id)
        if session_id in self._cancelling:
            logger.info(
                "Permission request during cancellation, responding cancelled",
                session_id=session_id,
            )
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

        options = tuple(
            PermissionOptionInfo(option_id=o.option_id, name=o.name, kind=o.kind)
            for o in req.options
        )
        title = req.tool_call.title or "operation"
        request = PermissionRequest(
            session_id=session_id,
            title=title,
            rationale="Requested by agent",
            tool_name=title,
            tool_kind=req.tool_call.kind,
            options=options,
            raw_input=req.tool_call.raw_input,
        )

        if session is not None:
            session.pending_permissions += 1
            if session.state == TurnState.STREAMING:
                session.state = TurnState.WAITING_PERMISSION
        try:
            outcome = await self._permission_policy.decide(request)
        finally:
            if session is not None:
                session.pending_permissions -= 1
                if (
                    session.pending_permissions == 0
                    and session.state == TurnState.WAITING_PERMISSION
                ):
                    session.state = TurnState.STREAMING

        # 判定中にキャンセルされた場合も cancelled で応答する
        if session_id in self._cancelling:
            outcome = PermissionOutcome.CANCELLED
        if outcome == PermissionOutcome.CANCELLED:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

        wanted = "allow_once" if outcome == PermissionOutcome.ALLOW else "reject_once"
        selected = next((o for o in options if o.kind == wanted), None)
        if selected is None and options:
            selected = options[0]
        if selected is None or not selected.option_id:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

        logger.info(
            "Permission resolved",
            session_id=session_id,
            outcome=outcome.value,
            option_id=selected.option_id,
        )
        return RequestPermissionResponse(
            outcome=AllowedOutcome(outcome="selected", option_id=selected.option_id)
        )

    async def _on_terminal_create(self, params: dict[str, Any]) -> dict[str, Any]:
        provider = self._terminal_provider
        if provider is None or not self._config.terminal_enabled:
            msg = "terminal/create"
            raise PermissionDeniedError(msg, "terminal is not supported")
        req = _parse_params(CreateTerminalRequest, params)
        session_id, root = self._callback_context(req.session_id)
        args = list(req.args or [])

        # ポリシーが拒否した場合はシェル経由でジェイルを迂回されないよう作成しない
        await self._authorize(
            PermissionRequest(
                session_id=session_id,
                title="Create terminal",
                rationale="Agent requested to execute commands",
                tool_name="terminal",
                tool_kind="execute",
                raw_input={"command": req.command, "args": args},
            ),
            "terminal/create",
        )

        cwd = self._jail.clamp_cwd(req.cwd, root)
        env = {var.name: var.value for var in req.env or []}
        handle = await provider.create(
            session_id,
            req.command,
            args,
            cwd=cwd,
            env=env or None,
            output_byte_limit=req.output_byte_limit,
        )
        self._terminals[handle.terminal_id] = handle
        self._terminal_events.append(
            TerminalCreated(
                terminal_id=handle.terminal_id,
                session_id=session_id,
                command=req.command,
                args=tuple(args),
                cwd=str(cwd),
            )
        )
        return {"terminalId": handle.terminal_id}

    async def _on_terminal_output(self, params: dict[str, Any]) -> dict[str, Any]:
        req = _parse_params(TerminalOutputRequest, params)
        handle = self._terminals.get(req.terminal_id)
        if handle is None or self._terminal_provider is None:
            return {"output": "", "truncated": False}
        output, truncated = await self._terminal_provider.current_output(handle)
        status = handle.exit_status()
        self._terminal_events.append(
            TerminalOutputEvent(
                terminal_id=handle.terminal_id,
                output=output,
                truncated=truncated,
                exit_code=status.exit_code if status is not None else None,
                signal=status.signal if status is not None else None,
            )
        )
        result: dict[str, Any] = {"output": output, "truncated": truncated}
        if status is not None:
            result["exitStatus"] = status.to_dict()
        return result

    async def _on_terminal_wait_for_exit(
        self, params: dict[str, Any]
    ) -> dict[str, Any]:
        req = _parse_params(WaitForTerminalExitRequest, params)
        handle = self._terminals.get(req.terminal_id)
        if handle is None or self._terminal_provider is None:
            return TerminalExitStatus(exit_code=0).to_dict()
        status = await self._terminal_provider.wait_for_exit(handle)
        self._terminal_events.append(
            TerminalExited(
                terminal_id=handle.terminal_id,
                exit_code=status.exit_code,
                signal=status.signal,
            )
        )
        return status.to_dict()

    async def _on_terminal_kill(self, params: dict[str, Any]) -> dict[str, Any]:
        req = _parse_params(KillTerminalCommandRequest, params)
        handle = self._terminals.get(req.terminal_id)
        if handle is not None and self._terminal_provider is not None:
            await self._terminal_provider.kill(handle)
        return {}

    async def _on_terminal_release(self, params: dict[str, Any]) -> dict[str, Any]:
        req = _parse_params(ReleaseTerminalRequest, params)
        await self.release_terminal(req.terminal_id)
        return {}

    # ===== ホスト向けのターミナル操作 =====

    async def read_terminal_output(self, terminal_id: str) -> str:
        """管理中のターミナルのバッファ済み出力を返す（未知の ID は空文字列）."""
        handle = self._terminals.get(terminal_id)
        if handle is None or self._terminal_provider is None:
            return ""
        output, _ = await self._terminal_provider.current_output(handle)
        return output

    async def kill_terminal(self, terminal_id: str) -> None:
        """管理中のターミナルを終了させる."""
        handle = self._terminals.get(terminal_id)
        if handle is not None and self._terminal_provider is not None:
            await self._terminal_provider.kill(handle)

    async def wait_terminal(self, terminal_id: str) -> TerminalExitStatus | None:
        """ターミナルの終了を待つ（未知の ID は None）."""
        handle = self._terminals.get(terminal_id)
        if handle is None or self._terminal_provider is None:
            return None
        return await self._terminal_provider.wait_for_exit(handle)

    async def release_terminal(self, terminal_id: str) -> None:
        """管理中のターミナルを解放する."""
        handle = self._terminals.pop(terminal_id, None)
        if handle is not None and self._terminal_provider is not None:
            await self._terminal_provider.release(handle)
            self._terminal_events.append(TerminalReleased(terminal_id=terminal_id))

    # ===== 破棄 =====

    async def dispose(self) -> None:
        """
        全てのリソースを破棄する.

        進行中のターンは TurnEnded で終端させてからストリームを閉じる。
        各ステップは独立しており、途中の失敗で後続のステップは止まらない。
        """
        for session in list(self._sessions.values()):
            try:
                task = session.prompt_task
                if task is not None and not task.done():
                    task.cancel()
                    session.state = TurnState.COMPLETED
                    session.updates.append(
                        TurnEnded(StopReason.OTHER, error="Client disposed")
                    )
            except Exception:
                logger.exception(
                    "Error stopping prompt", session_id=session.session_id
                )

        try:
            self._terminal_events.close()
        except Exception:
            logger.exception("Error closing terminal event stream")

        for session in list(self._sessions.values()):
            try:
                session.updates.close()
                session.updates.clear()
                session.tool_calls.clear()
            except Exception:
                logger.exception(
                    "Error closing session stream", session_id=session.session_id
                )

        for terminal_id, handle in list(self._terminals.items()):
            try:
                if self._terminal_provider is not None:
                    await self._terminal_provider.release(handle)
            except Exception:
                logger.exception("Error releasing terminal", terminal_id=terminal_id)
        self._terminals.clear()

        self._sessions.clear()
        self._cancelling.clear()
        logger.info("Session manager disposed")
