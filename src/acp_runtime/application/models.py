"""Data models for cross-layer communication."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class PermissionOutcome(StrEnum):
    """パーミッション判定の結果."""

    ALLOW = "allow"
    DENY = "deny"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PermissionOptionInfo:
    """パーミッション選択肢の情報."""

    option_id: str
    name: str
    kind: str  # "allow_once", "allow_always", "reject_once" etc.


@dataclass(frozen=True)
class PermissionRequest:
    """パーミッション要求（SessionManager → PermissionPolicy）."""

    session_id: str
    title: str
    rationale: str
    tool_name: str
    tool_kind: str | None = None
    options: tuple[PermissionOptionInfo, ...] = ()
    path: str | None = None
    raw_input: Any = None


@dataclass(frozen=True)
class ClientCapabilities:
    """initialize で通知するクライアントの機能."""

    read_text_file: bool = True
    write_text_file: bool = False
    terminal: bool = True
    meta: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """clientCapabilities のワイヤ形式に変換する."""
        data: dict[str, Any] = {
            "fs": {
                "readTextFile": self.read_text_file,
                "writeTextFile": self.write_text_file,
            },
            # 非標準だが多くのアダプタが参照する
            "terminal": self.terminal,
        }
        if self.meta:
            data["_meta"] = self.meta
        return data


@dataclass(frozen=True)
class InitializeResult:
    """initialize の結果（ネゴシエーション済みのバージョンと機能）."""

    protocol_version: int
    agent_capabilities: dict[str, Any] | None = None
    auth_methods: list[dict[str, Any]] = field(default_factory=list)
    agent_info: dict[str, Any] | None = None

    def _session_capability(self, name: str) -> bool:
        caps = self.agent_capabilities or {}
        for key in ("sessionCapabilities", "session"):
            section = caps.get(key)
            if isinstance(section, dict):
                return section.get(name) is not None
        return False

    @property
    def supports_load_session(self) -> bool:
        """エージェントが session/load をサポートするか."""
        return bool((self.agent_capabilities or {}).get("loadSession"))

    @property
    def supports_list_sessions(self) -> bool:
        """エージェントが session/list をサポートするか."""
        return self._session_capability("list")

    @property
    def supports_resume_session(self) -> bool:
        """エージェントが session/resume をサポートするか."""
        return self._session_capability("resume")

    @property
    def supports_fork_session(self) -> bool:
        """エージェントが session/fork をサポートするか."""
        return self._session_capability("fork")

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> InitializeResult:
        """initialize 応答から変換する."""
        auth_methods = raw.get("authMethods")
        agent_caps = raw.get("agentCapabilities")
        agent_info = raw.get("agentInfo")
        return cls(
            protocol_version=int(raw.get("protocolVersion") or 0),
            agent_capabilities=agent_caps if isinstance(agent_caps, dict) else None,
            auth_methods=[m for m in auth_methods or [] if isinstance(m, dict)],
            agent_info=agent_info if isinstance(agent_info, dict) else None,
        )


@dataclass(frozen=True)
class SessionMode:
    """エージェントが提供するセッションモード."""

    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class SessionModeState:
    """セッションの現在のモードと利用可能なモード."""

    current_mode_id: str | None
    available_modes: tuple[SessionMode, ...] = ()

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> SessionModeState:
        """session/new 等の modes オブジェクトから変換する."""
        modes = raw.get("availableModes")
        return cls(
            current_mode_id=raw.get("currentModeId"),
            available_modes=tuple(
                SessionMode(
                    id=str(m.get("id") or ""),
                    name=str(m.get("name") or ""),
                    description=m.get("description"),
                )
                for m in (modes if isinstance(modes, list) else [])
                if isinstance(m, dict)
            ),
        )


@dataclass(frozen=True)
class ConfigOptionChoice:
    """設定オプションの選択肢."""

    value: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class ConfigOption:
    """セッションで変更可能な設定オプション."""

    id: str
    name: str
    type: str
    current_value: str
    options: tuple[ConfigOptionChoice, ...] = ()
    description: str | None = None
    group: str | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ConfigOption:
        """ワイヤ形式から変換する."""
        choices = raw.get("options")
        return cls(
            id=str(raw.get("id", "")),
            name=str(raw.get("name", "")),
            type=str(raw.get("type", "select")),
            current_value=str(raw.get("currentValue", "")),
            options=tuple(
                ConfigOptionChoice(
                    value=str(c.get("value", "")),
                    name=str(c.get("name", "")),
                    description=c.get("description"),
                )
                for c in (choices if isinstance(choices, list) else [])
                if isinstance(c, dict)
            ),
            description=raw.get("description"),
            group=raw.get("group"),
        )


def parse_config_options(raw: Any) -> list[ConfigOption] | None:
    """configOptions 配列を変換する（存在しなければ None）."""
    if not isinstance(raw, list):
        return None
    return [ConfigOption.from_wire(c) for c in raw if isinstance(c, dict)]


@dataclass(frozen=True)
class SessionResult:
    """session/new, load, resume, fork の結果."""

    session_id: str
    config_options: list[ConfigOption] | None = None
    modes: SessionModeState | None = None
    meta: dict[str, Any] | None = None


@dataclass(frozen=True)
class SessionInfo:
    """session/list が返すセッション情報."""

    session_id: str
    cwd: str
    title: str | None = None
    updated_at: datetime | None = None
    meta: dict[str, Any] | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> SessionInfo:
        """ワイヤ形式から変換する."""
        updated_at = raw.get("updatedAt")
        return cls(
            session_id=str(raw.get("sessionId", "")),
            cwd=str(raw.get("cwd", "")),
            title=raw.get("title"),
            updated_at=(
                datetime.fromisoformat(updated_at)
                if isinstance(updated_at, str)
                else None
            ),
            meta=raw.get("_meta"),
        )


@dataclass(frozen=True)
class SessionListResult:
    """session/list の結果."""

    sessions: list[SessionInfo]
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        """次のページがあるか."""
        return self.next_cursor is not None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> SessionListResult:
        """ワイヤ形式から変換する."""
        sessions = raw.get("sessions")
        return cls(
            sessions=[
                SessionInfo.from_wire(s)
                for s in (sessions if isinstance(sessions, list) else [])
                if isinstance(s, dict)
            ],
            next_cursor=raw.get("nextCursor"),
        )


# ===== ターミナルのライフサイクルイベント =====


@dataclass(frozen=True)
class TerminalCreated:
    """ターミナルが作成された."""

    terminal_id: str
    session_id: str
    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None


@dataclass(frozen=True)
class TerminalOutputEvent:
    """エージェントがターミナルの出力を取得した."""

    terminal_id: str
    output: str
    truncated: bool = False
    exit_code: int | None = None
    signal: str | None = None


@dataclass(frozen=True)
class TerminalExited:
    """ターミナルのプロセスが終了した."""

    terminal_id: str
    exit_code: int | None
    signal: str | None = None


@dataclass(frozen=True)
class TerminalReleased:
    """ターミナルが解放された."""

    terminal_id: str


TerminalEvent = (
    TerminalCreated | TerminalOutputEvent | TerminalExited | TerminalReleased
)
