"""Typed session updates decoded from session/update notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

# JSON の任意値（null, bool, 数値, 文字列, 配列, オブジェクト）
JsonValue = None | bool | int | float | str | list[Any] | dict[str, Any]


class StopReason(StrEnum):
    """ターンの終了理由."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    MAX_TURN_REQUESTS = "max_turn_requests"
    REFUSAL = "refusal"
    CANCELLED = "cancelled"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: str | None) -> StopReason:
        """ワイヤ形式の文字列から変換する（未知の値は OTHER）."""
        try:
            return cls(value) if value is not None else cls.OTHER
        except ValueError:
            return cls.OTHER


class ToolCallStatus(StrEnum):
    """ツール呼び出しの状態."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def from_wire(cls, value: str | None) -> ToolCallStatus:
        """
        ワイヤ形式の文字列から変換する.

        旧形式の started / progress / error も受け付け、未知の値は FAILED とする。
        """
        if value is None:
            return cls.PENDING
        legacy = {"started": "pending", "progress": "in_progress", "error": "failed"}
        try:
            return cls(legacy.get(value, value))
        except ValueError:
            return cls.FAILED


class ToolKind(StrEnum):
    """ツールの種類."""

    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: str | None) -> ToolKind:
        """ワイヤ形式の文字列から変換する（未知の値は OTHER）."""
        try:
            return cls(value) if value is not None else cls.OTHER
        except ValueError:
            return cls.OTHER


# ===== コンテンツブロック =====


@dataclass(frozen=True)
class TextContent:
    """テキストのコンテンツブロック."""

    text: str
    type: Literal["text"] = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する."""
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ImageContent:
    """画像のコンテンツブロック."""

    mime_type: str
    data: str
    type: Literal["image"] = field(default="image", init=False)

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する."""
        return {"type": self.type, "mimeType": self.mime_type, "data": self.data}


@dataclass(frozen=True)
class ResourceContent:
    """リソース（リンクまたは埋め込み）のコンテンツブロック."""

    uri: str
    title: str | None = None
    mime_type: str | None = None
    text: str | None = None
    type: Literal["resource"] = field(default="resource", init=False)

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する."""
        data: dict[str, Any] = {"type": self.type, "uri": self.uri}
        if self.title is not None:
            data["title"] = self.title
        if self.mime_type is not None:
            data["mimeType"] = self.mime_type
        if self.text is not None:
            data["text"] = self.text
        return data


@dataclass(frozen=True)
class UnknownContent:
    """未知の種類のコンテンツブロック（生データを保持する）."""

    raw: dict[str, Any]
    type: Literal["unknown"] = field(default="unknown", init=False)

    def to_dict(self) -> dict[str, Any]:
        """元の辞書を返す."""
        return dict(self.raw)


ContentBlock = TextContent | ImageContent | ResourceContent | UnknownContent


def parse_content_block(raw: dict[str, Any]) -> ContentBlock:
    """
    ワイヤ形式のコンテンツブロックを型付きに変換する.

    Args:
        raw: コンテンツブロックの辞書

    Returns:
        型付きコンテンツブロック
    """
    block_type = raw.get("type")
    if block_type == "text":
        return TextContent(text=str(raw.get("text", "")))
    if block_type == "image":
        return ImageContent(
            mime_type=str(raw.get("mimeType", "")), data=str(raw.get("data", ""))
        )
    if block_type in ("resource", "resource_link"):
        # 埋め込みリソースは resource の中に uri/text を持つ
        resource = raw.get("resource")
        source = resource if isinstance(resource, dict) else raw
        return ResourceContent(
            uri=str(source.get("uri", "")),
            title=raw.get("title") or raw.get("name"),
            mime_type=source.get("mimeType"),
            text=source.get("text"),
        )
    return UnknownContent(raw=raw)


# ===== ツール呼び出し =====


@dataclass(frozen=True)
class ToolCallLocation:
    """ツール呼び出しが対象とするファイル位置."""

    path: str
    line: int | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ToolCallLocation:
        """ワイヤ形式から変換する."""
        line = raw.get("line")
        return cls(
            path=str(raw.get("path", "")),
            line=int(line) if isinstance(line, int | float) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する."""
        data: dict[str, Any] = {"path": self.path}
        if self.line is not None:
            data["line"] = self.line
        return data


def _parse_locations(raw: Any) -> tuple[ToolCallLocation, ...] | None:
    if not isinstance(raw, list):
        return None
    return tuple(
        ToolCallLocation.from_wire(loc) for loc in raw if isinstance(loc, dict)
    )


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    """最初に null 以外の値を持つキーの値を返す."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class ToolCall:
    """
    エージェントが実行するツール呼び出し.

    tool_call_id は更新をまたいで不変。その他のフィールドは、更新が
    null 以外の値を明示的に持つ場合にのみ上書きされる（merge を参照）。
    """

    tool_call_id: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    title: str | None = None
    kind: ToolKind | None = None
    content: tuple[Any, ...] | None = None
    locations: tuple[ToolCallLocation, ...] | None = None
    raw_input: JsonValue = None
    raw_output: JsonValue = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ToolCall:
        """
        tool_call / tool_call_update のペイロードから ToolCall を作成する.

        Args:
            raw: update オブジェクト

        Returns:
            作成した ToolCall
        """
        kind = raw.get("kind")
        content = raw.get("content")
        return cls(
            tool_call_id=str(_first_present(raw, "toolCallId", "id") or ""),
            status=ToolCallStatus.from_wire(raw.get("status")),
            title=raw.get("title"),
            kind=ToolKind.from_wire(kind) if kind is not None else None,
            content=tuple(content) if isinstance(content, list) else None,
            locations=_parse_locations(raw.get("locations")),
            raw_input=_first_present(raw, "rawInput", "raw_input"),
            raw_output=_first_present(raw, "rawOutput", "raw_output"),
        )

    def merge(self, update: dict[str, Any]) -> ToolCall:
        """
        部分更新を適用した新しい ToolCall を返す.

        更新に含まれない（または null の）フィールドは既存の値を保持する。
        同じ更新を2回適用しても結果は変わらない。

        Args:
            update: tool_call_update の update オブジェクト

        Returns:
            更新後の ToolCall
        """
        status = update.get("status")
        title = update.get("title")
        kind = update.get("kind")
        content = update.get("content")
        locations = _parse_locations(update.get("locations"))
        raw_input = _first_present(update, "rawInput", "raw_input")
        raw_output = _first_present(update, "rawOutput", "raw_output")
        return ToolCall(
            # ID は更新で変わらない
            tool_call_id=self.tool_call_id,
            status=(
                ToolCallStatus.from_wire(status) if status is not None else self.status
            ),
            title=title if title is not None else self.title,
            kind=ToolKind.from_wire(kind) if kind is not None else self.kind,
            content=tuple(content) if isinstance(content, list) else self.content,
            locations=locations if locations is not None else self.locations,
            raw_input=raw_input if raw_input is not None else self.raw_input,
            raw_output=raw_output if raw_output is not None else self.raw_output,
        )

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書に変換する（未設定のフィールドは省略）."""
        data: dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "status": self.status.value,
        }
        if self.title is not None:
            data["title"] = self.title
        if self.kind is not None:
            data["kind"] = self.kind.value
        if self.content is not None:
            data["content"] = list(self.content)
        if self.locations is not None:
            data["locations"] = [loc.to_dict() for loc in self.locations]
        if self.raw_input is not None:
            data["rawInput"] = self.raw_input
        if self.raw_output is not None:
            data["rawOutput"] = self.raw_output
        return data


# ===== プラン・コマンド・差分 =====


@dataclass(frozen=True)
class PlanEntry:
    """実行プランの1項目."""

    content: str
    priority: str = "medium"
    status: str = "pending"

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> PlanEntry:
        """ワイヤ形式から変換する."""
        return cls(
            content=str(raw.get("content", "")),
            priority=str(raw.get("priority") or "medium"),
            status=str(raw.get("status") or "pending"),
        )


@dataclass(frozen=True)
class Plan:
    """エージェントの実行プラン."""

    entries: tuple[PlanEntry, ...] = ()
    title: str | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> Plan:
        """plan 更新のペイロードから変換する."""
        entries = raw.get("entries")
        return cls(
            entries=tuple(
                PlanEntry.from_wire(e)
                for e in (entries if isinstance(entries, list) else [])
                if isinstance(e, dict)
            ),
            title=raw.get("title"),
        )


@dataclass(frozen=True)
class AvailableCommand:
    """エージェントが提供するスラッシュコマンド."""

    name: str
    description: str | None = None
    input_hint: str | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> AvailableCommand:
        """ワイヤ形式から変換する."""
        command_input = raw.get("input")
        hint = command_input.get("hint") if isinstance(command_input, dict) else None
        return cls(
            name=str(raw.get("name", "")),
            description=raw.get("description"),
            input_hint=hint,
        )


@dataclass(frozen=True)
class DiffChange:
    """差分の1変更."""

    type: str
    line: int | None = None
    content: str | None = None
    old_content: str | None = None
    new_content: str | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> DiffChange:
        """ワイヤ形式から変換する."""
        line = raw.get("line")
        return cls(
            type=str(raw.get("type", "")),
            line=int(line) if isinstance(line, int | float) else None,
            content=raw.get("content"),
            old_content=raw.get("oldContent"),
            new_content=raw.get("newContent"),
        )


@dataclass(frozen=True)
class Diff:
    """ファイル変更の差分."""

    id: str
    status: str | None = None
    uri: str | None = None
    description: str | None = None
    changes: tuple[DiffChange, ...] = ()

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> Diff:
        """diff 更新のペイロードから変換する."""
        changes = raw.get("changes")
        return cls(
            id=str(raw.get("id", "")),
            status=raw.get("status"),
            uri=raw.get("uri"),
            description=raw.get("description"),
            changes=tuple(
                DiffChange.from_wire(c)
                for c in (changes if isinstance(changes, list) else [])
                if isinstance(c, dict)
            ),
        )


# ===== 更新イベント（タグ付きユニオン） =====


@dataclass(frozen=True)
class MessageDelta:
    """メッセージ（または思考）のチャンク."""

    role: Literal["user", "assistant"]
    content: tuple[ContentBlock, ...]
    is_thought: bool = False
    type: Literal["message_delta"] = field(default="message_delta", init=False)

    @property
    def text(self) -> str:
        """テキストブロックを連結した文字列."""
        return "".join(b.text for b in self.content if isinstance(b, TextContent))

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {
            "type": self.type,
            "role": self.role,
            "isThought": self.is_thought,
            "content": [b.to_dict() for b in self.content],
        }


@dataclass(frozen=True)
class PlanUpdate:
    """プランの更新."""

    plan: Plan
    type: Literal["plan"] = field(default="plan", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {
            "type": self.type,
            "title": self.plan.title,
            "entries": [
                {"content": e.content, "priority": e.priority, "status": e.status}
                for e in self.plan.entries
            ],
        }


@dataclass(frozen=True)
class ToolCallUpdate:
    """ツール呼び出しの作成・更新（マージ済みの最新状態を持つ）."""

    tool_call: ToolCall
    type: Literal["tool_call"] = field(default="tool_call", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {"type": self.type, "toolCall": self.tool_call.to_dict()}


@dataclass(frozen=True)
class DiffUpdate:
    """差分の更新."""

    diff: Diff
    type: Literal["diff"] = field(default="diff", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {
            "type": self.type,
            "id": self.diff.id,
            "uri": self.diff.uri,
            "status": self.diff.status,
            "changes": len(self.diff.changes),
        }


@dataclass(frozen=True)
class AvailableCommandsUpdate:
    """利用可能なコマンド一覧の更新."""

    commands: tuple[AvailableCommand, ...]
    type: Literal["available_commands"] = field(
        default="available_commands", init=False
    )

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {
            "type": self.type,
            "commands": [
                {"name": c.name, "description": c.description} for c in self.commands
            ],
        }


@dataclass(frozen=True)
class ModeUpdate:
    """現在のモードの変更."""

    current_mode_id: str
    type: Literal["mode"] = field(default="mode", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {"type": self.type, "currentModeId": self.current_mode_id}


@dataclass(frozen=True)
class TurnEnded:
    """ターンの終了（prompt ストリームの終端）."""

    stop_reason: StopReason
    error: str | None = None
    type: Literal["turn_ended"] = field(default="turn_ended", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        data: dict[str, Any] = {
            "type": self.type,
            "stopReason": self.stop_reason.value,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class UnknownUpdate:
    """未知の更新（前方互換のため生のペイロードを保持する）."""

    raw: dict[str, Any]
    type: Literal["unknown"] = field(default="unknown", init=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON 出力用の辞書に変換する."""
        return {"type": self.type, "raw": self.raw}


Update = (
    MessageDelta
    | PlanUpdate
    | ToolCallUpdate
    | DiffUpdate
    | AvailableCommandsUpdate
    | ModeUpdate
    | TurnEnded
    | UnknownUpdate
)


def parse_message_delta(kind: str, update: dict[str, Any]) -> MessageDelta:
    """
    *_message_chunk / agent_thought_chunk をメッセージチャンクに変換する.

    content は単一ブロックまたはブロックの配列のどちらも受け付ける。
    """
    raw = update.get("content")
    if isinstance(raw, dict):
        blocks = [raw]
    elif isinstance(raw, list):
        blocks = [b for b in raw if isinstance(b, dict)]
    else:
        blocks = []
    return MessageDelta(
        role="user" if kind == "user_message_chunk" else "assistant",
        content=tuple(parse_content_block(b) for b in blocks),
        is_thought=kind == "agent_thought_chunk",
    )


def parse_available_commands(update: dict[str, Any]) -> AvailableCommandsUpdate:
    """available_commands_update をコマンド一覧の更新に変換する."""
    raw = update.get("availableCommands")
    commands = raw if isinstance(raw, list) else []
    return AvailableCommandsUpdate(
        commands=tuple(
            AvailableCommand.from_wire(c) for c in commands if isinstance(c, dict)
        )
    )
