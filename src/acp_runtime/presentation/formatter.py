"""Console output formatting for the command-line client."""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence
from enum import StrEnum
from typing import IO, TYPE_CHECKING, Any

from acp_runtime.application.models import (
    TerminalCreated,
    TerminalExited,
    TerminalOutputEvent,
    TerminalReleased,
)
from acp_runtime.application.updates import (
    AvailableCommandsUpdate,
    DiffUpdate,
    MessageDelta,
    PlanUpdate,
    ToolCall,
    ToolCallUpdate,
    TurnEnded,
)

if TYPE_CHECKING:
    from acp_runtime.application.models import (
        InitializeResult,
        SessionListResult,
        SessionModeState,
        TerminalEvent,
    )
    from acp_runtime.application.updates import AvailableCommand, Update

# ツールの入出力を表示する最大文字数
SNIPPET_LIMIT = 240


class OutputMode(StrEnum):
    """出力モード."""

    TEXT = "text"
    SIMPLE = "simple"
    JSONL = "jsonl"


def _truncate(text: str, limit: int = SNIPPET_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class OutputFormatter:
    """
    更新イベントをコンソールに出力する.

    - text: メッセージ本文に加えてプラン、ツール呼び出し、差分、ターミナルを表示
    - simple: アシスタントのメッセージ本文のみ（思考は省略）
    - jsonl: 全ての更新を1行1 JSON で出力
    """

    def __init__(self, mode: OutputMode, out: IO[str] | None = None) -> None:
        """
        Initialize OutputFormatter.

        Args:
            mode: 出力モード
            out: 出力先（省略時は標準出力）
        """
        self.mode = mode
        self.out = out if out is not None else sys.stdout

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def _writeln(self, text: str) -> None:
        self._write(text + "\n")

    def print_update(self, update: Update) -> None:
        """セッションの更新を出力する."""
        if self.mode == OutputMode.JSONL:
            self._writeln(json.dumps(update.to_dict(), ensure_ascii=False))
            return

        if isinstance(update, MessageDelta):
            self._print_message_delta(update)
        elif isinstance(update, TurnEnded):
            # メッセージ本文の後に改行を入れる
            self._writeln("")
            if update.error is not None:
                self._writeln(f"[error] {update.error}")
        elif self.mode == OutputMode.TEXT:
            if isinstance(update, PlanUpdate):
                plan = {k: v for k, v in update.to_dict().items() if k != "type"}
                self._writeln(f"[plan] {json.dumps(plan, ensure_ascii=False)}")
            elif isinstance(update, ToolCallUpdate):
                self._print_tool_call(update.tool_call)
            elif isinstance(update, DiffUpdate):
                diff = {k: v for k, v in update.to_dict().items() if k != "type"}
                self._writeln(f"[diff] {json.dumps(diff, ensure_ascii=False)}")
            elif isinstance(update, AvailableCommandsUpdate):
                names = ", ".join(f"/{c.name}" for c in update.commands)
                self._writeln(f"[commands] {names}")

    def _print_message_delta(self, delta: MessageDelta) -> None:
        if delta.role != "assistant":
            return
        if self.mode == OutputMode.SIMPLE and delta.is_thought:
            return
        text = delta.text
        if text:
            self._write(text)

    def _print_tool_call(self, tool_call: ToolCall) -> None:
        title = (tool_call.title or "").strip()
        kind = tool_call.kind.value if tool_call.kind is not None else ""
        header = " ".join(part for part in (kind, title) if part)
        location = ""
        if tool_call.locations:
            path = tool_call.locations[0].path
            if path:
                location = f" @ {path}"
        self._writeln(
            f"[tool] {header or tool_call.tool_call_id}{location}"
            f" ({tool_call.status.value})"
        )
        snippet_in = _truncate(_stringify(tool_call.raw_input))
        if snippet_in:
            self._writeln(f"[tool.in] {snippet_in}")
        snippet_out = _truncate(_stringify(tool_call.raw_output))
        if snippet_out:
            self._writeln(f"[tool.out] {snippet_out}")

    def print_terminal_event(self, event: TerminalEvent) -> None:
        """ターミナルのイベントを出力する（text モードのみ）."""
        if self.mode != OutputMode.TEXT:
            return
        if isinstance(event, TerminalCreated):
            command = " ".join([event.command, *event.args])
            self._writeln(f"[term] created id={event.terminal_id} cmd={command}")
        elif isinstance(event, TerminalOutputEvent):
            if event.output:
                self._writeln(f"[term] output id={event.terminal_id}")
        elif isinstance(event, TerminalExited):
            self._writeln(
                f"[term] exited id={event.terminal_id} code={event.exit_code}"
            )
        elif isinstance(event, TerminalReleased):
            self._writeln(f"[term] released id={event.terminal_id}")

    def print_json(self, payload: Any) -> None:
        """任意の値を JSON で出力する."""
        self._writeln(json.dumps(payload, ensure_ascii=False, default=str))

    # ===== 一覧表示（--list-*） =====

    def print_capabilities(self, agent_name: str, init: InitializeResult) -> None:
        """initialize で通知されたエージェントの機能を出力する."""
        if self.mode == OutputMode.JSONL:
            self.print_json(
                {
                    "type": "capabilities",
                    "protocolVersion": init.protocol_version,
                    "authMethods": init.auth_methods,
                    "agentCapabilities": init.agent_capabilities or {},
                    "agentInfo": init.agent_info,
                }
            )
            return

        lines = [f"# Capabilities ({agent_name})"]
        lines.append(f"Protocol Version: {init.protocol_version}")
        caps = init.agent_capabilities or {}
        if not caps:
            lines.append("(no capabilities reported)")
        for key, value in caps.items():
            if isinstance(value, bool):
                if value:
                    lines.append(f"- {key}")
            elif isinstance(value, dict):
                lines.append(f"- {key}:")
                for sub_key, sub_value in value.items():
                    if sub_value is True:
                        lines.append(f"  - {sub_key}")
                    elif sub_value is not None and sub_value is not False:
                        lines.append(f"  - {sub_key}: {_stringify(sub_value)}")
            elif value is not None:
                lines.append(f"- {key}: {_stringify(value)}")

        summary = [
            label
            for label, supported in (
                ("loadSession", init.supports_load_session),
                ("session/list", init.supports_list_sessions),
                ("session/resume", init.supports_resume_session),
                ("session/fork", init.supports_fork_session),
            )
            if supported
        ]
        if summary:
            lines.append("- summary:")
            lines.extend(f"  - {label}" for label in summary)
        self._writeln("\n".join(lines) + "\n")

    def print_sessions(
        self, agent_name: str, result: SessionListResult | None
    ) -> None:
        """session/list の結果を出力する（None はエージェント非対応）."""
        if self.mode == OutputMode.JSONL:
            if result is None:
                self.print_json(
                    {"type": "error", "message": "Agent does not support session/list"}
                )
                return
            self.print_json(
                {
                    "type": "sessions",
                    "sessions": [
                        {
                            "sessionId": s.session_id,
                            "cwd": s.cwd,
                            "title": s.title,
                            "updatedAt": (
                                s.updated_at.isoformat() if s.updated_at else None
                            ),
                        }
                        for s in result.sessions
                    ],
                    "nextCursor": result.next_cursor,
                }
            )
            return

        lines = [f"# Sessions ({agent_name})"]
        if result is None:
            lines.append("(agent does not support session/list)")
        elif not result.sessions:
            lines.append("(no sessions found)")
        else:
            for s in result.sessions:
                updated = (
                    f" ({s.updated_at.strftime('%Y-%m-%d %H:%M:%S')})"
                    if s.updated_at
                    else ""
                )
                lines.append(f"- {s.title or s.session_id}{updated}")
                lines.append(f"  ID: {s.session_id}")
                lines.append(f"  CWD: {s.cwd}")
            if result.has_more:
                lines.append("(more sessions available)")
        self._writeln("\n".join(lines) + "\n")

    def print_modes(self, agent_name: str, modes: SessionModeState | None) -> None:
        """セッションモードの一覧を出力する."""
        if self.mode == OutputMode.JSONL:
            self.print_json(
                {
                    "type": "modes",
                    "current": modes.current_mode_id if modes else None,
                    "available": [
                        {"id": m.id, "name": m.name}
                        for m in (modes.available_modes if modes else ())
                    ],
                }
            )
            return

        lines = [f"# Modes ({agent_name})"]
        if modes is None:
            lines.append("(no modes)")
        else:
            lines.append(f"Current: {modes.current_mode_id or '(none)'}")
            lines.append("Available:")
            if not modes.available_modes:
                lines.append("(no modes)")
            lines.extend(f"- {m.id}: {m.name}" for m in modes.available_modes)
        self._writeln("\n".join(lines) + "\n")

    def print_commands(
        self, agent_name: str, commands: Sequence[AvailableCommand]
    ) -> None:
        """スラッシュコマンドの一覧を出力する."""
        if self.mode == OutputMode.JSONL:
            self.print_json(
                {
                    "type": "commands",
                    "commands": [
                        {"name": c.name, "description": c.description}
                        for c in commands
                    ],
                }
            )
            return

        lines = [f"# Commands ({agent_name})"]
        named = [c for c in commands if c.name]
        if not named:
            lines.append("(no commands)")
        for c in named:
            if c.description:
                lines.append(f"- /{c.name} - {c.description}")
            else:
                lines.append(f"- /{c.name}")
        self._writeln("\n".join(lines) + "\n")
