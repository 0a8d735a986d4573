"""Command-line entry point: run one prompt against an ACP agent."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from acp_runtime.application.models import PermissionOutcome
from acp_runtime.application.updates import AvailableCommandsUpdate
from acp_runtime.client import AcpClient
from acp_runtime.infrastructure.config import get_config
from acp_runtime.infrastructure.logging import configure_logging, get_logger
from acp_runtime.presentation.formatter import OutputFormatter, OutputMode

if TYPE_CHECKING:
    from acp_runtime.application.models import PermissionRequest
    from acp_runtime.application.updates import AvailableCommand
    from acp_runtime.infrastructure.permission import PermissionCallback

# SIGINT で中断した場合の終了コード（128 + SIGINT）
EXIT_INTERRUPTED = 130
EXIT_USAGE = 2

# --list-commands で available_commands_update を待つ時間（秒）
COMMANDS_WAIT_TIMEOUT = 2.0

_WRITE_KINDS = {"edit", "delete", "move"}
_WRITE_TOOL_NAMES = {
    "write_text_file",
    "fs/write_text_file",
    "delete_file",
    "fs/delete_file",
    "move_file",
    "fs/move_file",
}


def build_parser() -> argparse.ArgumentParser:
    """コマンドライン引数のパーサーを作成する."""
    parser = argparse.ArgumentParser(
        prog="acp-runtime",
        description="Send a prompt to an ACP agent and stream its updates.",
        epilog=(
            "Provide the prompt as arguments or pipe it via stdin. "
            'Use @-mentions to add context: @path, @"a file.txt", '
            "@https://example.com/file"
        ),
    )
    parser.add_argument("prompt", nargs="*", help="prompt text")
    parser.add_argument(
        "-o",
        "--output",
        choices=[m.value for m in OutputMode],
        default=OutputMode.TEXT.value,
        help="output mode (default: text)",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        help="allow reads outside the workspace and enable writes",
    )
    parser.add_argument(
        "--write",
        action="store_true",
        help="enable write capability (still confined to the workspace)",
    )
    parser.add_argument(
        "--list-caps",
        action="store_true",
        help="print agent capabilities from initialize",
    )
    parser.add_argument(
        "--list-modes", action="store_true", help="print available session modes"
    )
    parser.add_argument(
        "--list-commands",
        action="store_true",
        help="print available slash commands",
    )
    parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="list existing sessions for the current directory",
    )
    parser.add_argument("--mode", help="set the session mode before prompting")
    parser.add_argument("--resume", metavar="SESSION_ID", help="load a session")
    parser.add_argument(
        "--save-session", metavar="PATH", help="write the new session ID to a file"
    )
    return parser


def is_write_like(tool_name: str, tool_kind: str | None) -> bool:
    """書き込みを伴う操作か判定する."""
    if tool_kind is not None and tool_kind.lower() in _WRITE_KINDS:
        return True
    return tool_name.lower() in _WRITE_TOOL_NAMES


def make_permission_callback(
    allow_writes: bool, formatter: OutputFormatter
) -> PermissionCallback:
    """
    CLI 用の非対話パーミッションコールバックを作成する.

    書き込み系の操作は --write / --yolo が指定された場合のみ許可し、
    それ以外は全て許可する。判定結果は出力に表示する。
    """

    async def decide(request: PermissionRequest) -> PermissionOutcome:
        write_op = is_write_like(request.tool_name, request.tool_kind)
        allowed = allow_writes or not write_op
        outcome = PermissionOutcome.ALLOW if allowed else PermissionOutcome.DENY
        hint = None
        if not allowed:
            hint = "Use --write or --yolo to enable writes (confined to workspace)"

        if formatter.mode == OutputMode.JSONL:
            formatter.print_json(
                {
                    "type": "permission_decision",
                    "toolName": request.tool_name,
                    "toolKind": request.tool_kind,
                    "decision": outcome.value,
                    "hint": hint,
                }
            )
        else:
            kind = f" ({request.tool_kind})" if request.tool_kind else ""
            print(f"[permission] auto-{outcome.value} {request.tool_name}{kind}")
            if hint is not None:
                print(f"[permission] {hint}")
        return outcome

    return decide


async def read_prompt(args: argparse.Namespace) -> str | None:
    """引数または標準入力からプロンプトを読み込む."""
    if args.prompt:
        return " ".join(args.prompt)
    if not sys.stdin.isatty():
        return await asyncio.to_thread(sys.stdin.read)
    return None


async def wait_for_commands(
    client: AcpClient, session_id: str, timeout: float = COMMANDS_WAIT_TIMEOUT
) -> tuple[AvailableCommand, ...]:
    """available_commands_update を待つ（タイムアウト時は空）."""
    subscription = client.session_updates(session_id)

    async def first_commands() -> tuple[AvailableCommand, ...]:
        async for update in subscription:
            if isinstance(update, AvailableCommandsUpdate):
                return update.commands
        return ()

    try:
        return await asyncio.wait_for(first_commands(), timeout=timeout)
    except TimeoutError:
        return ()
    finally:
        await subscription.aclose()


async def _print_terminal_events(
    client: AcpClient, formatter: OutputFormatter
) -> None:
    async for event in client.terminal_events():
        formatter.print_terminal_event(event)


async def _stream_prompt(
    client: AcpClient, session_id: str, prompt: str, formatter: OutputFormatter
) -> None:
    async for update in client.prompt(session_id, prompt):
        formatter.print_update(update)


async def _run_session(
    client: AcpClient,
    args: argparse.Namespace,
    prompt: str | None,
    formatter: OutputFormatter,
    shutdown_event: asyncio.Event,
) -> int:
    """初期化からプロンプトの完了までを実行し、終了コードを返す."""
    logger = get_logger(__name__)
    agent_name = client.config.agent_executable
    cwd = Path.cwd()

    init = await client.initialize()

    session_id: str | None = None
    if args.list_caps:
        formatter.print_capabilities(agent_name, init)
    if args.list_sessions:
        sessions = (
            await client.list_sessions(cwd=cwd) if init.supports_list_sessions else None
        )
        formatter.print_sessions(agent_name, sessions)
    if args.list_modes or args.list_commands:
        session_id = (await client.new_session(cwd)).session_id
        if args.list_modes:
            formatter.print_modes(agent_name, client.session_modes(session_id))
        if args.list_commands:
            commands = await wait_for_commands(client, session_id)
            formatter.print_commands(agent_name, commands)

    if prompt is None or not prompt.strip():
        return 0

    if session_id is None and args.resume:
        if not init.supports_load_session:
            print(
                "Error: Agent does not support session/load (loadSession=false).",
                file=sys.stderr,
            )
            return EXIT_USAGE
        session_id = args.resume
        await client.load_session(args.resume, cwd)
    elif session_id is None:
        session_id = (await client.new_session(cwd)).session_id
        if args.save_session:
            Path(args.save_session).write_text(session_id, encoding="utf-8")

    if args.mode:
        modes = client.session_modes(session_id)
        available = {m.id for m in modes.available_modes} if modes else set()
        if args.mode not in available:
            print(f'Error: Mode "{args.mode}" not available.', file=sys.stderr)
            return EXIT_USAGE
        if not await client.set_mode(session_id, args.mode):
            print(f'Warning: Failed to set mode "{args.mode}".', file=sys.stderr)

    prompt_task = asyncio.create_task(
        _stream_prompt(client, session_id, prompt, formatter)
    )
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        done, _ = await asyncio.wait(
            [prompt_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED
        )
        if prompt_task in done:
            prompt_task.result()
            return 0

        # シグナル受信: キャンセルを送り、ターンの終了を待つ
        logger.info("Cancelling turn on signal", session_id=session_id)
        await client.cancel(session_id)
        try:
            await asyncio.wait_for(prompt_task, timeout=client.config.stop_timeout)
        except TimeoutError:
            logger.warning("Turn did not end after cancel", session_id=session_id)
        return EXIT_INTERRUPTED
    finally:
        for task in (prompt_task, shutdown_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task


async def main(argv: list[str] | None = None) -> int:
    """
    CLI のメインエントリポイント.

    Args:
        argv: コマンドライン引数（省略時は sys.argv）

    Returns:
        終了コード
    """
    args = build_parser().parse_args(argv)

    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()
    overrides: dict[str, bool] = {}
    if args.write or args.yolo:
        overrides["fs_write_enabled"] = True
    if args.yolo:
        overrides["allow_read_outside_workspace"] = True
    if overrides:
        config = config.model_copy(update=overrides)

    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )
    logger = get_logger(__name__)

    prompt = await read_prompt(args)
    has_list_flags = (
        args.list_caps or args.list_modes or args.list_commands or args.list_sessions
    )
    if not has_list_flags and (prompt is None or not prompt.strip()):
        print("Error: empty prompt", file=sys.stderr)
        print("Tip: run with --help for usage.", file=sys.stderr)
        return EXIT_USAGE

    formatter = OutputFormatter(OutputMode(args.output))

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal")
        shutdown_event.set()

    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    client: AcpClient | None = None
    terminal_task: asyncio.Task[None] | None = None
    try:
        client = await AcpClient.start(
            config,
            permission_callback=make_permission_callback(
                config.fs_write_enabled, formatter
            ),
        )
        if formatter.mode == OutputMode.TEXT:
            terminal_task = asyncio.create_task(
                _print_terminal_events(client, formatter)
            )
        return await _run_session(client, args, prompt, formatter, shutdown_event)
    except Exception as e:
        logger.exception("Fatal error occurred")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if client is not None:
            try:
                await client.dispose()
            except Exception:
                logger.exception("Error during client cleanup")

        if terminal_task is not None and not terminal_task.done():
            terminal_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await terminal_task

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
