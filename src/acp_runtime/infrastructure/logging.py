"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ファイル名と、そのファイルに書き出す最低レベル
_LOG_FILES = (("latest.log", logging.DEBUG), ("error.log", logging.WARNING))

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _resolve_level(log_level: str) -> int:
    name = log_level.upper()
    if name in _VALID_LEVELS:
        return logging.getLevelName(name)  # type: ignore[no-any-return]
    print(
        f"Warning: Invalid log level '{log_level}', defaulting to WARNING",
        file=sys.stderr,
    )
    return logging.WARNING


def _rotating_handler(
    path: Path, level: int, backup_count: int, formatter: logging.Formatter
) -> TimedRotatingFileHandler:
    """日次ローテーションするファイルハンドラーを作成する."""
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "WARNING",
    log_dir: str | None = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    ログはすべて JSON で出力する:
    - コンソール (stderr): log_level 以上
    - {log_dir}/latest.log: 全レベル
    - {log_dir}/error.log: WARNING 以上

    stdout は CLI の出力 (JSONL を含む) に使うため、コンソールは stderr に限る。
    ログディレクトリを作成できない場合はコンソールのみで続行する。

    Args:
        log_level: コンソールに出力する最低ログレベル
        log_dir: ログ出力ディレクトリ（None の場合はコンソールのみ）
        log_backup_count: ローテーション後に保持する日数
    """
    console_level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    # asyncio のデバッグ出力は冗長
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if log_dir is None:
        return

    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    for filename, level in _LOG_FILES:
        root.addHandler(
            _rotating_handler(directory / filename, level, log_backup_count, formatter)
        )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """構造化ロガーを取得する (通常は __name__ を渡す)."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
