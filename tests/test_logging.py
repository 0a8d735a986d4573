"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest

from acp_runtime.infrastructure.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _isolate_root_logger() -> None:
    """ルートロガーのハンドラーをテストごとに空にする."""
    logging.getLogger().handlers.clear()


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """ログ出力先 (未作成)."""
    return tmp_path / "var" / "log" / "acp"


def rotating_handlers() -> dict[str, TimedRotatingFileHandler]:
    """ファイル名ごとのローテーションハンドラー."""
    return {
        Path(h.baseFilename).name: h
        for h in logging.getLogger().handlers
        if isinstance(h, TimedRotatingFileHandler)
    }


def console_handler() -> logging.StreamHandler:  # type: ignore[type-arg]
    """コンソール用のハンドラー (ファイル以外の StreamHandler) を返す."""
    (handler,) = [
        h
        for h in logging.getLogger().handlers
        if type(h) is logging.StreamHandler
    ]
    return handler


def read_records(path: Path) -> list[dict[str, object]]:
    """JSON Lines のログファイルを読む."""
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_without_log_dir_only_console_is_installed() -> None:
    """log_dir が None ならコンソールのハンドラーだけになることを確認する."""
    configure_logging(log_level="debug", log_dir=None)

    assert logging.getLogger().handlers == [console_handler()]
    assert console_handler().level == logging.DEBUG


def test_console_writes_to_stderr(log_dir: Path) -> None:
    """stdout を CLI 出力に残すため、コンソールが stderr に向くことを確認する."""
    configure_logging(log_level="ERROR", log_dir=str(log_dir))

    assert console_handler().stream is sys.stderr
    assert console_handler().level == logging.ERROR


def test_log_files_are_created_with_rotation(log_dir: Path) -> None:
    """ディレクトリが作成され、日次ローテーションのファイルが 2 つ付くことを確認する."""
    configure_logging(log_dir=str(log_dir), log_backup_count=3)

    assert log_dir.is_dir()
    handlers = rotating_handlers()
    assert handlers["latest.log"].level == logging.DEBUG
    assert handlers["error.log"].level == logging.WARNING
    for handler in handlers.values():
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 3
        assert handler.suffix == "%Y-%m-%d"


def test_unknown_level_falls_back_to_warning(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """未知のログレベルが警告付きで WARNING になることを確認する."""
    configure_logging(log_level="verbose", log_dir=None)

    assert "Invalid log level 'verbose'" in capsys.readouterr().err
    assert console_handler().level == logging.WARNING


def test_reconfiguring_replaces_handlers(log_dir: Path) -> None:
    """再設定で既存のハンドラーが置き換わることを確認する."""
    stale = logging.NullHandler()
    logging.getLogger().addHandler(stale)

    configure_logging(log_dir=str(log_dir))
    configure_logging(log_dir=str(log_dir))

    handlers = logging.getLogger().handlers
    assert stale not in handlers
    assert len(handlers) == 3


def test_asyncio_logger_is_quieted() -> None:
    """asyncio のロガーが WARNING に抑えられることを確認する."""
    configure_logging(log_level="DEBUG", log_dir=None)
    assert logging.getLogger("asyncio").level == logging.WARNING


def test_unwritable_log_dir_keeps_console(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """ログディレクトリを作れない場合もコンソールで継続することを確認する."""
    # 通常ファイルの下にはディレクトリを作れない
    occupied = tmp_path / "occupied"
    occupied.write_text("", encoding="utf-8")

    configure_logging(log_dir=str(occupied / "logs"))

    assert "Failed to create log directory" in capsys.readouterr().err
    assert rotating_handlers() == {}
    assert console_handler() is not None


@pytest.mark.parametrize(
    ("method", "in_error_log"),
    [("debug", False), ("info", False), ("warning", True), ("error", True)],
)
def test_records_are_routed_by_level(
    log_dir: Path, method: str, in_error_log: bool
) -> None:
    """latest.log には全レベル、error.log には WARNING 以上が出ることを確認する."""
    configure_logging(log_level="CRITICAL", log_dir=str(log_dir))

    getattr(get_logger("acp_runtime.test"), method)("routed", level_name=method)

    latest = read_records(log_dir / "latest.log")
    errors = read_records(log_dir / "error.log")
    assert [r["level_name"] for r in latest] == [method]
    assert bool(errors) is in_error_log


def test_records_carry_context_as_json(log_dir: Path) -> None:
    """キーワード引数が JSON のフィールドとして出力されることを確認する."""
    configure_logging(log_dir=str(log_dir))

    get_logger("acp_runtime.session").info(
        "Session created", session_id="sess-1", cwd="/work"
    )

    (record,) = read_records(log_dir / "latest.log")
    assert record["event"] == "Session created"
    assert record["session_id"] == "sess-1"
    assert record["cwd"] == "/work"
    assert record["level"] == "info"
    assert record["logger"] == "acp_runtime.session"
    assert "timestamp" in record
