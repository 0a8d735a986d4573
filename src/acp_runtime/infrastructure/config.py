"""Configuration management."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Config(BaseSettings):
    """ACP クライアントランタイムの設定."""

    model_config = SettingsConfigDict(
        env_prefix="ACP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # エージェントプロセス設定
    agent_command: Annotated[list[str], NoDecode] = Field(
        default=["claude-code-acp"],
        description="エージェント起動コマンド（先頭が実行ファイル、残りが引数）",
    )
    agent_env: dict[str, str] = Field(
        default_factory=dict,
        description="エージェントプロセスに追加・上書きする環境変数",
    )
    agent_cwd: Path | None = Field(
        default=None,
        description="エージェントプロセスの作業ディレクトリ",
    )
    mcp_servers: list[dict[str, Any]] = Field(
        default_factory=list,
        description="session/new 等で送信する MCP サーバー一覧",
    )

    # クライアント機能（initialize で通知する capability）
    fs_read_enabled: bool = Field(
        default=True,
        description="fs/read_text_file を受け付けるか",
    )
    fs_write_enabled: bool = Field(
        default=False,
        description="fs/write_text_file を受け付けるか",
    )
    terminal_enabled: bool = Field(
        default=True,
        description="terminal/* を受け付けるか",
    )

    # セキュリティ設定
    allow_read_outside_workspace: bool = Field(
        default=False,
        description="ワークスペース外の読み込みを許可するか（書き込みは常に不可）",
    )
    permission_mode: Literal["allow", "deny"] = Field(
        default="allow",
        description="コールバック未設定時のパーミッション判定",
    )
    permission_timeout: float = Field(
        default=300.0,
        ge=0,
        description="パーミッション判定の待機タイムアウト（秒）",
    )

    # プロトコル・プロセス制御
    minimum_protocol_version: int = Field(
        default=1,
        description="サポートする最小プロトコルバージョン",
    )
    startup_grace_period: float = Field(
        default=0.1,
        ge=0,
        description="起動直後のクラッシュ検出を待つ時間（秒）",
    )
    stop_timeout: float = Field(
        default=5.0,
        gt=0,
        description="SIGTERM 後に SIGKILL へ切り替えるまでの時間（秒）",
    )

    # ロギング設定
    log_level: str = Field(default="WARNING", description="コンソールのログレベル")
    log_dir: str | None = Field(default=None, description="ログ出力ディレクトリ")
    log_backup_count: int = Field(default=7, description="ログの保持日数")

    @field_validator("agent_command", mode="before")
    @classmethod
    def split_agent_command(cls, v: object) -> object:
        """JSON 配列の文字列はリストに、それ以外の文字列は単一要素にする."""
        if not isinstance(v, str):
            return v
        try:
            decoded = json.loads(v)
        except json.JSONDecodeError:
            decoded = None
        return decoded if isinstance(decoded, list) else [v]

    @field_validator("agent_command")
    @classmethod
    def require_executable(cls, v: list[str]) -> list[str]:
        """先頭要素 (実行ファイル) が空でないことを確認する."""
        if not v or not v[0].strip():
            msg = "agent_command must not be empty"
            raise ValueError(msg)
        return v

    @property
    def agent_executable(self) -> str:
        """エージェントの実行ファイル."""
        return self.agent_command[0]

    @property
    def agent_args(self) -> list[str]:
        """エージェントに渡す引数."""
        return self.agent_command[1:]


@lru_cache(maxsize=1)
def get_config() -> Config:
    """CLI 用に環境変数から読み込んだ設定を返す (初回のみ生成)."""
    return Config()
