"""Workspace boundary checks for agent-initiated file and terminal access."""

from __future__ import annotations

from pathlib import Path

from acp_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)


class WorkspaceJailError(PermissionError):
    """ワークスペース外のパスへのアクセスが拒否された場合の例外."""

    def __init__(self, path: str | Path, root: str | Path, operation: str) -> None:
        """
        Initialize WorkspaceJailError.

        Args:
            path: 拒否されたパス
            root: ワークスペースルート
            operation: 操作の種類（read / write / terminal）
        """
        self.path = str(path)
        self.root = str(root)
        self.operation = operation
        super().__init__(
            f"Access denied: {operation} of '{self.path}' is outside workspace "
            f"'{self.root}'"
        )


class WorkspaceJail:
    """
    セッションのワークスペースルートを境界とするアクセス制御.

    パスの解決は寛容（存在しないパスでもシンボリックリンクを辿れる範囲で
    正規化する）なので、作成前のファイルやディレクトリも判定できる。
    書き込みは設定に関わらずワークスペース外を常に拒否する。
    """

    def __init__(self, allow_read_outside: bool = False) -> None:
        """
        Initialize WorkspaceJail.

        Args:
            allow_read_outside: ワークスペース外の読み込みを許可するか
        """
        self.allow_read_outside = allow_read_outside

    @staticmethod
    def resolve(path: str | Path, root: str | Path) -> Path:
        """
        パスを正規化する（相対パスはルート基準）.

        Args:
            path: 対象パス
            root: ワークスペースルート

        Returns:
            正規化された絶対パス
        """
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = Path(root) / candidate
        return candidate.resolve(strict=False)

    @staticmethod
    def is_within(path: str | Path, root: str | Path) -> bool:
        """
        パスがルート配下（ルート自身を含む）にあるか判定する.

        Args:
            path: 正規化済みのパス
            root: ワークスペースルート
        """
        resolved_root = Path(root).resolve(strict=False)
        return Path(path).is_relative_to(resolved_root)

    def check_read(self, path: str | Path, root: str | Path) -> Path:
        """
        読み込み対象のパスを検証する.

        Returns:
            正規化されたパス

        Raises:
            WorkspaceJailError: ワークスペース外で、外部読み込みが許可されていない場合
        """
        resolved = self.resolve(path, root)
        if self.allow_read_outside or self.is_within(resolved, root):
            return resolved
        logger.warning("Blocked read outside workspace", path=str(resolved))
        raise WorkspaceJailError(resolved, root, "read")

    def check_write(self, path: str | Path, root: str | Path) -> Path:
        """
        書き込み対象のパスを検証する.

        Raises:
            WorkspaceJailError: ワークスペース外の場合（設定に関わらず）
        """
        resolved = self.resolve(path, root)
        if self.is_within(resolved, root):
            return resolved
        logger.warning("Blocked write outside workspace", path=str(resolved))
        raise WorkspaceJailError(resolved, root, "write")

    def clamp_cwd(self, cwd: str | Path | None, root: str | Path) -> Path:
        """
        ターミナルの作業ディレクトリを決定する.

        ワークスペース外を指す場合は、外部アクセスが許可されていない限り
        ワークスペースルートに戻す。

        Args:
            cwd: エージェントが要求した作業ディレクトリ
            root: ワークスペースルート

        Returns:
            使用する作業ディレクトリ
        """
        resolved_root = Path(root).resolve(strict=False)
        if cwd is None:
            return resolved_root
        resolved = self.resolve(cwd, root)
        if self.allow_read_outside or self.is_within(resolved, root):
            return resolved
        logger.info(
            "Clamping terminal cwd into workspace",
            requested=str(resolved),
            root=str(resolved_root),
        )
        return resolved_root
