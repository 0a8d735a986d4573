"""Filesystem provider used to serve agent file requests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from acp_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)


class FsProvider(Protocol):
    """エージェントのファイル読み書き要求を処理するプロバイダー."""

    async def read_text_file(
        self, path: Path, line: int | None = None, limit: int | None = None
    ) -> str:
        """テキストファイルを読み込む."""
        ...

    async def write_text_file(self, path: Path, content: str) -> None:
        """テキストファイルを書き込む."""
        ...


def slice_lines(text: str, line: int | None = None, limit: int | None = None) -> str:
    """
    テキストを行単位で切り出す.

    Args:
        text: 元のテキスト
        line: 開始行（1始まり。None なら先頭から）
        limit: 最大行数（None なら末尾まで）

    Returns:
        切り出したテキスト（改行は保持する）
    """
    if line is None and limit is None:
        return text
    lines = text.splitlines(keepends=True)
    start = max((line or 1) - 1, 0)
    end = None if limit is None else start + max(limit, 0)
    return "".join(lines[start:end])


class LocalFsProvider:
    """ローカルファイルシステムを読み書きするプロバイダー."""

    def __init__(self, encoding: str = "utf-8") -> None:
        """
        Initialize LocalFsProvider.

        Args:
            encoding: ファイルの文字コード
        """
        self.encoding = encoding

    async def read_text_file(
        self, path: Path, line: int | None = None, limit: int | None = None
    ) -> str:
        """
        テキストファイルを読み込む.

        Raises:
            OSError: 読み込みに失敗した場合
        """
        text = await asyncio.to_thread(
            path.read_text, encoding=self.encoding, errors="replace"
        )
        logger.debug("Read text file", path=str(path), line=line, limit=limit)
        return slice_lines(text, line, limit)

    async def write_text_file(self, path: Path, content: str) -> None:
        """
        テキストファイルを書き込む（親ディレクトリは作成する）.

        Raises:
            OSError: 書き込みに失敗した場合
        """
        await asyncio.to_thread(self._write, path, content)
        logger.debug("Wrote text file", path=str(path), size=len(content))

    def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding=self.encoding)
