"""Prompt content building with @-mentions."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

# @"path with spaces" / @https://... / @~/path / @path
_MENTION_PATTERN = re.compile(r'(?<![\w@])@(?:"([^"]+)"|(\S+))')


def extract_mentions(text: str) -> list[str]:
    """
    プロンプト中の @-メンションを抽出する.

    Args:
        text: プロンプト

    Returns:
        メンションされたパスまたは URL（出現順）
    """
    mentions = []
    for match in _MENTION_PATTERN.finditer(text):
        target = match.group(1) or match.group(2)
        # 文末の句読点はメンションに含めない
        target = target.rstrip(".,;:!?)")
        if target:
            mentions.append(target)
    return mentions


def mention_to_uri(mention: str, workspace_root: str | Path) -> str:
    """
    メンションを URI に変換する.

    URL はそのまま、ローカルパスは ~ を展開し、相対パスはワークスペースルート
    基準で解決した file:// URI にする。
    """
    parsed = urlparse(mention)
    if parsed.scheme in ("http", "https", "file"):
        return mention
    path = Path(mention).expanduser()
    if not path.is_absolute():
        path = Path(workspace_root) / path
    return path.resolve(strict=False).as_uri()


def resource_link_block(uri: str) -> dict[str, Any]:
    """resource_link のコンテンツブロックを作成する."""
    parsed = urlparse(uri)
    name = Path(parsed.path).name or parsed.netloc or uri
    return {"type": "resource_link", "uri": uri, "name": name}


def build_prompt_content(text: str, workspace_root: str | Path) -> list[dict[str, Any]]:
    """
    プロンプト文字列からコンテンツブロックを組み立てる.

    テキストブロック1つに続けて、@-メンションごとに resource_link ブロックを
    追加する。

    Args:
        text: プロンプト
        workspace_root: 相対パスの基準となるワークスペースルート

    Returns:
        session/prompt に渡すコンテンツブロック
    """
    blocks: list[dict[str, Any]] = [{"type": "text", "text": text}]
    seen: set[str] = set()
    for mention in extract_mentions(text):
        uri = mention_to_uri(mention, workspace_root)
        if uri in seen:
            continue
        seen.add(uri)
        blocks.append(resource_link_block(uri))
    return blocks
