"""Tests for prompt content building."""

from __future__ import annotations

from pathlib import Path

from acp_runtime.application.content import (
    build_prompt_content,
    extract_mentions,
    mention_to_uri,
)


def test_extract_plain_and_quoted_mentions() -> None:
    """通常と引用符付きのメンションが抽出されることを確認する."""
    text = 'Compare @src/a.py and @"docs/My File.md", please.'
    assert extract_mentions(text) == ["src/a.py", "docs/My File.md"]


def test_email_is_not_a_mention() -> None:
    """メールアドレスがメンションとして扱われないことを確認する."""
    assert extract_mentions("mail user@example.com") == []


def test_trailing_punctuation_is_stripped() -> None:
    """文末の句読点がメンションから除かれることを確認する."""
    assert extract_mentions("See @README.md.") == ["README.md"]


def test_url_mention_passes_through(workspace: Path) -> None:
    """URL のメンションがそのまま使われることを確認する."""
    url = "https://example.com/guide.md"
    assert mention_to_uri(url, workspace) == url


def test_relative_mention_resolves_against_workspace(workspace: Path) -> None:
    """相対パスのメンションがワークスペース基準の file URI になることを確認する."""
    assert mention_to_uri("src/a.py", workspace) == (workspace / "src/a.py").as_uri()


def test_home_mention_is_expanded(workspace: Path) -> None:
    """~ が展開されることを確認する."""
    uri = mention_to_uri("~/notes.txt", workspace)
    assert uri == (Path.home() / "notes.txt").resolve().as_uri()


def test_build_prompt_content(workspace: Path) -> None:
    """テキストブロックに resource_link が続くことを確認する."""
    blocks = build_prompt_content("Read @a.txt and @a.txt again", workspace)

    assert blocks[0] == {"type": "text", "text": "Read @a.txt and @a.txt again"}
    # 重複するメンションは1つにまとめる
    assert blocks[1:] == [
        {
            "type": "resource_link",
            "uri": (workspace / "a.txt").as_uri(),
            "name": "a.txt",
        }
    ]


def test_prompt_without_mentions(workspace: Path) -> None:
    """メンションが無い場合はテキストブロックのみになることを確認する."""
    assert build_prompt_content("hello", workspace) == [
        {"type": "text", "text": "hello"}
    ]
