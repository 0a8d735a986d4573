"""Permission decision policies for agent-initiated actions."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from acp_runtime.application.models import PermissionOutcome, PermissionRequest
from acp_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from acp_runtime.infrastructure.config import Config

logger = get_logger(__name__)

PermissionCallback = Callable[[PermissionRequest], Awaitable[PermissionOutcome]]


class PermissionDeniedError(PermissionError):
    """パーミッションポリシーがエージェントの操作を拒否した場合の例外."""

    def __init__(self, operation: str, reason: str = "denied by policy") -> None:
        """
        Initialize PermissionDeniedError.

        Args:
            operation: 拒否された操作
            reason: 拒否の理由
        """
        self.operation = operation
        self.reason = reason
        super().__init__(f"Permission denied: {operation} ({reason})")


class PermissionPolicy(Protocol):
    """
    パーミッション判定のポリシー.

    複数セッションから並行して呼ばれても安全でなければならない。
    """

    async def decide(self, request: PermissionRequest) -> PermissionOutcome:
        """要求に対する判定を返す."""
        ...


class StaticPermissionPolicy:
    """常に同じ判定を返す非対話ポリシー."""

    def __init__(self, outcome: PermissionOutcome) -> None:
        """
        Initialize StaticPermissionPolicy.

        Args:
            outcome: 返す判定
        """
        self.outcome = outcome

    async def decide(self, request: PermissionRequest) -> PermissionOutcome:
        """設定された判定を返す."""
        logger.debug(
            "Static permission decision",
            session_id=request.session_id,
            tool_name=request.tool_name,
            tool_kind=request.tool_kind,
            outcome=self.outcome.value,
        )
        return self.outcome


class CallbackPermissionPolicy:
    """
    ホストのコールバック（UI など）に判定を委ねるポリシー.

    コールバックがタイムアウトした場合は cancelled として扱う。
    """

    def __init__(self, callback: PermissionCallback, timeout: float = 300.0) -> None:
        """
        Initialize CallbackPermissionPolicy.

        Args:
            callback: 要求を受け取り判定を返すコールバック
            timeout: 判定の待機タイムアウト（秒）。0 以下なら無制限
        """
        self.callback = callback
        self.timeout = timeout

    async def decide(self, request: PermissionRequest) -> PermissionOutcome:
        """
        コールバックに判定を問い合わせる.

        Returns:
            コールバックの判定。タイムアウト時は CANCELLED
        """
        try:
            if self.timeout > 0:
                return await asyncio.wait_for(
                    self.callback(request), timeout=self.timeout
                )
            return await self.callback(request)
        except TimeoutError:
            logger.warning(
                "Permission request timed out, treating as cancelled",
                session_id=request.session_id,
                tool_name=request.tool_name,
                timeout=self.timeout,
            )
            return PermissionOutcome.CANCELLED


def build_permission_policy(
    config: Config, callback: PermissionCallback | None = None
) -> PermissionPolicy:
    """
    設定からパーミッションポリシーを作成する.

    Args:
        config: 設定
        callback: 対話的に判定するコールバック（省略時は permission_mode に従う）

    Returns:
        パーミッションポリシー
    """
    if callback is not None:
        return CallbackPermissionPolicy(callback, timeout=config.permission_timeout)
    return StaticPermissionPolicy(PermissionOutcome(config.permission_mode))
