"""Per-session update log with replay and live fan-out."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar, cast

from acp_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# 購読キューの終端マーカー
_CLOSED = object()


class Subscription(Generic[T]):
    """
    EventStream の購読.

    async for で要素を受け取る。ストリームがクローズされるか
    aclose() を呼ぶと反復が終了する。
    """

    def __init__(self, stream: EventStream[T]) -> None:
        """
        Initialize Subscription.

        Args:
            stream: 購読元のストリーム
        """
        self._stream = stream
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._done = False

    def _push(self, item: object) -> None:
        if not self._done:
            self._queue.put_nowait(item)

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._done and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return cast("T", item)

    async def aclose(self) -> None:
        """購読を解除する（冪等）."""
        self._stream._unsubscribe(self)
        if not self._done:
            self._done = True
            # 未読の要素は破棄し、待機中の __anext__ を終了させる
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        """購読が終了しているか."""
        return self._done


class EventStream(Generic[T]):
    """
    追記専用のログとライブ配信を1つにまとめたストリーム.

    append はログへの追記と購読者への配信を同じ同期区間で行い、
    subscribe はスナップショットの取得と購読者の登録を同じ同期区間で行う。
    イベントループは単一スレッドなので、購読開始時のリプレイと
    その後のライブ配信の間に欠落や重複は生じない。
    """

    def __init__(self, retain: bool = True) -> None:
        """
        Initialize EventStream.

        Args:
            retain: ログを保持してリプレイに使うか
        """
        self._retain = retain
        self._log: list[T] = []
        self._subscribers: list[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        """ストリームがクローズ済みか."""
        return self._closed

    def snapshot(self) -> list[T]:
        """保持しているログのコピーを返す."""
        return list(self._log)

    def append(self, item: T) -> None:
        """
        要素をログに追記し、購読者へ配信する.

        ログへの追記は配信より先に行う。
        """
        if self._closed:
            logger.debug("Dropping item appended to closed stream")
            return
        if self._retain:
            self._log.append(item)
        for subscription in list(self._subscribers):
            subscription._push(item)

    def subscribe(self, replay: bool = True) -> Subscription[T]:
        """
        購読を開始する.

        Args:
            replay: True ならログ全体を先に配信し、その後ライブの要素を配信する。
                False ならこの時点以降のライブの要素のみを配信する。

        Returns:
            購読
        """
        subscription: Subscription[T] = Subscription(self)
        if replay:
            for item in self._log:
                subscription._push(item)
        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def close(self) -> None:
        """ストリームをクローズし、全購読者の反復を終了させる（冪等）."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._push(_CLOSED)
        self._subscribers.clear()

    def clear(self) -> None:
        """ログを破棄する."""
        self._log.clear()
