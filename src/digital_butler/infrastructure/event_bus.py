"""In-process typed event bus."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from digital_butler.infrastructure.logging import get_logger

logger = get_logger(__name__)

E = TypeVar("E")

Handler = Callable[[E], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class EventBus:
    """
    ペイロードの型をキーにした Publish/Subscribe バス.

    publish() はハンドラーの完了を待たない。非同期ハンドラーはタスクとして
    スケジュールされるため、パーミッション応答待ちで停止中のハンドラーが
    あっても別イベントの配送は妨げられない。
    """

    def __init__(self) -> None:
        """Initialize EventBus."""
        self._handlers: dict[type, list[Callable[[Any], Awaitable[None] | None]]] = {}
        # 実行中のハンドラータスク（GC防止のため完了まで保持）
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Unsubscribe:
        """
        イベント型にハンドラーを登録する.

        Args:
            event_type: 購読するイベントのクラス
            handler: イベント受信時に呼ばれる関数（同期・非同期どちらも可）

        Returns:
            登録を解除する関数
        """
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)
        logger.debug(
            "Subscribed handler",
            event_type=event_type.__name__,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )

        def unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                # 既に解除済み
                pass

        return unsubscribe

    def publish(self, event: object) -> None:
        """
        イベントを配信する.

        同期ハンドラーはその場で、非同期ハンドラーはタスクとして実行される。
        ハンドラーの例外はログに記録され、他のハンドラーには影響しない。

        Args:
            event: 配信するイベント
        """
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, ()))
        if not handlers:
            logger.debug("No subscribers for event", event_type=event_type.__name__)
            return

        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception(
                    "Error in event handler", event_type=event_type.__name__
                )
                continue

            if inspect.isawaitable(result):
                self._spawn(result, event_type.__name__)

    def _spawn(self, awaitable: Awaitable[None], event_name: str) -> None:
        """非同期ハンドラーをタスクとして起動する."""

        async def _run() -> None:
            await awaitable

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)

        def _on_done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "Async event handler failed",
                    event_type=event_name,
                    exc_info=exc,
                )

        task.add_done_callback(_on_done)

    @property
    def pending_tasks(self) -> int:
        """実行中のハンドラータスク数."""
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """実行中のハンドラータスクがすべて完了するまで待機する."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
