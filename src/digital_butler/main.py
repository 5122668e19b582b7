"""Main entry point for the Digital Butler application."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from digital_butler.application.conversations import ConversationStore
from digital_butler.application.executor import ClaudeCodeExecutor
from digital_butler.application.permissions import PermissionStore
from digital_butler.application.projects import ProjectRegistry
from digital_butler.infrastructure.agent_runtime import ClaudeAgentRuntime
from digital_butler.infrastructure.config import get_config
from digital_butler.infrastructure.event_bus import EventBus
from digital_butler.infrastructure.logging import configure_logging, get_logger


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)

    logger.info("Starting Digital Butler...")

    # シャットダウンイベント
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # シグナルハンドラーを登録（SIGINT + SIGTERM）
    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    bus: EventBus | None = None
    executor: ClaudeCodeExecutor | None = None
    bot = None
    bot_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        logger.info("Configuration loaded")

        # コンポーネントを初期化（依存される側から順に）
        registry = ProjectRegistry(config.projects_file)
        registry.reload()
        permission_store = PermissionStore(config.permissions_file)
        bus = EventBus()
        executor = ClaudeCodeExecutor(
            bus,
            registry,
            permission_store,
            ClaudeAgentRuntime(),
            tools=config.agent_tools,
            permission_timeout=config.permission_timeout,
            chunk_size=config.response_chunk_size,
        )
        conversations = ConversationStore(
            max_messages=config.conversation_max_messages,
            max_age=config.conversation_max_age,
        )

        from digital_butler.presentation.bot import ButlerBot

        bot = ButlerBot(
            config=config,
            bus=bus,
            registry=registry,
            permission_store=permission_store,
            executor=executor,
            conversations=conversations,
        )

        executor.start()

        logger.info("Services initialized")

        # Botを起動（タスクとして）
        bot_task = asyncio.create_task(bot.start(config.discord_bot_token))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # bot_taskの完了 or シャットダウンイベントを待つ
        done, pending = await asyncio.wait(
            [bot_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # bot_taskが例外で終了した場合は例外を伝播
        if bot_task in done:
            bot_task.result()  # 例外があればここでraise

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # クリーンアップ（Executor → イベントバス → Bot の順序で実行）
        # 応答待ちのパーミッションを拒否し、実行中の応答をBotが生存中に送信する
        if executor is not None:
            try:
                executor.close()
            except Exception:
                logger.critical("Error during executor cleanup", exc_info=True)

        if bus is not None:
            try:
                await asyncio.wait_for(bus.wait_idle(), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "Event handlers still running at shutdown",
                    pending_tasks=bus.pending_tasks,
                )

        if bot is not None:
            try:
                await asyncio.wait_for(bot.close(), timeout=5.0)
            except TimeoutError:
                logger.warning("Bot close timed out")
            except Exception:
                logger.exception("Error during bot cleanup")

        # 残タスクのキャンセル
        for task in (bot_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
