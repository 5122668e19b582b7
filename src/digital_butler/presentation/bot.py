"""Discord Bot client implementation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import discord
from discord import Intents
from discord.ext import commands

from digital_butler.application.conversations import ConversationStore  # noqa: TC001
from digital_butler.application.executor import (
    ClaudeCodeExecutor,  # noqa: TC001
    split_into_chunks,
)
from digital_butler.application.models import (
    ClaudeCodePermissionRequest,
    ClaudeCodeResponse,
)
from digital_butler.application.parser import CommandParser
from digital_butler.application.permissions import PermissionStore  # noqa: TC001
from digital_butler.application.projects import ProjectRegistry  # noqa: TC001
from digital_butler.infrastructure.config import Config  # noqa: TC001
from digital_butler.infrastructure.event_bus import EventBus  # noqa: TC001
from digital_butler.infrastructure.logging import get_logger
from digital_butler.presentation.views.permission import (
    PermissionView,
    build_permission_embed,
)

logger = get_logger(__name__)

# Discordのメッセージ1件あたりの最大文字数
DISCORD_MESSAGE_LIMIT = 2000


class ButlerBot(commands.Bot):
    """Digital Butler Discord Bot."""

    def __init__(
        self,
        config: Config,
        bus: EventBus,
        registry: ProjectRegistry,
        permission_store: PermissionStore,
        executor: ClaudeCodeExecutor,
        conversations: ConversationStore,
    ) -> None:
        """
        Initialize ButlerBot.

        Args:
            config: アプリケーション設定
            bus: イベントバス
            registry: プロジェクトレジストリ
            permission_store: パーミッションストア
            executor: Claude Code Executor
            conversations: 会話履歴ストア
        """
        # Intentsの設定（必要最小限）
        intents = Intents.default()
        intents.message_content = True  # メッセージ内容を読み取るために必要
        intents.guilds = True
        intents.messages = True

        super().__init__(
            command_prefix="!",  # コマンドはテキストパーサーで処理する
            intents=intents,
        )

        self.config = config
        self.bus = bus
        self.registry = registry
        self.permission_store = permission_store
        self.executor = executor
        self.conversations = conversations
        self.parser = CommandParser(registry)

        # 分割送信中の応答テキスト: request_id -> チャンク
        self._partial_responses: dict[str, list[str]] = {}
        # 応答の送信はチャンネルごとに直列化する: chat_id -> ロック
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    async def send_message_to_channel(self, chat_id: str, content: str) -> None:
        """
        チャンネルにメッセージを送信する.

        Args:
            chat_id: チャンネルID
            content: メッセージ内容（2000文字を超える場合は分割して送信）
        """
        try:
            channel = self.get_channel(int(chat_id))
            if not isinstance(channel, discord.abc.Messageable):
                logger.error("Channel is not messageable", chat_id=chat_id)
                return

            for chunk in split_into_chunks(content, DISCORD_MESSAGE_LIMIT):
                await channel.send(chunk)

            logger.debug("Sent message to channel", chat_id=chat_id)

        except Exception:
            logger.exception("Error sending message to channel", chat_id=chat_id)

    async def on_claude_code_response(self, response: ClaudeCodeResponse) -> None:
        """
        ClaudeCodeResponse をチャンネルに送信する.

        分割された応答はイベントごとに別タスクで届くため、チャンネルごとの
        ロックで発行順に1件ずつ送信する。最後のチャンクを受け取った時点で
        応答全体を会話履歴に記録する。

        Args:
            response: Executor からの応答
        """
        lock = self._send_locks.setdefault(response.chat_id, asyncio.Lock())
        async with lock:
            await self.send_message_to_channel(response.chat_id, response.text)

            parts = self._partial_responses.setdefault(response.request_id, [])
            parts.append(response.text)
            if response.is_partial:
                return

            del self._partial_responses[response.request_id]
            self.conversations.add_assistant_message(
                response.chat_id, "\n".join(parts)
            )

    async def on_permission_request(self, request: ClaudeCodePermissionRequest) -> None:
        """
        パーミッション要求をボタン付きEmbedとしてチャンネルに送信する.

        Args:
            request: Executor からのパーミッション要求
        """
        try:
            channel = self.get_channel(int(request.chat_id))
            if not isinstance(channel, discord.abc.Messageable):
                logger.error(
                    "Channel is not messageable",
                    chat_id=request.chat_id,
                    permission_id=request.request_id,
                )
                return

            view = PermissionView(
                request,
                self.bus.publish,
                timeout=self.config.permission_timeout,
                is_authorized=self.registry.is_authorized_user,
            )
            await channel.send(embed=build_permission_embed(request), view=view)
            logger.info(
                "Sent permission request",
                chat_id=request.chat_id,
                permission_id=request.request_id,
            )

        except Exception:
            logger.exception(
                "Error sending permission request",
                chat_id=request.chat_id,
                permission_id=request.request_id,
            )

    async def setup_hook(self) -> None:
        """
        Bot起動時の初期化処理.

        イベントバスの購読とCogのロードを行う。
        """
        logger.info("Setting up bot...")

        self._unsubscribers = [
            self.bus.subscribe(ClaudeCodeResponse, self.on_claude_code_response),
            self.bus.subscribe(ClaudeCodePermissionRequest, self.on_permission_request),
        ]

        try:
            await self.load_extension("digital_butler.presentation.events.message")
            logger.info("Loaded message event handler")
        except Exception:
            logger.exception("Failed to load message event handler")

    async def close(self) -> None:
        """イベントバスの購読を解除してBotを終了する."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await super().close()

    async def on_ready(self) -> None:
        """Bot準備完了時のイベントハンドラー."""
        if self.user is None:
            logger.error("Bot user is None")
            return

        logger.info("Bot is ready", bot_name=self.user.name, bot_id=self.user.id)
        logger.info("Connected to guilds", guild_count=len(self.guilds))
