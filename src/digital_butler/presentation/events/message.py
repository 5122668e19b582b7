"""Message event handler."""

from __future__ import annotations

from typing import TYPE_CHECKING

from discord.ext import commands

from digital_butler.application.models import ClaudeCodeRequest
from digital_butler.application.parser import (
    ClaudeCodeCommand,
    ClearConversationCommand,
    ClearPermissionsCommand,
    ClearSessionCommand,
    ListProjectsCommand,
)
from digital_butler.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import discord

    from digital_butler.application.parser import Command
    from digital_butler.presentation.bot import ButlerBot

logger = get_logger(__name__)


class MessageEventHandler(commands.Cog):
    """メッセージイベントハンドラー."""

    def __init__(self, bot: ButlerBot) -> None:
        """
        Initialize MessageEventHandler.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """
        メッセージ受信イベントハンドラー.

        メッセージをコマンドとして解釈し、Claude Code の実行要求や
        管理コマンドを処理する。コマンドでないメッセージは無視する。

        Args:
            message: 受信したメッセージ
        """
        # Bot自身のメッセージは無視
        if message.author.bot:
            return

        command = self.bot.parser.parse(message.content)
        if command is None:
            return

        chat_id = str(message.channel.id)
        user_id = str(message.author.id)

        if isinstance(command, ClaudeCodeCommand):
            self._publish_request(message, command, chat_id, user_id)
            return

        # 管理コマンドは認可ユーザーのみ
        if not self.bot.registry.is_authorized_user(user_id):
            logger.warning(
                "Unauthorized user attempted to use command",
                user_name=message.author.name,
                user_id=user_id,
                command=type(command).__name__,
            )
            return

        try:
            reply = self._handle_admin_command(command, chat_id)
        except Exception:
            logger.exception("Error handling command", chat_id=chat_id)
            reply = "❌ エラーが発生しました。ログを確認してください。"

        await self.bot.send_message_to_channel(chat_id, reply)

    def _publish_request(
        self,
        message: discord.Message,
        command: ClaudeCodeCommand,
        chat_id: str,
        user_id: str,
    ) -> None:
        """ClaudeCodeRequest を発行する（認可は Executor が判定する）."""
        session_id = self.bot.executor.get_active_session(
            chat_id, command.project_name
        )
        request = ClaudeCodeRequest(
            id=str(message.id),
            chat_id=chat_id,
            user_id=user_id,
            project_name=command.project_name,
            prompt=command.prompt,
            session_id=session_id,
        )

        logger.info(
            "Received Claude Code command",
            request_id=request.id,
            chat_id=chat_id,
            project_name=command.project_name,
            resume=session_id,
        )

        self.bot.conversations.add_user_message(chat_id, message.content)
        self.bot.bus.publish(request)

    def _handle_admin_command(self, command: Command, chat_id: str) -> str:
        """
        管理コマンドを実行する.

        Args:
            command: 解析済みのコマンド
            chat_id: チャンネルID

        Returns:
            ユーザーへの返信メッセージ
        """
        if isinstance(command, ListProjectsCommand):
            projects = self.bot.registry.list_projects()
            if not projects:
                return "No projects configured."
            lines = ["**Projects:**"]
            lines.extend(f"- `{p.name}`: `{p.path}`" for p in projects)
            return "\n".join(lines)

        if isinstance(command, ClearSessionCommand):
            self.bot.executor.clear_session(chat_id, command.project_name)
            return f"Session cleared for `{command.project_name}`."

        if isinstance(command, ClearPermissionsCommand):
            self.bot.permission_store.clear_project(command.project_name)
            return f"Permissions cleared for `{command.project_name}`."

        if isinstance(command, ClearConversationCommand):
            self.bot.conversations.clear(chat_id)
            return "Conversation history cleared."

        msg = f"Unsupported command: {type(command).__name__}"
        raise ValueError(msg)


async def setup(bot: ButlerBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(MessageEventHandler(bot))
