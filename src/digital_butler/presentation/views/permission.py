"""Permission request UI components for Discord."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TYPE_CHECKING

import discord

from digital_butler.application.models import ClaudeCodePermissionResponse
from digital_butler.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from digital_butler.application.models import ClaudeCodePermissionRequest

logger = get_logger(__name__)

# Embed色定義
EMBED_COLOR_PERMISSION = 0xFFA500  # オレンジ

# Embedフィールドに表示する入力の最大文字数
_MAX_INPUT_DISPLAY = 400

ResponseCallback = Callable[[ClaudeCodePermissionResponse], None]


def build_permission_embed(request: ClaudeCodePermissionRequest) -> discord.Embed:
    """パーミッション要求のEmbedを構築する."""
    embed = discord.Embed(
        title=f"Permission: {request.description}",
        color=EMBED_COLOR_PERMISSION,
    )
    embed.add_field(name="Project", value=request.project_name, inline=True)
    embed.add_field(name="Tool", value=request.tool_name, inline=True)

    if request.tool_input:
        raw_input = json.dumps(request.tool_input, ensure_ascii=False, indent=2)
        # コードブロックで表示（長い場合は切り詰め）
        display_input = raw_input[:_MAX_INPUT_DISPLAY]
        if len(raw_input) > _MAX_INPUT_DISPLAY:
            display_input += "\n..."
        embed.add_field(name="Input", value=f"```\n{display_input}\n```", inline=False)

    embed.set_footer(text=request.request_id)
    return embed


class PermissionView(discord.ui.View):
    """パーミッション要求のボタンUI."""

    def __init__(
        self,
        request: ClaudeCodePermissionRequest,
        on_response: ResponseCallback,
        *,
        timeout: float = 300.0,
        is_authorized: Callable[[str], bool] | None = None,
    ) -> None:
        """
        Initialize PermissionView.

        Args:
            request: 表示するパーミッション要求
            on_response: ボタン押下時に応答を渡すコールバック
            timeout: ボタンの有効期限（秒）
            is_authorized: ボタンを押せるユーザーか判定する関数（未指定なら全員）
        """
        super().__init__(timeout=timeout)
        self._request = request
        self._on_response = on_response
        self._is_authorized = is_authorized
        self._answered = False

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        """認可ユーザー以外のボタン操作を拒否する."""
        if self._is_authorized is None:
            return True
        if self._is_authorized(str(interaction.user.id)):
            return True
        logger.warning(
            "Unauthorized user attempted to answer permission request",
            user_id=interaction.user.id,
            permission_id=self._request.request_id,
        )
        await interaction.response.send_message(
            "この操作は許可されていません。", ephemeral=True
        )
        return False

    def _respond(self, approved: bool, remember: bool) -> bool:
        """応答をコールバックに渡す（二重応答防止）.

        Returns:
            応答を渡した場合True、既に応答済みの場合False
        """
        if self._answered:
            return False
        self._answered = True
        self._on_response(
            ClaudeCodePermissionResponse(
                request_id=self._request.request_id,
                chat_id=self._request.chat_id,
                approved=approved,
                remember_choice=remember,
            )
        )
        return True

    async def _answer(
        self,
        interaction: discord.Interaction,
        *,
        approved: bool,
        remember: bool,
        content: str,
    ) -> None:
        if not self._respond(approved, remember):
            await interaction.response.send_message(
                "この要求には既に応答済みです。", ephemeral=True
            )
            return
        self.stop()
        await interaction.response.edit_message(content=content, view=None)

    @discord.ui.button(label="許可", style=discord.ButtonStyle.success)
    async def allow_once(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[PermissionView],
    ) -> None:
        """一回許可ボタン."""
        await self._answer(
            interaction, approved=True, remember=False, content="✅ 許可しました。"
        )

    @discord.ui.button(label="常に許可", style=discord.ButtonStyle.primary)
    async def allow_always(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[PermissionView],
    ) -> None:
        """常に許可ボタン（許可ルールとして記憶）."""
        await self._answer(
            interaction,
            approved=True,
            remember=True,
            content="✅ 常に許可しました。",
        )

    @discord.ui.button(label="拒否", style=discord.ButtonStyle.danger)
    async def deny_once(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[PermissionView],
    ) -> None:
        """一回拒否ボタン."""
        await self._answer(
            interaction, approved=False, remember=False, content="❌ 拒否しました。"
        )

    @discord.ui.button(label="常に拒否", style=discord.ButtonStyle.secondary)
    async def deny_always(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[PermissionView],
    ) -> None:
        """常に拒否ボタン（拒否ルールとして記憶）."""
        await self._answer(
            interaction,
            approved=False,
            remember=True,
            content="❌ 常に拒否しました。",
        )

    async def on_timeout(self) -> None:
        """タイムアウト時の処理（応答は送らない→Executor側のタイムアウトで拒否）."""
        logger.info(
            "Permission view timed out",
            permission_id=self._request.request_id,
        )
