"""Agent runtime - Claude Agent SDK wrapper."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    query,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from digital_butler.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from claude_agent_sdk.types import ToolPermissionContext

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentSessionStarted:
    """エージェントがセッションIDを発行した."""

    session_id: str


@dataclass(frozen=True)
class AgentText:
    """アシスタントが出力したテキスト断片."""

    text: str


@dataclass(frozen=True)
class AgentResult:
    """エージェント実行の終端イベント."""

    result: str | None = None
    session_id: str | None = None
    is_error: bool = False


AgentEvent = AgentSessionStarted | AgentText | AgentResult


@dataclass(frozen=True)
class ToolPermission:
    """ツール呼び出しに対する許可/拒否の判定."""

    allowed: bool
    updated_input: dict[str, Any] | None = None
    message: str = ""

    @classmethod
    def allow(cls, tool_input: dict[str, Any]) -> ToolPermission:
        """入力をそのまま通して許可する."""
        return cls(allowed=True, updated_input=tool_input)

    @classmethod
    def deny(cls, message: str) -> ToolPermission:
        """理由付きで拒否する."""
        return cls(allowed=False, message=message)


# (tool_name, tool_input) -> ToolPermission
PermissionCallback = Callable[[str, dict[str, Any]], Awaitable[ToolPermission]]


class AgentRuntime(Protocol):
    """コーディングエージェントの実行能力."""

    def run(
        self,
        *,
        prompt: str,
        cwd: str,
        resume: str | None,
        tools: list[str],
        can_use_tool: PermissionCallback,
    ) -> AsyncIterator[AgentEvent]:
        """エージェントを実行し、イベントを到着順に返す."""
        ...


class ClaudeAgentRuntime:
    """Claude Agent SDK の query() を AgentRuntime として提供するクラス."""

    def __init__(self, permission_mode: str = "default") -> None:
        """
        Initialize ClaudeAgentRuntime.

        Args:
            permission_mode: Claude Code のパーミッションモード
        """
        self.permission_mode = permission_mode

    async def run(
        self,
        *,
        prompt: str,
        cwd: str,
        resume: str | None,
        tools: list[str],
        can_use_tool: PermissionCallback,
    ) -> AsyncIterator[AgentEvent]:
        """
        エージェントを実行し、SDKのメッセージを AgentEvent に変換して返す.

        Args:
            prompt: ユーザーのプロンプト
            cwd: 作業ディレクトリ（プロジェクトのルート）
            resume: 再開するセッションID（新規の場合None）
            tools: エージェントが利用できるツール
            can_use_tool: ツール使用前に呼ばれるパーミッションコールバック

        Yields:
            AgentSessionStarted / AgentText / AgentResult
        """
        options = ClaudeAgentOptions(
            cwd=cwd,
            resume=resume,
            # allowed_tools は自動承認になるため tools で公開範囲のみ指定する
            tools=tools,
            permission_mode=self.permission_mode,
            can_use_tool=_wrap_permission_callback(can_use_tool),
        )

        logger.info(
            "Starting agent run",
            cwd=cwd,
            resume=resume,
            tools=tools,
            prompt_preview=prompt[:50],
        )

        async for message in query(prompt=_prompt_stream(prompt), options=options):
            for event in _to_agent_events(message):
                yield event


async def _prompt_stream(prompt: str) -> AsyncIterator[dict[str, Any]]:
    """プロンプトを1メッセージのストリームとして渡す.

    can_use_tool を使う場合、SDK はストリーミング入力を要求する。
    """
    yield {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
    }


def _wrap_permission_callback(
    callback: PermissionCallback,
) -> Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResultAllow | PermissionResultDeny],
]:
    """PermissionCallback を SDK の can_use_tool シグネチャに変換する."""

    async def can_use_tool(
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        verdict = await callback(tool_name, tool_input)
        if verdict.allowed:
            return PermissionResultAllow(updated_input=verdict.updated_input)
        return PermissionResultDeny(message=verdict.message)

    return can_use_tool


def _to_agent_events(message: object) -> list[AgentEvent]:
    """SDKメッセージを AgentEvent のリストに変換する（対象外は空リスト）.

    AssistantMessage はテキストブロックごとに1つの AgentText になる。
    """
    if isinstance(message, SystemMessage):
        session_id = message.data.get("session_id")
        if message.subtype == "init" and session_id:
            return [AgentSessionStarted(session_id=str(session_id))]
        return []

    if isinstance(message, AssistantMessage):
        return [
            AgentText(text=block.text)
            for block in message.content
            if isinstance(block, TextBlock)
        ]

    if isinstance(message, ResultMessage):
        return [
            AgentResult(
                result=message.result,
                session_id=message.session_id,
                is_error=message.is_error,
            )
        ]

    return []
