"""Tests for the Claude Agent SDK runtime adapter."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import patch

import pytest
from claude_agent_sdk.types import (
    AssistantMessage,
    ClaudeAgentOptions,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolPermissionContext,
    ToolUseBlock,
    UserMessage,
)

from digital_butler.infrastructure.agent_runtime import (
    AgentResult,
    AgentSessionStarted,
    AgentText,
    ClaudeAgentRuntime,
    ToolPermission,
    _to_agent_events,
    _wrap_permission_callback,
)


def _result_message(
    result: str | None = "done", *, is_error: bool = False
) -> ResultMessage:
    return ResultMessage(
        subtype="success",
        duration_ms=10,
        duration_api_ms=8,
        is_error=is_error,
        num_turns=1,
        session_id="sess-1",
        result=result,
    )


async def _deny_all(tool_name: str, tool_input: dict[str, Any]) -> ToolPermission:
    return ToolPermission.deny("no")


class TestToAgentEvents:
    """SDKメッセージの変換テスト."""

    def test_system_init(self) -> None:
        """initメッセージがセッション開始イベントになることを確認する."""
        message = SystemMessage(
            subtype="init", data={"type": "system", "session_id": "sess-1"}
        )
        assert _to_agent_events(message) == [AgentSessionStarted(session_id="sess-1")]

    def test_system_other_subtype_ignored(self) -> None:
        """init以外のシステムメッセージは無視されることを確認する."""
        message = SystemMessage(subtype="compact_boundary", data={"session_id": "x"})
        assert _to_agent_events(message) == []

    def test_system_init_without_session_ignored(self) -> None:
        """セッションIDのないinitメッセージは無視されることを確認する."""
        assert _to_agent_events(SystemMessage(subtype="init", data={})) == []

    def test_assistant_text_blocks(self) -> None:
        """テキストブロックごとにAgentTextになり、他のブロックは無視されることを確認する."""
        message = AssistantMessage(
            content=[
                TextBlock(text="first"),
                ToolUseBlock(id="tool-1", name="Read", input={"file_path": "a"}),
                TextBlock(text="second"),
            ],
            model="claude",
        )
        assert _to_agent_events(message) == [
            AgentText(text="first"),
            AgentText(text="second"),
        ]

    def test_result(self) -> None:
        """結果メッセージがAgentResultになることを確認する."""
        assert _to_agent_events(_result_message("all good", is_error=True)) == [
            AgentResult(result="all good", session_id="sess-1", is_error=True)
        ]

    def test_other_messages_ignored(self) -> None:
        """対象外のメッセージは無視されることを確認する."""
        assert _to_agent_events(UserMessage(content="hi")) == []


class TestPermissionCallback:
    """パーミッションコールバックの変換テスト."""

    @pytest.mark.asyncio
    async def test_allow(self) -> None:
        """許可がPermissionResultAllowになることを確認する."""

        async def allow(tool_name: str, tool_input: dict[str, Any]) -> ToolPermission:
            return ToolPermission.allow(tool_input)

        result = await _wrap_permission_callback(allow)(
            "Edit", {"file_path": "a.md"}, ToolPermissionContext()
        )

        assert isinstance(result, PermissionResultAllow)
        assert result.updated_input == {"file_path": "a.md"}

    @pytest.mark.asyncio
    async def test_deny(self) -> None:
        """拒否がメッセージ付きのPermissionResultDenyになることを確認する."""
        result = await _wrap_permission_callback(_deny_all)(
            "Bash", {"command": "rm -rf /"}, ToolPermissionContext()
        )

        assert isinstance(result, PermissionResultDeny)
        assert result.message == "no"


class TestClaudeAgentRuntime:
    """ClaudeAgentRuntime.run のテスト."""

    @pytest.mark.asyncio
    async def test_run(self) -> None:
        """queryの呼び出しとイベントへの変換を確認する."""
        captured: dict[str, Any] = {}

        async def fake_query(
            *, prompt: AsyncIterator[dict[str, Any]], options: ClaudeAgentOptions
        ) -> AsyncIterator[object]:
            captured["prompt"] = [message async for message in prompt]
            captured["options"] = options
            yield SystemMessage(subtype="init", data={"session_id": "sess-1"})
            yield AssistantMessage(content=[TextBlock(text="hello")], model="claude")
            yield _result_message()

        runtime = ClaudeAgentRuntime()
        with patch("digital_butler.infrastructure.agent_runtime.query", fake_query):
            events = [
                event
                async for event in runtime.run(
                    prompt="fix the build",
                    cwd="/srv/blog",
                    resume="sess-0",
                    tools=["Read", "Bash"],
                    can_use_tool=_deny_all,
                )
            ]

        assert events == [
            AgentSessionStarted(session_id="sess-1"),
            AgentText(text="hello"),
            AgentResult(result="done", session_id="sess-1"),
        ]
        assert captured["prompt"] == [
            {
                "type": "user",
                "message": {"role": "user", "content": "fix the build"},
                "parent_tool_use_id": None,
            }
        ]
        options = captured["options"]
        assert options.cwd == "/srv/blog"
        assert options.resume == "sess-0"
        assert options.tools == ["Read", "Bash"]
        assert options.permission_mode == "default"
        assert options.can_use_tool is not None

    @pytest.mark.asyncio
    async def test_run_propagates_errors(self) -> None:
        """SDKの例外がそのまま伝播することを確認する."""

        async def failing_query(**kwargs: Any) -> AsyncIterator[object]:
            yield SystemMessage(subtype="init", data={"session_id": "sess-1"})
            raise RuntimeError("CLI exited")

        runtime = ClaudeAgentRuntime(permission_mode="acceptEdits")
        received: list[object] = []
        with (
            patch("digital_butler.infrastructure.agent_runtime.query", failing_query),
            pytest.raises(RuntimeError, match="CLI exited"),
        ):
            async for event in runtime.run(
                prompt="p",
                cwd="/tmp",
                resume=None,
                tools=[],
                can_use_tool=_deny_all,
            ):
                received.append(event)

        assert received == [AgentSessionStarted(session_id="sess-1")]
