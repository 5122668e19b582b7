"""Data models for cross-layer communication."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ClaudeCodeRequest:
    """Claude Code 実行要求（チャットアダプター → Executor）."""

    id: str
    chat_id: str
    user_id: str
    project_name: str
    prompt: str
    # 指定時は既存のエージェントセッションを再開する
    session_id: str | None = None


@dataclass(frozen=True)
class ClaudeCodeResponse:
    """Claude Code 応答（Executor → チャットアダプター）."""

    request_id: str
    chat_id: str
    text: str
    session_id: str | None = None
    is_partial: bool = False


@dataclass(frozen=True)
class ClaudeCodePermissionRequest:
    """パーミッション要求（Executor → チャットアダプター）."""

    request_id: str
    chat_id: str
    project_name: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class ClaudeCodePermissionResponse:
    """パーミッション応答（チャットアダプター → Executor）."""

    request_id: str
    chat_id: str
    approved: bool
    remember_choice: bool = False


@dataclass(frozen=True)
class PermissionAnswer:
    """人間によるパーミッション判断."""

    approved: bool
    remember: bool = False
