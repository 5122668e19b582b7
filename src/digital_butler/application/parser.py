"""Chat command parser."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from digital_butler.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from digital_butler.application.projects import ProjectRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClaudeCodeCommand:
    """プロジェクトに対して Claude Code を実行するコマンド."""

    project_name: str
    prompt: str


@dataclass(frozen=True)
class ListProjectsCommand:
    """プロジェクト一覧を表示するコマンド."""


@dataclass(frozen=True)
class ClearSessionCommand:
    """プロジェクトのエージェントセッションを破棄するコマンド."""

    project_name: str


@dataclass(frozen=True)
class ClearPermissionsCommand:
    """プロジェクトの記憶済みパーミッションを削除するコマンド."""

    project_name: str


@dataclass(frozen=True)
class ClearConversationCommand:
    """チャットの会話履歴を削除するコマンド."""


Command = (
    ClaudeCodeCommand
    | ListProjectsCommand
    | ClearSessionCommand
    | ClearPermissionsCommand
    | ClearConversationCommand
)

# 優先順位順（先にマッチしたものを採用）
_SHORTHAND_PATTERN = re.compile(r"^cc\s+(.+)$", re.IGNORECASE | re.DOTALL)
_LIST_PROJECTS = "/projects"
_CLEAR_SESSION_PATTERN = re.compile(r"^/code-clear\s+(\S+)$", re.IGNORECASE)
_CLEAR_PERMISSIONS_PATTERN = re.compile(
    r"^/code-permissions\s+(\S+)$", re.IGNORECASE
)
_CODE_PATTERN = re.compile(r"^/code\s+(\S+)\s+(.+)$", re.IGNORECASE | re.DOTALL)
_MENTION_PATTERN = re.compile(r"^@(\S+)\s+(.+)$", re.IGNORECASE | re.DOTALL)
_NATURAL_PATTERN = re.compile(r"^in\s+(\S+)[,:]\s*(.+)$", re.IGNORECASE | re.DOTALL)
_CLEAR_CONVERSATION = "/clear"


class CommandParser:
    """
    チャットのテキストを型付きコマンドに変換するパーサー.

    認識できない入力には None を返し、例外は送出しない。
    プロジェクト名は大文字小文字を区別せず、小文字に正規化する。
    """

    def __init__(self, registry: ProjectRegistry) -> None:
        """
        Initialize CommandParser.

        Args:
            registry: プロジェクト名の検証に使うレジストリ
        """
        self._registry = registry

    def parse(self, text: str) -> Command | None:
        """
        テキストをコマンドに変換する.

        Args:
            text: チャットメッセージのテキスト

        Returns:
            認識したコマンド。コマンドでない場合None
        """
        trimmed = text.strip()

        # cc <prompt> - 最初に登録されたプロジェクトを使う
        match = _SHORTHAND_PATTERN.match(trimmed)
        if match:
            projects = self._registry.list_projects()
            if projects:
                default_project = projects[0].name
                logger.debug(
                    "Shorthand command detected", project_name=default_project
                )
                return ClaudeCodeCommand(
                    project_name=default_project, prompt=match.group(1).strip()
                )

        if trimmed.lower() == _LIST_PROJECTS:
            return ListProjectsCommand()

        match = _CLEAR_SESSION_PATTERN.match(trimmed)
        if match:
            return ClearSessionCommand(project_name=match.group(1).lower())

        match = _CLEAR_PERMISSIONS_PATTERN.match(trimmed)
        if match:
            return ClearPermissionsCommand(project_name=match.group(1).lower())

        # 以下の形式はプロジェクトが存在しない場合は次の形式へフォールスルー
        for pattern in (_CODE_PATTERN, _MENTION_PATTERN, _NATURAL_PATTERN):
            command = self._match_project_command(pattern, trimmed)
            if command is not None:
                return command

        if trimmed.lower() == _CLEAR_CONVERSATION:
            return ClearConversationCommand()

        return None

    def _match_project_command(
        self, pattern: re.Pattern[str], text: str
    ) -> ClaudeCodeCommand | None:
        match = pattern.match(text)
        if not match:
            return None
        project_name = match.group(1).lower()
        exists = self._registry.project_exists(project_name)
        logger.debug(
            "Project command detected",
            project_name=project_name,
            exists=exists,
        )
        if not exists:
            return None
        return ClaudeCodeCommand(
            project_name=project_name, prompt=match.group(2).strip()
        )
