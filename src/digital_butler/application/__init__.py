"""Application layer."""

from digital_butler.application.conversations import ConversationStore
from digital_butler.application.executor import ClaudeCodeExecutor
from digital_butler.application.parser import CommandParser
from digital_butler.application.permissions import (
    PermissionDecision,
    PermissionRule,
    PermissionStore,
)
from digital_butler.application.projects import (
    Project,
    ProjectNotFoundError,
    ProjectRegistry,
)

__all__ = [
    "ClaudeCodeExecutor",
    "CommandParser",
    "ConversationStore",
    "PermissionDecision",
    "PermissionRule",
    "PermissionStore",
    "Project",
    "ProjectNotFoundError",
    "ProjectRegistry",
]
