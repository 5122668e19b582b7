"""Claude Code executor."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from digital_butler.application.models import (
    ClaudeCodePermissionRequest,
    ClaudeCodePermissionResponse,
    ClaudeCodeRequest,
    ClaudeCodeResponse,
    PermissionAnswer,
)
from digital_butler.application.permissions import PermissionDecision
from digital_butler.application.projects import ProjectNotFoundError
from digital_butler.infrastructure.agent_runtime import (
    AgentResult,
    AgentSessionStarted,
    AgentText,
    ToolPermission,
)
from digital_butler.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from digital_butler.application.permissions import PermissionStore
    from digital_butler.application.projects import Project, ProjectRegistry
    from digital_butler.infrastructure.agent_runtime import AgentRuntime
    from digital_butler.infrastructure.event_bus import EventBus

logger = get_logger(__name__)

UNAUTHORIZED_MESSAGE = "You are not authorized to use Claude Code features."
PREVIOUSLY_DENIED_MESSAGE = "This action was previously denied."
USER_DENIED_MESSAGE = "User denied permission."
EMPTY_RESULT_TEXT = "Done."

DEFAULT_PERMISSION_TIMEOUT = 300.0
DEFAULT_CHUNK_SIZE = 4000
DEFAULT_TOOLS = ("Read", "Edit", "Write", "Glob", "Grep", "Bash", "LSP")

# 応答なし・キャンセル時の暗黙の拒否（記憶しない）
_IMPLICIT_DENIAL = PermissionAnswer(approved=False, remember=False)


@dataclass
class _PendingPermission:
    """人間の判断待ちのパーミッション要求."""

    future: asyncio.Future[PermissionAnswer]
    # 要求元の ClaudeCodeRequest.id
    owner_request_id: str


class ClaudeCodeExecutor:
    """
    ClaudeCodeRequest ごとにコーディングエージェントを実行するExecutor.

    ツール呼び出しごとに PermissionStore を参照し、記憶がない場合は
    ClaudeCodePermissionRequest を発行して人間の応答
    （ClaudeCodePermissionResponse）を待つ。エージェントの出力は集約し、
    送信サイズに分割して ClaudeCodeResponse として発行する。
    """

    def __init__(
        self,
        bus: EventBus,
        registry: ProjectRegistry,
        permission_store: PermissionStore,
        runtime: AgentRuntime,
        *,
        tools: list[str] | None = None,
        permission_timeout: float = DEFAULT_PERMISSION_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Initialize ClaudeCodeExecutor.

        Args:
            bus: イベントバス
            registry: プロジェクトレジストリ
            permission_store: パーミッションストア
            runtime: エージェントランタイム
            tools: エージェントが利用できるツール
            permission_timeout: パーミッション応答待ちのタイムアウト（秒）
            chunk_size: 応答1件あたりの最大文字数
        """
        self._bus = bus
        self._registry = registry
        self._permission_store = permission_store
        self._runtime = runtime
        self._tools = list(tools) if tools is not None else list(DEFAULT_TOOLS)
        self._permission_timeout = permission_timeout
        self._chunk_size = chunk_size

        # パーミッション要求ID -> 応答待ち
        self._pending: dict[str, _PendingPermission] = {}
        # (chat_id, project_name) -> エージェントのセッションID
        self._sessions: dict[tuple[str, str], str] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    def start(self) -> None:
        """イベントバスの購読を開始する."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(ClaudeCodeRequest, self.execute_request),
            self._bus.subscribe(
                ClaudeCodePermissionResponse, self.handle_permission_response
            ),
        ]
        logger.info("Claude Code executor started")

    def close(self) -> None:
        """
        購読を解除し、応答待ちのパーミッション要求をすべて拒否として解決する.
        """
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        pending_count = len(self._pending)
        for permission_id in list(self._pending):
            self._resolve_pending(permission_id, _IMPLICIT_DENIAL)
        logger.info("Claude Code executor closed", denied_pending=pending_count)

    async def execute_request(self, request: ClaudeCodeRequest) -> None:
        """
        1件の ClaudeCodeRequest を処理する.

        認可・プロジェクト解決に失敗した場合は説明の応答を発行して終了する。
        実行中の例外は捕捉してエラー応答として発行する。

        Args:
            request: 実行要求
        """
        log = logger.bind(
            request_id=request.id,
            chat_id=request.chat_id,
            project_name=request.project_name,
        )

        if not self._registry.is_authorized_user(request.user_id):
            log.warning("Unauthorized Claude Code request", user_id=request.user_id)
            self._publish_response(request, UNAUTHORIZED_MESSAGE)
            return

        try:
            project = self._registry.resolve_project(request.project_name)
        except ProjectNotFoundError as e:
            log.info("Requested project not found")
            self._publish_response(request, self._format_project_not_found(e))
            return

        try:
            await self._run(request, project)
        except Exception as e:
            log.exception("Claude Code execution failed")
            self._deny_pending_for(request.id)
            self._publish_response(request, f"Error: {e}")

    async def _run(self, request: ClaudeCodeRequest, project: Project) -> None:
        """エージェントを実行し、出力を集約して発行する."""
        logger.info(
            "Executing Claude Code request",
            request_id=request.id,
            project_name=project.name,
            resume=request.session_id,
            prompt_preview=request.prompt[:50],
        )

        async def can_use_tool(
            tool_name: str, tool_input: dict[str, Any]
        ) -> ToolPermission:
            return await self.handle_permission(
                request.id, request.chat_id, project.name, tool_name, tool_input
            )

        current_session_id = request.session_id
        text_parts: list[str] = []

        events = self._runtime.run(
            prompt=request.prompt,
            cwd=project.path,
            resume=request.session_id,
            tools=list(self._tools),
            can_use_tool=can_use_tool,
        )
        async for event in events:
            if isinstance(event, AgentSessionStarted):
                current_session_id = event.session_id
                self._sessions[(request.chat_id, project.name)] = event.session_id
                logger.debug(
                    "Agent session started",
                    request_id=request.id,
                    session_id=event.session_id,
                )
            elif isinstance(event, AgentText):
                if event.text:
                    text_parts.append(event.text + "\n")
            elif isinstance(event, AgentResult):
                if event.is_error:
                    logger.warning(
                        "Agent run finished with error result",
                        request_id=request.id,
                    )
                final_text = "".join(text_parts).strip() or event.result
                self.send_chunked_response(
                    request.id,
                    request.chat_id,
                    final_text or EMPTY_RESULT_TEXT,
                    current_session_id,
                )

    async def handle_permission(
        self,
        request_id: str,
        chat_id: str,
        project_name: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ToolPermission:
        """
        ツール呼び出しの可否を判定する.

        記憶済みのルールがあればそれに従う。なければパーミッション要求を
        発行し、人間の応答またはタイムアウトまで待機する。

        Args:
            request_id: 要求元の ClaudeCodeRequest.id
            chat_id: チャットID
            project_name: プロジェクト名
            tool_name: ツール名
            tool_input: ツールの入力

        Returns:
            エージェントランタイムに返す判定
        """
        decision = self._permission_store.check_permission(
            project_name, tool_name, tool_input
        )
        if decision is PermissionDecision.ALLOWED:
            logger.info(
                "Permission cached: allow", project_name=project_name, tool=tool_name
            )
            return ToolPermission.allow(tool_input)
        if decision is PermissionDecision.DENIED:
            logger.info(
                "Permission cached: deny", project_name=project_name, tool=tool_name
            )
            return ToolPermission.deny(PREVIOUSLY_DENIED_MESSAGE)

        answer = await self._ask_human(
            request_id, chat_id, project_name, tool_name, tool_input
        )

        if answer.remember:
            try:
                self._permission_store.remember(
                    project_name, tool_name, tool_input, answer.approved
                )
            except OSError:
                logger.exception(
                    "Failed to remember permission decision (non-blocking)",
                    project_name=project_name,
                    tool=tool_name,
                )

        if answer.approved:
            return ToolPermission.allow(tool_input)
        return ToolPermission.deny(USER_DENIED_MESSAGE)

    async def _ask_human(
        self,
        request_id: str,
        chat_id: str,
        project_name: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> PermissionAnswer:
        """パーミッション要求を発行し、応答を待つ."""
        permission_id = self._new_permission_id()
        description = format_permission_description(tool_name, tool_input)
        future: asyncio.Future[PermissionAnswer] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[permission_id] = _PendingPermission(
            future=future, owner_request_id=request_id
        )

        logger.info(
            "Asking permission",
            permission_id=permission_id,
            request_id=request_id,
            description=description,
        )
        self._bus.publish(
            ClaudeCodePermissionRequest(
                request_id=permission_id,
                chat_id=chat_id,
                project_name=project_name,
                tool_name=tool_name,
                tool_input=tool_input,
                description=description,
            )
        )

        try:
            return await asyncio.wait_for(future, timeout=self._permission_timeout)
        except TimeoutError:
            logger.warning(
                "Permission request timed out, denying",
                permission_id=permission_id,
                timeout=self._permission_timeout,
            )
            return _IMPLICIT_DENIAL
        finally:
            self._pending.pop(permission_id, None)

    def handle_permission_response(
        self, response: ClaudeCodePermissionResponse
    ) -> None:
        """
        人間からのパーミッション応答を応答待ちの要求に渡す.

        解決済み・タイムアウト済みの要求IDは無視する。

        Args:
            response: パーミッション応答
        """
        answer = PermissionAnswer(
            approved=response.approved, remember=response.remember_choice
        )
        if not self._resolve_pending(response.request_id, answer):
            logger.debug(
                "Ignoring response for unknown permission request",
                permission_id=response.request_id,
            )
            return
        logger.info(
            "Permission answered",
            permission_id=response.request_id,
            approved=response.approved,
            remember=response.remember_choice,
        )

    def _resolve_pending(self, permission_id: str, answer: PermissionAnswer) -> bool:
        pending = self._pending.pop(permission_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(answer)
        return True

    def _deny_pending_for(self, request_id: str) -> None:
        """要求に紐づく応答待ちのパーミッション要求を拒否として解決する."""
        permission_ids = [
            pid
            for pid, pending in self._pending.items()
            if pending.owner_request_id == request_id
        ]
        for permission_id in permission_ids:
            self._resolve_pending(permission_id, _IMPLICIT_DENIAL)
        if permission_ids:
            logger.info(
                "Denied pending permissions of failed request",
                request_id=request_id,
                permission_ids=permission_ids,
            )

    def _new_permission_id(self) -> str:
        while True:
            permission_id = f"perm-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
            if permission_id not in self._pending:
                return permission_id

    def send_chunked_response(
        self,
        request_id: str,
        chat_id: str,
        text: str,
        session_id: str | None = None,
    ) -> None:
        """
        テキストを送信サイズに分割して ClaudeCodeResponse として発行する.

        複数に分割した場合は各チャンクに ``[Part i/N]`` を付け、
        セッションIDは最後のチャンクにのみ付与する。

        Args:
            request_id: 要求ID
            chat_id: チャットID
            text: 送信するテキスト
            session_id: 最後のチャンクに付与するセッションID
        """
        chunks = split_into_chunks(text, self._chunk_size)
        total = len(chunks)
        for i, chunk in enumerate(chunks, start=1):
            is_last = i == total
            prefix = f"[Part {i}/{total}]\n\n" if total > 1 else ""
            self._bus.publish(
                ClaudeCodeResponse(
                    request_id=request_id,
                    chat_id=chat_id,
                    text=prefix + chunk,
                    session_id=session_id if is_last else None,
                    is_partial=not is_last,
                )
            )

    def _publish_response(self, request: ClaudeCodeRequest, text: str) -> None:
        self._bus.publish(
            ClaudeCodeResponse(
                request_id=request.id, chat_id=request.chat_id, text=text
            )
        )

    def _format_project_not_found(self, error: ProjectNotFoundError) -> str:
        projects = self._registry.list_projects()
        if projects:
            project_list = "\n".join(f"- {p.name}" for p in projects)
        else:
            project_list = "No projects configured."
        return (
            f'Project "{error.project_name}" not found.\n\n'
            f"Available projects:\n{project_list}"
        )

    def get_active_session(self, chat_id: str, project_name: str) -> str | None:
        """チャットとプロジェクトに紐づくセッションIDを取得する."""
        return self._sessions.get((chat_id, project_name.lower()))

    def clear_session(self, chat_id: str, project_name: str) -> None:
        """
        チャットとプロジェクトに紐づくセッションを破棄する.

        実行中のエージェントは停止しない。次の要求から新しいセッションになる。
        """
        removed = self._sessions.pop((chat_id, project_name.lower()), None)
        logger.info(
            "Cleared session",
            chat_id=chat_id,
            project_name=project_name,
            had_session=removed is not None,
        )

    def pending_permission_count(self) -> int:
        """応答待ちのパーミッション要求数."""
        return len(self._pending)


def format_permission_description(tool_name: str, tool_input: dict[str, Any]) -> str:
    """
    パーミッション要求の説明文を作成する.

    Args:
        tool_name: ツール名
        tool_input: ツールの入力

    Returns:
        人間向けの説明文
    """
    file_path = tool_input.get("file_path")
    if tool_name == "Edit":
        return f"Edit file: {file_path}"
    if tool_name == "Write":
        return f"Create/overwrite file: {file_path}"
    if tool_name == "Bash":
        return f"Run command: {str(tool_input.get('command'))[:100]}"
    if tool_name == "Read":
        return f"Read file: {file_path}"
    return f"Use tool {tool_name}"


def split_into_chunks(text: str, max_size: int) -> list[str]:
    """
    テキストを max_size 以下のチャンクに分割する.

    max_size 以内の最後の改行が後半にあればそこで分割し（改行はチャンク側に
    残す）、なければ max_size で切る。チャンクを連結すると元のテキストになる。

    Args:
        text: 分割するテキスト
        max_size: 1チャンクの最大文字数

    Returns:
        チャンクのリスト（max_size 以下なら要素1つ）
    """
    if max_size <= 0:
        msg = f"max_size must be positive, got {max_size}"
        raise ValueError(msg)

    if len(text) <= max_size:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_size:
            chunks.append(remaining)
            break
        newline = remaining.rfind("\n", 0, max_size)
        split_at = newline + 1 if newline >= max_size // 2 else max_size
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:]
    return chunks
