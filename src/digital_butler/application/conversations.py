"""In-memory conversation history."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

DEFAULT_MAX_MESSAGES = 20
DEFAULT_MAX_AGE = 60 * 60.0

Message = dict[str, str]


@dataclass
class _Conversation:
    messages: list[Message] = field(default_factory=list)
    last_updated: float = field(default_factory=time.monotonic)


class ConversationStore:
    """
    チャットごとの会話履歴.

    最新 max_messages 件のみ保持し、最終更新から max_age 秒を過ぎた履歴は
    破棄する。履歴は常に user メッセージから始まる。
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_age: float = DEFAULT_MAX_AGE,
    ) -> None:
        """
        Initialize ConversationStore.

        Args:
            max_messages: チャットごとに保持するメッセージ数
            max_age: 履歴の有効期限（秒）
        """
        self._max_messages = max_messages
        self._max_age = max_age
        self._conversations: dict[str, _Conversation] = {}

    def get_history(self, chat_id: str) -> list[Message]:
        """
        会話履歴を取得する.

        Returns:
            メッセージのリスト（期限切れ・未作成の場合は空リスト）
        """
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            return []

        if time.monotonic() - conversation.last_updated > self._max_age:
            del self._conversations[chat_id]
            return []

        return list(conversation.messages)

    def add_user_message(self, chat_id: str, content: str) -> None:
        """ユーザーのメッセージを追加する."""
        self._append(chat_id, {"role": "user", "content": content})

    def add_assistant_message(self, chat_id: str, content: str) -> None:
        """アシスタントのメッセージを追加する."""
        self._append(chat_id, {"role": "assistant", "content": content})

    def set_messages(self, chat_id: str, messages: list[Message]) -> None:
        """履歴全体を置き換える."""
        conversation = self._conversations.setdefault(chat_id, _Conversation())
        conversation.messages = list(messages)
        conversation.last_updated = time.monotonic()
        self._truncate(conversation)

    def clear(self, chat_id: str) -> None:
        """チャットの履歴を削除する."""
        self._conversations.pop(chat_id, None)

    def clear_all(self) -> None:
        """すべての履歴を削除する."""
        self._conversations.clear()

    def _append(self, chat_id: str, message: Message) -> None:
        conversation = self._conversations.setdefault(chat_id, _Conversation())
        conversation.messages.append(message)
        conversation.last_updated = time.monotonic()
        self._truncate(conversation)

    def _truncate(self, conversation: _Conversation) -> None:
        if len(conversation.messages) <= self._max_messages:
            return
        messages = conversation.messages[-self._max_messages :]
        # 先頭は user メッセージにする
        while messages and messages[0].get("role") != "user":
            messages.pop(0)
        conversation.messages = messages
