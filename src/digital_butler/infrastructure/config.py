"""Configuration management."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Claude Code に公開するツール（"allowed_tools" ではなく "tools" として渡す）
DEFAULT_AGENT_TOOLS = ["Read", "Edit", "Write", "Glob", "Grep", "Bash", "LSP"]


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Discord設定
    discord_bot_token: str = Field(
        ...,
        description="Discord Bot Token",
    )

    # 永続化ファイル
    projects_file: Path = Field(
        default=Path("data/claude-code-config.json"),
        description="プロジェクトレジストリのファイルパス",
    )
    permissions_file: Path = Field(
        default=Path("data/claude-code-permissions.json"),
        description="パーミッション記憶のファイルパス",
    )

    # Claude Code 実行設定
    permission_timeout: float = Field(
        default=300.0,
        gt=0,
        description="パーミッション要求への応答待ちタイムアウト（秒）",
    )
    response_chunk_size: int = Field(
        default=4000,
        gt=0,
        description="応答1件あたりの最大文字数",
    )
    agent_tools: list[str] = Field(
        default_factory=lambda: list(DEFAULT_AGENT_TOOLS),
        description="エージェントが利用できるツール",
    )

    # 会話履歴設定
    conversation_max_messages: int = Field(
        default=20,
        gt=0,
        description="チャットごとに保持するメッセージ数",
    )
    conversation_max_age: float = Field(
        default=3600.0,
        gt=0,
        description="会話履歴の有効期限（秒）",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(
        default=7,
        ge=0,
        description="ログローテーションの保持日数",
    )

    @field_validator("agent_tools", mode="before")
    @classmethod
    def parse_agent_tools(cls, v: str | list[str]) -> list[str]:
        """agent_toolsをパースする（JSON配列またはカンマ区切り文字列）."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return [str(t) for t in parsed]
            except json.JSONDecodeError:
                pass
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    @field_validator("projects_file", "permissions_file", mode="before")
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """文字列をPathに変換する."""
        if isinstance(v, str):
            return Path(v)
        return v


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
