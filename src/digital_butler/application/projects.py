"""Project registry."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from digital_butler.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Project(BaseModel):
    """プロジェクト情報."""

    name: str
    path: str


class ProjectNotFoundError(Exception):
    """指定されたプロジェクトが見つからない場合の例外."""

    def __init__(self, project_name: str) -> None:
        """
        Initialize ProjectNotFoundError.

        Args:
            project_name: 見つからなかったプロジェクト名
        """
        super().__init__(f'Project "{project_name}" not found')
        self.project_name = project_name


class RegistryFile(BaseModel):
    """プロジェクトレジストリの永続化フォーマット."""

    model_config = ConfigDict(populate_by_name=True)

    allowed_user_id: str = Field(default="", alias="allowedUserId")
    projects: dict[str, str] = Field(default_factory=dict)


class ProjectRegistry:
    """
    プロジェクト名とファイルシステム上のパス、認可ユーザーを管理するレジストリ.

    初回アクセス時にファイルから読み込む。ファイルが存在しない場合は
    空の設定（認可ユーザーなし・プロジェクトなし）で初期化して書き出す。
    """

    def __init__(self, config_file: Path) -> None:
        """
        Initialize ProjectRegistry.

        Args:
            config_file: レジストリのJSONファイルパス
        """
        self._config_file = config_file
        self._allowed_user_id = ""
        # 小文字のプロジェクト名 -> Project（挿入順を保持）
        self._projects: dict[str, Project] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.reload()

    def reload(self) -> None:
        """
        バックエンドのファイルを再読み込みする.

        Raises:
            json.JSONDecodeError: ファイルがJSONとして不正な場合
            pydantic.ValidationError: ファイルの構造が不正な場合
        """
        if not self._config_file.exists():
            data = RegistryFile()
            self._write_defaults(data)
        else:
            raw = json.loads(self._config_file.read_text(encoding="utf-8"))
            data = RegistryFile.model_validate(raw)

        projects: dict[str, Project] = {}
        for name, path in data.projects.items():
            key = name.lower()
            if key in projects:
                logger.warning(
                    "Ignoring duplicate project name",
                    project_name=name,
                    existing_path=projects[key].path,
                    ignored_path=path,
                )
                continue
            projects[key] = Project(name=key, path=path)

        self._allowed_user_id = data.allowed_user_id
        self._projects = projects
        self._loaded = True

        logger.info(
            "Loaded project registry",
            config_file=str(self._config_file),
            project_count=len(projects),
            has_allowed_user=bool(data.allowed_user_id),
        )

    def _write_defaults(self, data: RegistryFile) -> None:
        """デフォルト設定をファイルに書き出す."""
        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        self._config_file.write_text(
            json.dumps(data.model_dump(by_alias=True), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        logger.info(
            "Created default project registry", config_file=str(self._config_file)
        )

    def is_authorized_user(self, user_id: str) -> bool:
        """
        ユーザーがClaude Code機能の利用を認可されているか判定する.

        Args:
            user_id: ユーザーID

        Returns:
            認可ユーザーと完全一致する場合True（未設定の場合は常にFalse）
        """
        self._ensure_loaded()
        if not self._allowed_user_id:
            return False
        return str(user_id) == self._allowed_user_id

    def get_project(self, name: str) -> str | None:
        """
        プロジェクトのパスを取得する.

        Args:
            name: プロジェクト名（大文字小文字を区別しない）

        Returns:
            プロジェクトのパス。存在しない場合None
        """
        self._ensure_loaded()
        project = self._projects.get(name.lower())
        return project.path if project is not None else None

    def resolve_project(self, name: str) -> Project:
        """
        プロジェクトを取得する.

        Args:
            name: プロジェクト名（大文字小文字を区別しない）

        Returns:
            該当するプロジェクト

        Raises:
            ProjectNotFoundError: プロジェクトが登録されていない場合
        """
        self._ensure_loaded()
        project = self._projects.get(name.lower())
        if project is None:
            raise ProjectNotFoundError(name)
        return project

    def list_projects(self) -> list[Project]:
        """
        登録されているプロジェクト一覧を取得する.

        Returns:
            プロジェクト一覧（登録順）
        """
        self._ensure_loaded()
        return list(self._projects.values())

    def project_exists(self, name: str) -> bool:
        """プロジェクトが登録されているか判定する."""
        self._ensure_loaded()
        return name.lower() in self._projects
