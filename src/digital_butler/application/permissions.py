"""Per-project tool permission memory."""

from __future__ import annotations

import json
import re
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from digital_butler.infrastructure.logging import get_logger

logger = get_logger(__name__)

# シェル実行ツール名（command 入力を持つ）
SHELL_TOOL = "Bash"


class PermissionDecision(str, Enum):
    """パーミッション判定結果."""

    ALLOWED = "allowed"
    DENIED = "denied"
    ASK = "ask"


class PermissionRule(BaseModel):
    """
    ツール呼び出しに対する許可/拒否ルール.

    pattern / command / command_pattern のいずれも持たないルールは
    そのツールのすべての呼び出しにマッチする。
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tool: str
    pattern: str | None = None
    command: str | None = None
    command_pattern: str | None = Field(default=None, alias="commandPattern")

    def is_blanket(self) -> bool:
        """ツール単位の包括ルールかどうか."""
        return not self.pattern and not self.command and not self.command_pattern


class ProjectPermissions(BaseModel):
    """プロジェクトごとのルールリスト."""

    allowed: list[PermissionRule] = Field(default_factory=list)
    denied: list[PermissionRule] = Field(default_factory=list)


_MemoryAdapter = TypeAdapter(dict[str, ProjectPermissions])


class PermissionStore:
    """
    プロジェクトごとの許可/拒否ルールを永続化し、ツール呼び出しを判定するストア.

    判定は拒否ルールを先に評価するため、許可と拒否の両方にマッチした場合は
    常に拒否となる。ルールの追加・削除は即座にファイルへ書き出す。
    """

    def __init__(self, permissions_file: Path) -> None:
        """
        Initialize PermissionStore.

        Args:
            permissions_file: パーミッション記憶のJSONファイルパス

        Raises:
            json.JSONDecodeError: ファイルがJSONとして不正な場合
            pydantic.ValidationError: ファイルの構造が不正な場合
        """
        self._permissions_file = permissions_file
        self._memory: dict[str, ProjectPermissions] = self._load()

    def _load(self) -> dict[str, ProjectPermissions]:
        if not self._permissions_file.exists():
            self._permissions_file.parent.mkdir(parents=True, exist_ok=True)
            self._permissions_file.write_text("{}", encoding="utf-8")
            logger.info(
                "Created empty permission memory",
                permissions_file=str(self._permissions_file),
            )
            return {}

        raw = json.loads(self._permissions_file.read_text(encoding="utf-8"))
        memory = _MemoryAdapter.validate_python(raw)
        logger.info(
            "Loaded permission memory",
            permissions_file=str(self._permissions_file),
            project_count=len(memory),
        )
        return memory

    def _save(self) -> None:
        data = {
            name: perms.model_dump(by_alias=True, exclude_none=True)
            for name, perms in self._memory.items()
        }
        self._permissions_file.parent.mkdir(parents=True, exist_ok=True)
        self._permissions_file.write_text(
            json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    def check_permission(
        self, project_name: str, tool_name: str, tool_input: dict[str, Any]
    ) -> PermissionDecision:
        """
        ツール呼び出しを記憶済みのルールで判定する.

        Args:
            project_name: プロジェクト名
            tool_name: ツール名
            tool_input: ツールの入力

        Returns:
            拒否ルールにマッチすればDENIED、許可ルールにマッチすればALLOWED、
            どちらにもマッチしなければASK
        """
        permissions = self._memory.get(project_name)
        if permissions is None:
            return PermissionDecision.ASK

        for rule in permissions.denied:
            if self.matches_rule(rule, tool_name, tool_input):
                return PermissionDecision.DENIED

        for rule in permissions.allowed:
            if self.matches_rule(rule, tool_name, tool_input):
                return PermissionDecision.ALLOWED

        return PermissionDecision.ASK

    @staticmethod
    def matches_rule(
        rule: PermissionRule, tool_name: str, tool_input: dict[str, Any]
    ) -> bool:
        """
        ルールがツール呼び出しにマッチするか判定する.

        Args:
            rule: 判定するルール
            tool_name: ツール名
            tool_input: ツールの入力

        Returns:
            マッチする場合True
        """
        if rule.tool != tool_name:
            return False

        # ファイル操作はファイルパスのグロブで判定
        if rule.pattern and "file_path" in tool_input:
            return glob_match(str(tool_input["file_path"]), rule.pattern)

        if tool_name == SHELL_TOOL and tool_input.get("command"):
            command = str(tool_input["command"])
            if rule.command and command == rule.command:
                return True
            if rule.command_pattern and _search_command(rule.command_pattern, command):
                return True

        return rule.is_blanket()

    def remember(
        self,
        project_name: str,
        tool_name: str,
        tool_input: dict[str, Any],
        approved: bool,
    ) -> None:
        """
        ツール呼び出しからルールを生成して記憶する.

        同じ (tool, pattern, command) のルールが既にある場合は何もしない。

        Args:
            project_name: プロジェクト名
            tool_name: ツール名
            tool_input: ツールの入力
            approved: 許可ルールとして記憶する場合True、拒否ルールの場合False
        """
        permissions = self._memory.setdefault(project_name, ProjectPermissions())
        rule = self.create_rule(tool_name, tool_input)
        rules = permissions.allowed if approved else permissions.denied

        exists = any(
            r.tool == rule.tool
            and r.pattern == rule.pattern
            and r.command == rule.command
            for r in rules
        )
        if exists:
            logger.debug(
                "Permission rule already remembered",
                project_name=project_name,
                rule=rule.model_dump(by_alias=True, exclude_none=True),
            )
            return

        rules.append(rule)
        self._save()
        logger.info(
            "Remembered permission rule",
            project_name=project_name,
            approved=approved,
            rule=rule.model_dump(by_alias=True, exclude_none=True),
        )

    @staticmethod
    def create_rule(tool_name: str, tool_input: dict[str, Any]) -> PermissionRule:
        """
        ツール呼び出しからルールを生成する.

        ファイルパスは「同じディレクトリ配下の同じ拡張子」へ一般化する
        （拡張子がない場合は完全一致のパス）。シェルコマンドは一般化せず
        完全一致で記憶する。

        Args:
            tool_name: ツール名
            tool_input: ツールの入力

        Returns:
            生成したルール
        """
        pattern: str | None = None
        command: str | None = None

        if "file_path" in tool_input:
            path = str(tool_input["file_path"])
            directory, _, filename = path.rpartition("/")
            ext = filename.rsplit(".", 1)[1] if "." in filename else ""
            pattern = f"{directory}/**/*.{ext}" if ext else path

        if tool_name == SHELL_TOOL and tool_input.get("command"):
            command = str(tool_input["command"])

        return PermissionRule(tool=tool_name, pattern=pattern, command=command)

    def clear_project(self, project_name: str) -> None:
        """プロジェクトのルールをすべて削除する."""
        removed = self._memory.pop(project_name, None)
        self._save()
        logger.info(
            "Cleared project permissions",
            project_name=project_name,
            had_rules=removed is not None,
        )

    def get_project_permissions(self, project_name: str) -> ProjectPermissions | None:
        """
        プロジェクトのルールリストを取得する.

        Returns:
            ルールリストのコピー。記憶がない場合None
        """
        permissions = self._memory.get(project_name)
        if permissions is None:
            return None
        return permissions.model_copy(deep=True)


def _search_command(command_pattern: str, command: str) -> bool:
    try:
        return re.search(command_pattern, command) is not None
    except re.error:
        logger.warning(
            "Invalid commandPattern in permission rule", pattern=command_pattern
        )
        return False


def glob_match(path: str, pattern: str) -> bool:
    """
    パスがグロブパターンにマッチするか判定する.

    ``*`` と ``?`` は ``/`` を跨がない。セグメント全体が ``**`` の場合は
    0個以上のディレクトリにマッチする。``.`` で始まるセグメントには
    ワイルドカードはマッチしない（パターン側で明示した場合のみ）。

    Args:
        path: 判定するパス
        pattern: グロブパターン

    Returns:
        マッチする場合True
    """
    return _compile_glob(pattern).fullmatch(path) is not None


# 0個以上のディレクトリ（ドットで始まらないもの）
_GLOBSTAR_DIRS = r"(?:(?!\.)[^/]*/)*"
# 末尾の ** は残りすべて（ドットで始まるセグメントを除く）
_GLOBSTAR_TAIL = r"(?:(?!\.)[^/]*(?:/(?!\.)[^/]*)*)?"


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    segments = pattern.split("/")
    parts: list[str] = []
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == "**":
            parts.append(_GLOBSTAR_TAIL if last else _GLOBSTAR_DIRS)
            continue
        parts.append(_translate_segment(segment))
        if not last:
            parts.append("/")
    return re.compile("".join(parts))


def _translate_segment(segment: str) -> str:
    """パスセグメント1つ分のグロブを正規表現に変換する."""
    out: list[str] = []
    if segment[:1] in ("*", "?", "["):
        out.append(r"(?!\.)")

    i = 0
    n = len(segment)
    while i < n:
        c = segment[i]
        i += 1
        if c == "*":
            # 連続する * は1つとして扱う
            while i < n and segment[i] == "*":
                i += 1
            out.append(r"[^/]*")
        elif c == "?":
            out.append(r"[^/]")
        elif c == "[":
            j = i
            if j < n and segment[j] in ("!", "^"):
                j += 1
            if j < n and segment[j] == "]":
                j += 1
            j = segment.find("]", j)
            if j == -1:
                out.append(re.escape(c))
                continue
            body = segment[i:j]
            i = j + 1
            negated = body[:1] in ("!", "^")
            if negated:
                body = body[1:]
            # クラス内の ] と [ はリテラルとして扱う
            body = body.replace("\\", "\\\\").replace("]", "\\]").replace("[", "\\[")
            out.append(f"[^/{body}]" if negated else f"[{body}]")
        else:
            out.append(re.escape(c))
    return "".join(out)
