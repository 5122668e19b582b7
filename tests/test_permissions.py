"""Tests for the permission store."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from digital_butler.application.permissions import (
    PermissionDecision,
    PermissionRule,
    PermissionStore,
    glob_match,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def permissions_file(tmp_path: Path) -> Path:
    """テスト用のパーミッションファイルパスを返す."""
    return tmp_path / "data" / "claude-code-permissions.json"


def _write(path: Path, data: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestGlobMatch:
    """glob_match のテスト."""

    @pytest.mark.parametrize(
        ("path", "pattern"),
        [
            ("/srv/blog/posts/new.md", "/srv/blog/**/*.md"),
            ("/srv/blog/new.md", "/srv/blog/**/*.md"),
            ("/srv/blog/a/b/c/d.md", "/srv/blog/**/*.md"),
            ("/srv/blog/index.ts", "/srv/blog/*.ts"),
            ("/srv/blog/a.ts", "/srv/blog/?.ts"),
            ("/srv/blog/b.ts", "/srv/blog/[abc].ts"),
            ("/srv/blog/x.ts", "/srv/blog/[!abc].ts"),
            ("/srv/blog/README", "/srv/blog/README"),
            ("/srv/blog/a/b", "/srv/blog/**"),
        ],
    )
    def test_matches(self, path: str, pattern: str) -> None:
        """マッチするケース."""
        assert glob_match(path, pattern)

    @pytest.mark.parametrize(
        ("path", "pattern"),
        [
            ("/srv/blog/config.json", "/srv/blog/**/*.md"),
            ("/srv/other/new.md", "/srv/blog/**/*.md"),
            ("/srv/blog/posts/index.ts", "/srv/blog/*.ts"),
            ("/srv/blog/ab.ts", "/srv/blog/?.ts"),
            ("/srv/blog/a.ts", "/srv/blog/[!abc].ts"),
            ("/srv/blog/.hidden.md", "/srv/blog/**/*.md"),
            ("/srv/blog/.git/x.md", "/srv/blog/**/*.md"),
            ("/srv/blog/README.md", "/srv/blog/README"),
        ],
    )
    def test_does_not_match(self, path: str, pattern: str) -> None:
        """マッチしないケース."""
        assert not glob_match(path, pattern)

    def test_regex_metacharacters_are_literal(self) -> None:
        """正規表現のメタ文字がリテラルとして扱われることを確認する."""
        assert glob_match("/srv/a+b/(x).md", "/srv/a+b/(x).md")
        assert not glob_match("/srv/aab/x.md", "/srv/a+b/x.md")

    def test_closing_bracket_as_first_class_member(self) -> None:
        """文字クラス先頭の ] がリテラルとして扱われることを確認する."""
        assert glob_match("/a/x", "/a/[!]]")
        assert not glob_match("/a/]", "/a/[!]]")
        assert glob_match("/a/]", "/a/[]]")
        assert not glob_match("/a/x", "/a/[]]")
        assert glob_match("/a/]", "/a/[]a]")
        assert glob_match("/a/a", "/a/[]a]")


class TestMatchesRule:
    """matches_rule のテスト."""

    def test_tool_must_match(self) -> None:
        """ツール名が一致しないルールはマッチしないことを確認する."""
        rule = PermissionRule(tool="Edit")
        assert not PermissionStore.matches_rule(rule, "Write", {"file_path": "/a"})

    def test_blanket_rule(self) -> None:
        """条件なしのルールはツールのすべての呼び出しにマッチすることを確認する."""
        rule = PermissionRule(tool="Bash")
        assert PermissionStore.matches_rule(rule, "Bash", {"command": "rm -rf /"})
        assert PermissionStore.matches_rule(rule, "Bash", {})

    def test_pattern_rule(self) -> None:
        """patternルールはfile_pathのグロブで判定することを確認する."""
        rule = PermissionRule(tool="Edit", pattern="/srv/blog/**/*.md")
        assert PermissionStore.matches_rule(
            rule, "Edit", {"file_path": "/srv/blog/posts/new.md"}
        )
        assert not PermissionStore.matches_rule(
            rule, "Edit", {"file_path": "/srv/blog/config.json"}
        )

    def test_pattern_rule_without_file_path(self) -> None:
        """file_pathがない入力にはpatternルールはマッチしないことを確認する."""
        rule = PermissionRule(tool="Grep", pattern="/srv/**/*.md")
        assert not PermissionStore.matches_rule(rule, "Grep", {"pattern": "TODO"})

    def test_exact_command_rule(self) -> None:
        """commandルールは完全一致で判定することを確認する."""
        rule = PermissionRule(tool="Bash", command="npm test")
        assert PermissionStore.matches_rule(rule, "Bash", {"command": "npm test"})
        assert not PermissionStore.matches_rule(
            rule, "Bash", {"command": "npm test -- --watch"}
        )

    def test_command_pattern_rule(self) -> None:
        """commandPatternルールは正規表現で判定することを確認する."""
        rule = PermissionRule(tool="Bash", command_pattern=r"^git (status|diff)")
        assert PermissionStore.matches_rule(rule, "Bash", {"command": "git status -s"})
        assert not PermissionStore.matches_rule(rule, "Bash", {"command": "git push"})

    def test_invalid_command_pattern_never_matches(self) -> None:
        """不正な正規表現のルールはマッチしないことを確認する."""
        rule = PermissionRule(tool="Bash", command_pattern="(unclosed")
        assert not PermissionStore.matches_rule(rule, "Bash", {"command": "(unclosed"})


class TestCheckPermission:
    """check_permission のテスト."""

    def test_unknown_project_asks(self, permissions_file: Path) -> None:
        """記憶がないプロジェクトはASKになることを確認する."""
        store = PermissionStore(permissions_file)
        decision = store.check_permission("blog", "Edit", {"file_path": "/srv/a.md"})
        assert decision is PermissionDecision.ASK

    def test_allowed_rule_auto_approves(self, permissions_file: Path) -> None:
        """許可ルールにマッチするとALLOWEDになり、しないとASKになることを確認する."""
        _write(
            permissions_file,
            {
                "blog": {
                    "allowed": [{"tool": "Edit", "pattern": "/srv/blog/**/*.md"}],
                    "denied": [],
                }
            },
        )
        store = PermissionStore(permissions_file)

        assert (
            store.check_permission(
                "blog", "Edit", {"file_path": "/srv/blog/posts/new.md"}
            )
            is PermissionDecision.ALLOWED
        )
        assert (
            store.check_permission(
                "blog", "Edit", {"file_path": "/srv/blog/config.json"}
            )
            is PermissionDecision.ASK
        )

    def test_deny_takes_precedence(self, permissions_file: Path) -> None:
        """許可と拒否の両方にマッチする場合はDENIEDになることを確認する."""
        _write(
            permissions_file,
            {
                "blog": {
                    "allowed": [{"tool": "Bash"}],
                    "denied": [{"tool": "Bash", "commandPattern": "^rm "}],
                }
            },
        )
        store = PermissionStore(permissions_file)

        assert (
            store.check_permission("blog", "Bash", {"command": "rm -rf build"})
            is PermissionDecision.DENIED
        )
        assert (
            store.check_permission("blog", "Bash", {"command": "ls"})
            is PermissionDecision.ALLOWED
        )

    def test_rules_are_scoped_per_project(self, permissions_file: Path) -> None:
        """ルールはプロジェクトごとに独立していることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)

        assert (
            store.check_permission("notes", "Bash", {"command": "make"})
            is PermissionDecision.ASK
        )


class TestCreateRule:
    """create_rule のテスト."""

    def test_file_with_extension(self) -> None:
        """拡張子ありのパスはディレクトリ+拡張子のグロブになることを確認する."""
        rule = PermissionStore.create_rule(
            "Edit", {"file_path": "/srv/blog/posts/a.md"}
        )
        assert rule == PermissionRule(tool="Edit", pattern="/srv/blog/posts/**/*.md")

    def test_file_with_multiple_dots(self) -> None:
        """最後の拡張子が使われることを確認する."""
        rule = PermissionStore.create_rule("Write", {"file_path": "/srv/app.test.ts"})
        assert rule.pattern == "/srv/**/*.ts"

    def test_file_without_extension(self) -> None:
        """拡張子なしのパスは完全一致のパスになることを確認する."""
        rule = PermissionStore.create_rule("Edit", {"file_path": "/srv/blog/Makefile"})
        assert rule.pattern == "/srv/blog/Makefile"

    def test_bash_exact_command(self) -> None:
        """シェルコマンドは一般化せず完全一致で記憶することを確認する."""
        rule = PermissionStore.create_rule("Bash", {"command": "npm run build"})
        assert rule == PermissionRule(tool="Bash", command="npm run build")

    def test_other_tool_blanket(self) -> None:
        """file_pathもcommandもない入力はツール単位のルールになることを確認する."""
        rule = PermissionStore.create_rule("Grep", {"pattern": "TODO"})
        assert rule.is_blanket()


class TestRemember:
    """remember / clear_project のテスト."""

    def test_missing_file_initialized_empty(self, permissions_file: Path) -> None:
        """ファイルがない場合は空のJSONで初期化されることを確認する."""
        PermissionStore(permissions_file)
        assert json.loads(permissions_file.read_text(encoding="utf-8")) == {}

    def test_remember_generalizes_to_sibling_files(
        self, permissions_file: Path
    ) -> None:
        """記憶したルールが同じディレクトリ配下の同じ拡張子に適用されることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Edit", {"file_path": "/srv/blog/posts/a.md"}, True)

        assert (
            store.check_permission(
                "blog", "Edit", {"file_path": "/srv/blog/posts/2024/b.md"}
            )
            is PermissionDecision.ALLOWED
        )
        assert (
            store.check_permission("blog", "Edit", {"file_path": "/srv/blog/a.md"})
            is PermissionDecision.ASK
        )

    def test_remember_denial(self, permissions_file: Path) -> None:
        """拒否を記憶するとDENIEDになることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "git push"}, approved=False)

        assert (
            store.check_permission("blog", "Bash", {"command": "git push"})
            is PermissionDecision.DENIED
        )
        assert (
            store.check_permission("blog", "Bash", {"command": "git push --force"})
            is PermissionDecision.ASK
        )

    def test_remember_is_idempotent(self, permissions_file: Path) -> None:
        """同じ呼び出しを2回記憶してもルールは1つであることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)

        permissions = store.get_project_permissions("blog")
        assert permissions is not None
        assert len(permissions.allowed) == 1

    def test_remember_persists(self, permissions_file: Path) -> None:
        """記憶したルールがファイルに書き出され、再読み込みできることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Edit", {"file_path": "/srv/blog/a.md"}, True)
        store.remember("blog", "Bash", {"command": "rm -rf /"}, False)

        data = json.loads(permissions_file.read_text(encoding="utf-8"))
        assert data == {
            "blog": {
                "allowed": [{"tool": "Edit", "pattern": "/srv/blog/**/*.md"}],
                "denied": [{"tool": "Bash", "command": "rm -rf /"}],
            }
        }

        reloaded = PermissionStore(permissions_file)
        assert (
            reloaded.check_permission("blog", "Bash", {"command": "rm -rf /"})
            is PermissionDecision.DENIED
        )

    def test_command_pattern_roundtrip(self, permissions_file: Path) -> None:
        """commandPatternキーがそのまま保存されることを確認する."""
        _write(
            permissions_file,
            {
                "blog": {
                    "allowed": [{"tool": "Bash", "commandPattern": "^npm "}],
                    "denied": [],
                }
            },
        )
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)

        data = json.loads(permissions_file.read_text(encoding="utf-8"))
        assert data["blog"]["allowed"][0] == {"tool": "Bash", "commandPattern": "^npm "}

    def test_clear_project(self, permissions_file: Path) -> None:
        """clear_projectでプロジェクトのルールが削除されることを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)
        store.remember("notes", "Bash", {"command": "make"}, approved=True)

        store.clear_project("blog")

        assert store.get_project_permissions("blog") is None
        assert store.get_project_permissions("notes") is not None
        data = json.loads(permissions_file.read_text(encoding="utf-8"))
        assert list(data) == ["notes"]

    def test_get_project_permissions_returns_copy(self, permissions_file: Path) -> None:
        """返されたルールリストを変更してもストアに影響しないことを確認する."""
        store = PermissionStore(permissions_file)
        store.remember("blog", "Bash", {"command": "make"}, approved=True)

        permissions = store.get_project_permissions("blog")
        assert permissions is not None
        permissions.allowed.clear()

        assert (
            store.check_permission("blog", "Bash", {"command": "make"})
            is PermissionDecision.ALLOWED
        )

    def test_malformed_file_propagates(self, permissions_file: Path) -> None:
        """不正なJSONは例外として伝播することを確認する."""
        permissions_file.parent.mkdir(parents=True)
        permissions_file.write_text("[", encoding="utf-8")

        with pytest.raises(json.JSONDecodeError):
            PermissionStore(permissions_file)
