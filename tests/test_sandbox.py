"""Tests for the local tool sandbox."""

import asyncio
import os
import shutil
import subprocess
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pondcode.sandbox as sandbox_module
from pondcode.sandbox import (
    TOOL_NAMES,
    ToolSandbox,
    clear_allowed_tools_cache,
    parse_patch_paths,
    unified_diff,
)

HAS_GIT = shutil.which("git") is not None
needs_git = pytest.mark.skipif(not HAS_GIT, reason="git not available")


class FakeApi:
    def __init__(self, tools=TOOL_NAMES, fail_manifest=False):
        self.base_url = "http://fake"
        self.tools = list(tools)
        self.fail_manifest = fail_manifest
        self.manifest_calls = 0
        self.commits = []
        self.deployments = []

    async def fetch_tool_manifest(self):
        self.manifest_calls += 1
        if self.fail_manifest:
            raise RuntimeError("manifest unavailable")
        return {"tools": [{"function": {"name": n}} for n in self.tools]}

    async def commit_files(self, app_id, files, message):
        self.commits.append((app_id, files, message))
        return {"commitSha": "sha-1"}

    async def deploy_app(self, app_id, environment="production", commit_sha=None):
        self.deployments.append(app_id)
        return {"deploymentId": "dep-1"}


class RecordingIntel:
    def __init__(self, fail=False):
        self.synced = []
        self.fail = fail

    async def sync_file(self, path, content):
        if self.fail:
            raise ConnectionError("lsp gone")
        self.synced.append((path, content))


@pytest.fixture(autouse=True)
def fresh_manifest_cache():
    clear_allowed_tools_cache()
    yield
    clear_allowed_tools_cache()


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return root


def run(sandbox, name, **args):
    return asyncio.run(sandbox.execute(name, args))


def git(root, *args):
    subprocess.run(
        ["git", "-c", "user.email=t@example.com", "-c", "user.name=t", *args],
        cwd=root, check=True, capture_output=True,
    )


# ============================================================
# Guards
# ============================================================

class TestPathConfinement:
    def test_relative_escape_rejected(self, workspace):
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "write_file", path="../../etc/passwd", content="x")
        assert result.ok is False
        assert "outside workspace" in result.error
        assert not (workspace.parent / "etc").exists()

    def test_absolute_path_outside_rejected(self, workspace, tmp_path):
        sb = ToolSandbox(workspace, FakeApi())
        target = tmp_path / "elsewhere.txt"
        result = run(sb, "write_file", path=str(target), content="x")
        assert result.ok is False
        assert not target.exists()

    def test_absolute_path_inside_allowed(self, workspace):
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "write_file", path=str(workspace / "in.txt"), content="x")
        assert result.ok is True
        assert (workspace / "in.txt").read_text() == "x"

    def test_symlink_escape_rejected(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (workspace / "link").symlink_to(outside)
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "write_file", path="link/evil.txt", content="x")
        assert result.ok is False
        assert not (outside / "evil.txt").exists()

    def test_read_outside_rejected(self, workspace):
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "read_file", path="../secret")
        assert result.ok is False
        assert result.error.startswith("Path is outside workspace")


class TestReadBeforeWrite:
    def test_existing_unread_file_refused(self, workspace):
        (workspace / "a.txt").write_text("original")
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "write_file", path="a.txt", content="changed")
        assert result.ok is False
        assert "must be read before write" in result.error
        assert (workspace / "a.txt").read_text() == "original"

    def test_new_file_needs_no_read(self, workspace):
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "write_file", path="pkg/new.txt", content="hello\n")
        assert result.ok is True
        assert result.output["created"] is True
        assert result.output["before"] == ""
        assert (workspace / "pkg" / "new.txt").read_text() == "hello\n"

    def test_write_after_read(self, workspace):
        (workspace / "a.txt").write_text("one\n")
        sb = ToolSandbox(workspace, FakeApi())
        assert run(sb, "read_file", path="a.txt").output == {"path": "a.txt", "content": "one\n"}
        result = run(sb, "write_file", path="a.txt", content="two\n")
        assert result.ok is True
        assert result.output["created"] is False
        assert result.output["before"] == "one\n"
        assert result.output["after"] == "two\n"
        assert "-one" in result.output["diff"]
        assert "+two" in result.output["diff"]

    def test_grep_does_not_count_as_read(self, workspace):
        (workspace / "a.txt").write_text("needle\n")
        sb = ToolSandbox(workspace, FakeApi())
        assert run(sb, "grep", query="needle").ok is True
        result = run(sb, "write_file", path="a.txt", content="x")
        assert result.ok is False

    def test_shared_read_set(self, workspace):
        (workspace / "a.txt").write_text("x")
        read_set = set()
        sb = ToolSandbox(workspace, FakeApi(), read_set=read_set)
        run(sb, "read_file", path="a.txt")
        assert str((workspace / "a.txt").resolve()) in read_set

    def test_write_then_read_round_trip(self, workspace):
        sb = ToolSandbox(workspace, FakeApi())
        content = "line one\nzwei – drei ☃\r\nno trailing newline"
        assert run(sb, "write_file", path="r.txt", content=content).ok
        assert run(sb, "read_file", path="r.txt").output["content"] == content


class TestAllowList:
    def test_tool_not_in_manifest(self, workspace):
        api = FakeApi(tools=["read_file"])
        sb = ToolSandbox(workspace, api, app_id="app")
        result = run(sb, "write_file", path="x.txt", content="x")
        assert result.ok is False
        assert result.error == "Tool not in manifest: write_file"
        assert not (workspace / "x.txt").exists()

    def test_manifest_tool_without_local_handler(self, workspace):
        sb = ToolSandbox(workspace, FakeApi(tools=["rm_rf"]))
        result = run(sb, "rm_rf")
        assert result.ok is False
        assert "Unknown tool" in result.error

    def test_manifest_fetched_once_per_process(self, workspace):
        api = FakeApi()
        sb = ToolSandbox(workspace, api)
        run(sb, "list_files")
        run(sb, "list_files")
        ToolSandbox(workspace, api)
        run(ToolSandbox(workspace, api), "list_files")
        assert api.manifest_calls == 1

    def test_manifest_failure_is_a_result(self, workspace):
        sb = ToolSandbox(workspace, FakeApi(fail_manifest=True))
        result = run(sb, "read_file", path="a.txt")
        assert result.ok is False
        assert "manifest unavailable" in result.error


# ============================================================
# Tools
# ============================================================

class TestReadAndSearch:
    def test_read_missing_file(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "read_file", path="nope.txt")
        assert result.ok is False
        assert result.error

    def test_read_requires_path(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "read_file")
        assert result.ok is False
        assert result.error == "path is required"

    def test_list_files(self, workspace):
        (workspace / "src").mkdir()
        (workspace / "src" / "main.py").write_text("")
        (workspace / "README.md").write_text("")
        (workspace / ".env").write_text("")
        sb = ToolSandbox(workspace, FakeApi())
        assert run(sb, "list_files").output == {
            "pattern": "**/*",
            "matches": [".env", "README.md", "src/main.py"],
        }
        assert run(sb, "list_files", pattern="**/*.py").output["matches"] == ["src/main.py"]

    def test_list_files_pattern_escape(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "list_files", pattern="../*")
        assert result.ok is False

    def test_grep(self, workspace):
        (workspace / "a.py").write_text("import os\ndef main():\n    pass\n")
        (workspace / "node_modules").mkdir()
        (workspace / "node_modules" / "dep.py").write_text("def main(): pass\n")
        sb = ToolSandbox(workspace, FakeApi())
        result = run(sb, "grep", query=r"def \w+")
        assert result.output == {"query": r"def \w+", "pattern": ".", "matches": "a.py:2:def main():"}

    def test_grep_scoped_to_path(self, workspace):
        (workspace / "a").mkdir()
        (workspace / "b").mkdir()
        (workspace / "a" / "f.txt").write_text("hit\n")
        (workspace / "b" / "f.txt").write_text("hit\n")
        result = run(ToolSandbox(workspace, FakeApi()), "grep", query="hit", pattern="b")
        assert result.output["matches"] == "b/f.txt:1:hit"

    def test_grep_invalid_regex(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "grep", query="(")
        assert result.ok is False
        assert "Invalid regex" in result.error


class TestApplyPatch:
    PATCH = (
        "--- a/hello.txt\n"
        "+++ b/hello.txt\n"
        "@@ -1,2 +1,2 @@\n"
        " hello\n"
        "-world\n"
        "+there\n"
    )

    def test_unread_file_refused_before_git(self, workspace, monkeypatch):
        (workspace / "hello.txt").write_text("hello\nworld\n")

        async def forbidden(*args, **kwargs):
            raise AssertionError("git must not run")

        monkeypatch.setattr(sandbox_module, "_run", forbidden)
        result = run(ToolSandbox(workspace, FakeApi()), "apply_patch", patch=self.PATCH)
        assert result.ok is False
        assert "must be read before write" in result.error
        assert (workspace / "hello.txt").read_text() == "hello\nworld\n"

    def test_patch_without_files(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "apply_patch", patch="not a diff")
        assert result.ok is False

    def test_patch_path_escape(self, workspace):
        patch = "--- a/../x.txt\n+++ b/../x.txt\n@@ -0,0 +1 @@\n+x\n"
        result = run(ToolSandbox(workspace, FakeApi()), "apply_patch", patch=patch)
        assert result.ok is False
        assert "outside workspace" in result.error

    @needs_git
    def test_apply_after_read(self, workspace):
        (workspace / "hello.txt").write_text("hello\nworld\n")
        sb = ToolSandbox(workspace, FakeApi())
        run(sb, "read_file", path="hello.txt")
        result = run(sb, "apply_patch", patch=self.PATCH)
        assert result.ok is True, result.error
        [entry] = result.output["files"]
        assert entry["path"] == "hello.txt"
        assert entry["before"] == "hello\nworld\n"
        assert entry["after"] == "hello\nthere\n"
        assert entry["diff"].startswith("--- a/hello.txt\n+++ b/hello.txt")
        assert (workspace / "hello.txt").read_text() == "hello\nthere\n"

    def test_rename_of_unread_file_refused(self, workspace, monkeypatch):
        (workspace / "hello.txt").write_text("hello\nworld\n")
        (workspace / "secret.txt").write_text("keep\n")

        async def forbidden(*args, **kwargs):
            raise AssertionError("git must not run")

        monkeypatch.setattr(sandbox_module, "_run", forbidden)
        sb = ToolSandbox(workspace, FakeApi())
        run(sb, "read_file", path="hello.txt")
        patch = (
            "diff --git a/hello.txt b/hello.txt\n" + self.PATCH
            + "diff --git a/secret.txt b/moved.txt\n"
            "similarity index 100%\n"
            "rename from secret.txt\n"
            "rename to moved.txt\n"
        )
        result = run(sb, "apply_patch", patch=patch)
        assert result.ok is False
        assert "must be read before write" in result.error
        assert (workspace / "secret.txt").exists()
        assert not (workspace / "moved.txt").exists()

    def test_mode_change_of_unread_file_refused(self, workspace):
        (workspace / "run.sh").write_text("echo\n")
        patch = "diff --git a/run.sh b/run.sh\nold mode 100644\nnew mode 100755\n"
        result = run(ToolSandbox(workspace, FakeApi()), "apply_patch", patch=patch)
        assert result.ok is False
        assert "must be read before write" in result.error

    @needs_git
    def test_patch_creates_new_file(self, workspace):
        patch = "--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1 @@\n+fresh\n"
        result = run(ToolSandbox(workspace, FakeApi()), "apply_patch", patch=patch)
        assert result.ok is True, result.error
        assert (workspace / "new.txt").read_text() == "fresh\n"

    @needs_git
    def test_rejected_patch_reports_git_error(self, workspace):
        (workspace / "hello.txt").write_text("something else\n")
        sb = ToolSandbox(workspace, FakeApi())
        run(sb, "read_file", path="hello.txt")
        result = run(sb, "apply_patch", patch=self.PATCH)
        assert result.ok is False
        assert (workspace / "hello.txt").read_text() == "something else\n"


class TestDeploy:
    def test_requires_app(self, workspace):
        result = run(ToolSandbox(workspace, FakeApi()), "deploy")
        assert result.ok is False
        assert "linked app" in result.error

    @needs_git
    def test_deploy_changed_files(self, workspace):
        git(workspace, "init", "-q")
        (workspace / "index.ts").write_text("export {}\n")
        (workspace / "lib").mkdir()
        (workspace / "lib" / "util.ts").write_text("// util\n")
        api = FakeApi()
        result = run(ToolSandbox(workspace, api, app_id="app-1"), "deploy", message="ship it")
        assert result.ok is True, result.error
        assert result.output == {"commitSha": "sha-1", "deploymentId": "dep-1"}
        app_id, files, message = api.commits[0]
        assert app_id == "app-1"
        assert files == {"index.ts": "export {}\n", "lib/util.ts": "// util\n"}
        assert message == "ship it"
        assert api.deployments == ["app-1"]

    @needs_git
    def test_default_message(self, workspace):
        git(workspace, "init", "-q")
        (workspace / "a.txt").write_text("a")
        api = FakeApi()
        run(ToolSandbox(workspace, api, app_id="app-1"), "deploy")
        assert api.commits[0][2] == "Deploy from TUI"

    @needs_git
    def test_no_changes(self, workspace):
        git(workspace, "init", "-q")
        result = run(ToolSandbox(workspace, FakeApi(), app_id="app-1"), "deploy")
        assert result.ok is False
        assert result.error == "No changes detected"

    @needs_git
    def test_deletion_unsupported(self, workspace):
        git(workspace, "init", "-q")
        (workspace / "gone.txt").write_text("bye")
        git(workspace, "add", "gone.txt")
        git(workspace, "commit", "-q", "-m", "init")
        (workspace / "gone.txt").unlink()
        api = FakeApi()
        result = run(ToolSandbox(workspace, api, app_id="app-1"), "deploy")
        assert result.ok is False
        assert "Deletion not supported" in result.error
        assert api.commits == []


class TestCodeIntelligence:
    def test_notified_on_read_and_write(self, workspace):
        (workspace / "a.txt").write_text("x")
        intel = RecordingIntel()
        sb = ToolSandbox(workspace, FakeApi(), code_intel=intel)
        run(sb, "read_file", path="a.txt")
        run(sb, "write_file", path="a.txt", content="y")
        assert [c for _, c in intel.synced] == ["x", "y"]

    def test_failures_never_propagate(self, workspace):
        sb = ToolSandbox(workspace, FakeApi(), code_intel=RecordingIntel(fail=True))
        result = run(sb, "write_file", path="a.txt", content="y")
        assert result.ok is True


class TestHelpers:
    def test_unified_diff_marks_missing_newline(self):
        diff = unified_diff("a\n", "a\nb", "f.txt")
        assert diff.splitlines()[:2] == ["--- a/f.txt", "+++ b/f.txt"]
        assert "+b" in diff
        assert "\\ No newline at end of file" in diff

    def test_unified_diff_identical(self):
        assert unified_diff("same\n", "same\n", "f") == ""

    def test_parse_patch_paths(self):
        patch = "--- a/x.py\n+++ b/x.py\n--- /dev/null\n+++ b/new/y.py\n"
        assert parse_patch_paths(patch) == ["x.py", "new/y.py"]

    def test_parse_git_headers(self):
        patch = (
            "diff --git a/a.txt b/a.txt\n"
            "index 1111111..2222222 100644\n"
            "--- a/a.txt\n+++ b/a.txt\n@@ -1 +1 @@\n-a\n+b\n"
            "diff --git a/secret.txt b/moved.txt\n"
            "similarity index 100%\n"
            "rename from secret.txt\n"
            "rename to moved.txt\n"
            "diff --git a/run.sh b/run.sh\n"
            "old mode 100644\n"
            "new mode 100755\n"
        )
        assert parse_patch_paths(patch) == ["a.txt", "secret.txt", "moved.txt", "run.sh"]

    def test_parse_rejects_unknown_git_header(self):
        with pytest.raises(sandbox_module.SandboxError):
            parse_patch_paths("diff --git a/x b/x\nfrobnicate 1\n")
