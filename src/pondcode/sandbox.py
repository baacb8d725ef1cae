"""Local tool execution confined to one workspace root.

Every path argument is resolved against the root and rejected if it
escapes.  Existing files must have been read (or written) through this
sandbox before ``write_file`` or ``apply_patch`` may change them.  The
set of callable tools is the intersection of the built-in vocabulary and
the remote tool manifest, fetched once per process per endpoint.
"""

import asyncio
import difflib
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import aiofiles
from pydantic import BaseModel

from .api import ApiClient, manifest_tool_names
from .logger import get_logger, truncate as log_truncate

log = get_logger("sandbox")

TOOL_NAMES = ("read_file", "list_files", "grep", "apply_patch", "write_file", "deploy")

# Directories grep never descends into
_SKIP_DIRS = {'.git', 'node_modules', '__pycache__', 'venv', '.venv', 'dist', 'build', 'target'}
_MAX_GREP_FILE_BYTES = 1024 * 1024
_MAX_GREP_MATCHES = 500
_MAX_LIST_MATCHES = 2000


class SandboxError(Exception):
    """A tool call was refused or failed."""


class PathViolationError(SandboxError):
    pass


class ReadBeforeWriteError(SandboxError):
    pass


class ToolNotAllowedError(SandboxError):
    pass


class SubprocessError(SandboxError):
    pass


class ToolResult(BaseModel):
    """Result of a tool execution, sent back upstream as a tool_output."""

    ok: bool
    output: Any = None
    error: Optional[str] = None


class CodeIntelligence(Protocol):
    """Optional code-intelligence peer told about file contents we read or wrote."""

    async def sync_file(self, path: str, content: str) -> None: ...


async def notify_code_intelligence(
    capability: Optional[CodeIntelligence], path: Path, content: str
) -> None:
    """Forward a file sync; failures are logged and never propagate."""
    if capability is None:
        return
    try:
        await capability.sync_file(str(path), content)
    except Exception as e:
        log.debug("code intelligence sync failed for %s: %s", path, e)


# ── Allow-list ───────────────────────────────────────────────

_allowed_tools: Dict[str, Set[str]] = {}


async def get_allowed_tools(api: ApiClient) -> Set[str]:
    """Tool names from the manifest, fetched once per base URL for this process."""
    key = api.base_url
    if key not in _allowed_tools:
        manifest = await api.fetch_tool_manifest()
        _allowed_tools[key] = set(manifest_tool_names(manifest))
        log.info("tool manifest loaded: %s", sorted(_allowed_tools[key]))
    return _allowed_tools[key]


def clear_allowed_tools_cache() -> None:
    _allowed_tools.clear()


# ── Helpers ──────────────────────────────────────────────────

def unified_diff(before: str, after: str, file_path: str) -> str:
    """Unified diff between two texts with a/ and b/ labels."""
    def _lines(text: str) -> List[str]:
        lines = text.splitlines(keepends=True)
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n\\ No newline at end of file\n"
        return lines

    diff = difflib.unified_diff(
        _lines(before), _lines(after), fromfile=f"a/{file_path}", tofile=f"b/{file_path}"
    )
    return "".join(diff).strip()


_GIT_HEADER_PATHS = ("rename from ", "rename to ", "copy from ", "copy to ")
_GIT_HEADER_OTHER = (
    "old mode ", "new mode ", "deleted file mode ", "new file mode ",
    "similarity index ", "dissimilarity index ", "index ", "Binary files ", "GIT binary patch",
)


def _strip_side(value: str) -> str:
    value = value.strip().split("\t")[0]
    if len(value) > 1 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    if value.startswith("a/") or value.startswith("b/"):
        return value[2:]
    return value


def _git_diff_paths(header: str) -> List[str]:
    rest = header[len("diff --git "):].strip()
    if rest.startswith('"'):
        parts = [p for p in rest.split('"') if p.strip()]
        return [_strip_side(p) for p in parts[:2]]
    if rest.startswith("a/") and " b/" in rest:
        left, right = rest.split(" b/", 1)
        return [left[2:], right]
    raise SandboxError(f"Unrecognised diff header: {header}")


def parse_patch_paths(patch_text: str) -> List[str]:
    """Workspace-relative paths a patch touches.

    Covers ``---``/``+++`` file headers plus git's ``diff --git`` line and its
    rename, copy and mode headers. An unknown line inside a git header block
    raises ``SandboxError``.
    """
    paths: List[str] = []

    def add(value: str) -> None:
        if value and value != "/dev/null" and value not in paths:
            paths.append(value)

    in_header = False
    for line in patch_text.split("\n"):
        if line.startswith("diff --git "):
            for value in _git_diff_paths(line):
                add(value)
            in_header = True
        elif line.startswith("+++ ") or line.startswith("--- "):
            value = line[4:].strip().split("\t")[0]
            if value.startswith("a/") or value.startswith("b/"):
                add(_strip_side(value))
            in_header = False
        elif line.startswith("@@"):
            in_header = False
        elif line.startswith(_GIT_HEADER_PATHS):
            value = line.split(" ", 2)[2].strip()
            add(value[1:-1] if len(value) > 1 and value.startswith('"') and value.endswith('"') else value)
        elif in_header and line.strip() and not line.startswith(_GIT_HEADER_OTHER):
            raise SandboxError(f"Unsupported patch header: {line}")
    return paths


async def _run(cmd: List[str], cwd: Path, stdin: Optional[str] = None) -> Tuple[int, str, str]:
    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd),
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate(stdin.encode("utf-8") if stdin is not None else None)
    return (
        process.returncode or 0,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def _read_text(path: Path) -> str:
    async with aiofiles.open(path, "r", encoding="utf-8", newline="") as f:
        return await f.read()


async def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)


class ToolSandbox:
    """Executes the local tool vocabulary against ``root``.

    Args:
        root: Workspace directory every path is confined to.
        api: Client used for the manifest and the deploy endpoints.
        app_id: Linked app; required by ``deploy`` only.
        read_set: Absolute paths read so far (shared with the owning session).
        code_intel: Optional code-intelligence peer.
    """

    def __init__(
        self,
        root: Path,
        api: ApiClient,
        app_id: Optional[str] = None,
        read_set: Optional[Set[str]] = None,
        code_intel: Optional[CodeIntelligence] = None,
    ):
        self.root = Path(root).resolve()
        self.api = api
        self.app_id = app_id
        self.read_set: Set[str] = read_set if read_set is not None else set()
        self.code_intel = code_intel
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "read_file": self.read_file,
            "list_files": self.list_files,
            "grep": self.grep,
            "apply_patch": self.apply_patch,
            "write_file": self.write_file,
            "deploy": self.deploy,
        }

    # -- Guards ----------------------------------------------------------------

    def resolve_path(self, file_path: str) -> Path:
        """Resolve ``file_path`` under the root or raise PathViolationError."""
        resolved = (self.root / file_path).resolve()
        relative = os.path.relpath(resolved, self.root)
        if relative == ".." or relative.startswith(".." + os.sep) or os.path.isabs(relative):
            raise PathViolationError(f"Path is outside workspace: {file_path}")
        return resolved

    def _ensure_read(self, resolved: Path) -> None:
        if str(resolved) not in self.read_set:
            rel = resolved.relative_to(self.root).as_posix()
            raise ReadBeforeWriteError(f"File must be read before write/patch: {rel}")

    @staticmethod
    def _required(args: Dict[str, Any], key: str) -> str:
        value = args.get(key)
        if value is None or str(value) == "":
            raise SandboxError(f"{key} is required")
        return str(value)

    # -- Dispatch --------------------------------------------------------------

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Run one tool call.  Never raises; failures come back as ok=False."""
        log.info("tool %s args=%s", name, log_truncate(repr(args), 300))
        try:
            allowed = await get_allowed_tools(self.api)
            if name not in allowed:
                raise ToolNotAllowedError(f"Tool not in manifest: {name}")
            handler = self._handlers.get(name)
            if handler is None:
                raise ToolNotAllowedError(f"Unknown tool: {name}")
            output = await handler(args or {})
        except Exception as e:
            log.warning("tool %s failed: %s: %s", name, type(e).__name__, e)
            return ToolResult(ok=False, error=str(e) or type(e).__name__)
        log.info("tool %s ok", name)
        return ToolResult(ok=True, output=output)

    # -- Tools -----------------------------------------------------------------

    async def read_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        file_path = self._required(args, "path")
        resolved = self.resolve_path(file_path)
        content = await _read_text(resolved)
        self.read_set.add(str(resolved))
        await notify_code_intelligence(self.code_intel, resolved, content)
        return {"path": file_path, "content": content}

    async def list_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        pattern = str(args.get("pattern") or "**/*")
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise PathViolationError(f"Pattern is outside workspace: {pattern}")
        matches = []
        truncated = False
        for path in self.root.glob(pattern):
            if not path.is_file():
                continue
            if len(matches) >= _MAX_LIST_MATCHES:
                truncated = True
                break
            matches.append(path.relative_to(self.root).as_posix())
        matches.sort()
        result: Dict[str, Any] = {"pattern": pattern, "matches": matches}
        if truncated:
            result["truncated"] = True
        return result

    async def grep(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = self._required(args, "query")
        pattern = str(args.get("pattern") or ".")
        base = self.resolve_path(pattern)
        try:
            regex = re.compile(query)
        except re.error as e:
            raise SandboxError(f"Invalid regex: {e}")

        files = [base] if base.is_file() else sorted(
            p for p in base.rglob("*")
            if p.is_file() and not any(
                part in _SKIP_DIRS or part.startswith(".")
                for part in p.relative_to(base).parts[:-1]
            )
        )
        results = []
        for file in files:
            try:
                if file.stat().st_size > _MAX_GREP_FILE_BYTES:
                    continue
                content = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            rel = file.relative_to(self.root).as_posix()
            for i, line in enumerate(content.splitlines(), 1):
                if regex.search(line):
                    results.append(f"{rel}:{i}:{line}")
                    if len(results) >= _MAX_GREP_MATCHES:
                        break
            if len(results) >= _MAX_GREP_MATCHES:
                break
        return {"query": query, "pattern": pattern, "matches": "\n".join(results)}

    async def apply_patch(self, args: Dict[str, Any]) -> Dict[str, Any]:
        patch_text = self._required(args, "patch")
        touched = parse_patch_paths(patch_text)
        if not touched:
            raise SandboxError("Patch does not name any files")

        # Every guard runs before git sees the patch: no partial application.
        before: Dict[str, str] = {}
        resolved_paths: Dict[str, Path] = {}
        for file_path in touched:
            resolved = self.resolve_path(file_path)
            resolved_paths[file_path] = resolved
            if resolved.exists():
                self._ensure_read(resolved)
                before[file_path] = await _read_text(resolved)
            else:
                before[file_path] = ""

        if not patch_text.endswith("\n"):
            patch_text += "\n"
        code, _, stderr = await _run(
            ["git", "apply", "--whitespace=nowarn", "-"], cwd=self.root, stdin=patch_text
        )
        if code != 0:
            raise SubprocessError(stderr.strip() or "git apply failed")

        files = []
        for file_path in touched:
            resolved = resolved_paths[file_path]
            after = await _read_text(resolved) if resolved.exists() else ""
            if resolved.exists():
                self.read_set.add(str(resolved))
                await notify_code_intelligence(self.code_intel, resolved, after)
            files.append({
                "path": file_path,
                "before": before[file_path],
                "after": after,
                "diff": unified_diff(before[file_path], after, file_path),
            })
        return {"files": files}

    async def write_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        file_path = self._required(args, "path")
        content = args.get("content")
        content = "" if content is None else str(content)
        resolved = self.resolve_path(file_path)
        exists = resolved.exists()
        previous = ""
        if exists:
            self._ensure_read(resolved)
            previous = await _read_text(resolved)
        await _write_text(resolved, content)
        self.read_set.add(str(resolved))
        await notify_code_intelligence(self.code_intel, resolved, content)
        return {
            "path": file_path,
            "created": not exists,
            "diff": unified_diff(previous, content, file_path),
            "before": previous,
            "after": content,
        }

    async def collect_changed_files(self) -> Dict[str, str]:
        """Snapshot every file git reports as changed or untracked."""
        code, stdout, stderr = await _run(["git", "status", "--porcelain", "-uall", "-z"], cwd=self.root)
        if code != 0:
            raise SubprocessError(stderr.strip() or "git status failed")

        files: Dict[str, str] = {}
        entries = stdout.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            status, file_path = entry[:2], entry[3:]
            if "R" in status or "C" in status:
                i += 1  # origin path of a rename/copy
            if "D" in status:
                raise SandboxError(f"Deletion not supported: {file_path}")
            files[file_path] = await _read_text(self.resolve_path(file_path))
        if not files:
            raise SandboxError("No changes detected")
        return files

    async def deploy(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if not self.app_id:
            raise SandboxError("deploy requires a linked app (/link <appId>)")
        message = str(args.get("message") or "Deploy from TUI")
        files = await self.collect_changed_files()
        log.info("deploy: app=%s files=%d", self.app_id, len(files))
        commit = await self.api.commit_files(self.app_id, files, message)
        deployment = await self.api.deploy_app(self.app_id)
        return {
            "commitSha": commit.get("commitSha"),
            "deploymentId": deployment.get("deploymentId"),
        }
