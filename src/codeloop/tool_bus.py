# tool_bus.py
# Executes one validated action against the real filesystem or a process.
#
# Each call: registry lookup → schema re-validation → sandbox check →
# exactly the side effect the contract declares. The orchestrator never
# touches disk or spawns processes itself; everything goes through invoke().

import os
import re
import shlex
import subprocess
from typing import Any, Callable

from openai import OpenAIError
from pydantic import ValidationError

from codeloop import prompts
from codeloop.collaborators import Tracer, emit
from codeloop.config import AgentConfig
from codeloop.diffs import (
    PatchApplier,
    build_add_file_diff,
    default_applier,
    diff_has_changes,
    validate_diff,
)
from codeloop.errors import AgentError, CommandNotAllowed, DiffInvalid
from codeloop.models import ErrorSummary
from codeloop.parsing import extract_json
from codeloop.safety import Safety
from codeloop.tools import (
    ErrorSummaryArgs,
    ExecRunArgs,
    FsCreateArgs,
    FsDeleteArgs,
    FsReadArgs,
    FsWriteArgs,
    FsWriteDiffArgs,
    GitDiffArgs,
    GitStatusArgs,
    ToolRegistry,
)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

DENY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^git\s+push\b",
        r"^git\s+commit\b",
        r"^git\s+reset\s+--hard\b",
        r"^git\s+clean\b",
        r"^git\s+checkout\s+--?\s",
        r"^rm\b",
        r"^sudo\b",
        r"\b(curl|wget)\b.*\|\s*(sh|bash|zsh)\b",
        r"\bchmod\s+777\b",
        r"\bchown\b",
        r"\bmkfs\b",
        r"\bdd\s+if=",
    )
]
INTERACTIVE_SHELLS = frozenset({"sh", "bash", "zsh", "fish", "dash"})


def truncate_bytes(text: str, max_bytes: int) -> str:
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    head = data[:max_bytes].decode("utf-8", errors="ignore")
    return f"{head}\n... (truncated to {max_bytes} bytes)"


class ToolBus:
    """Dispatches actions of the form {"type": <tool name>, "args": {...}}."""

    def __init__(
        self,
        config: AgentConfig,
        registry: ToolRegistry,
        *,
        safety: Safety | None = None,
        model=None,
        applier: PatchApplier | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._safety = safety or Safety(config)
        self._model = model
        self._applier = applier or default_applier(self._safety.root, config.command_timeout_seconds)
        self._tracer = tracer
        self._changes_made = False
        self._applied: list[str] = []

        self._handlers: dict[str, Callable[[Any], dict]] = {
            "fs.read": self._read,
            "fs.write": self._write,
            "fs.create": self._create,
            "fs.delete": self._delete,
            "fs.write_diff": self._write_diff,
            "exec.run": self._exec_run,
            "diagnostics.error_summary": self._error_summary,
            "git.status": self._git_status,
            "git.diff": self._git_diff,
        }
        missing = set(registry.contracts) - set(self._handlers)
        if missing:
            raise ValueError(f"no handler for registered tools: {sorted(missing)}")

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def safety(self) -> Safety:
        return self._safety

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def changes_made(self) -> bool:
        return self._changes_made

    @property
    def applied_diffs(self) -> list[str]:
        """Diffs applied since the last reset, in order."""
        return list(self._applied)

    def reset(self) -> None:
        """Clear the per-cycle change record."""
        self._changes_made = False
        self._applied = []

    def invoke(self, action: dict[str, Any]) -> dict[str, Any]:
        name = action.get("type", "")
        args = action.get("args") or {}
        parsed = self._registry.parse_args(name, args)
        emit(self._tracer, "tool_invoke", tool=name)
        try:
            return self._handlers[name](parsed)
        except AgentError as exc:
            emit(self._tracer, "tool_error", tool=name, error=type(exc).__name__, message=str(exc))
            raise

    def command_allowed(self, command: str) -> tuple[bool, str]:
        """Deny patterns first, then the allow-prefix list (empty list denies all)."""
        cmd = command.strip()
        if not cmd:
            return False, "empty command"
        if any(pattern.search(cmd) for pattern in DENY_PATTERNS):
            return False, "matches deny pattern"
        try:
            tokens = shlex.split(cmd)
        except ValueError:
            return False, "unparseable command"
        if not tokens or tokens[0] in INTERACTIVE_SHELLS:
            return False, "interactive shell"
        for prefix in self._config.command_allowlist:
            prefix_tokens = shlex.split(prefix)
            if prefix_tokens and tokens[: len(prefix_tokens)] == prefix_tokens:
                return True, f"allowlisted by {prefix!r}"
        return False, "not in allowlist"

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def _read(self, args: FsReadArgs) -> dict:
        full = self._safety.guard(args.path)
        emit(self._tracer, "fs_read", path=args.path)
        if not os.path.isfile(full):
            return {"path": args.path, "content": "", "exists": False, "truncated": False}
        limit = self._config.max_file_bytes
        with open(full, "rb") as fh:
            data = fh.read(limit + 1)
        truncated = len(data) > limit
        content = data[:limit].decode("utf-8", errors="replace")
        return {"path": args.path, "content": content, "exists": True, "truncated": truncated}

    def _write(self, args: FsWriteArgs) -> dict:
        if not args.diff:
            raise DiffInvalid("fs.write needs a controller-generated diff")
        return self._write_diff(FsWriteDiffArgs(path=args.path, diff=args.diff))

    def _create(self, args: FsCreateArgs) -> dict:
        full = self._safety.guard(args.path)
        if os.path.exists(full):
            raise DiffInvalid(f"fs.create target already exists: {args.path}")
        diff = build_add_file_diff(args.path, args.content)
        if args.content:
            return self._write_diff(FsWriteDiffArgs(path=args.path, diff=diff))

        # An empty add-file diff has no hunk body for an applier to replay.
        validate_diff(args.path, diff, self._config.max_diff_lines)
        if self._config.dry_run:
            emit(self._tracer, "fs_write_diff", path=args.path, note="dry run")
            return {"applied": False, "dry_run": True}
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8"):
            pass
        self._changes_made = True
        self._applied.append(diff)
        emit(self._tracer, "fs_write_diff", path=args.path, note="empty file")
        return {"applied": True, "noop": False}

    def _write_diff(self, args: FsWriteDiffArgs) -> dict:
        self._safety.guard(args.path)
        validate_diff(args.path, args.diff, self._config.max_diff_lines)

        if not diff_has_changes(args.diff):
            emit(self._tracer, "fs_write_diff", path=args.path, note="no-op diff")
            return {"applied": True, "noop": True}
        if self._config.dry_run:
            emit(self._tracer, "fs_write_diff", path=args.path, note="dry run")
            return {"applied": False, "dry_run": True}

        outcome = self._applier.apply(args.diff)
        if not outcome.ok:
            emit(self._tracer, "diff_apply_failed", path=args.path, error=outcome.detail)
            raise DiffInvalid(f"diff apply failed for {args.path}: {outcome.detail}")
        self._changes_made = True
        self._applied.append(args.diff)
        emit(self._tracer, "fs_write_diff", path=args.path)
        return {"applied": True, "noop": False}

    def _delete(self, args: FsDeleteArgs) -> dict:
        full = self._safety.guard(args.path)
        emit(self._tracer, "fs_delete", path=args.path)
        if self._config.dry_run:
            return {"ok": False, "dry_run": True}
        existed = os.path.isfile(full)
        if existed:
            os.remove(full)
            self._changes_made = True
            self._applied.append(f"deleted {args.path}\n")
        return {"ok": True, "existed": existed}

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    def _exec_run(self, args: ExecRunArgs) -> dict:
        allowed, reason = self.command_allowed(args.command)
        if not allowed:
            emit(self._tracer, "command_denied", command=args.command, reason=reason)
            raise CommandNotAllowed(f"command not allowed ({reason}): {args.command}")
        emit(self._tracer, "exec_run", command=args.command)
        if self._config.dry_run:
            return {"stdout": "", "stderr": "", "exit_code": 0}
        return self._run(shlex.split(args.command))

    def _run(self, argv: list[str]) -> dict:
        timeout = self._config.command_timeout_seconds
        max_bytes = self._config.command_max_output_bytes
        try:
            completed = subprocess.run(
                argv,
                cwd=self._safety.root,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return {"stdout": "", "stderr": f"Command timed out after {timeout}s", "exit_code": TIMEOUT_EXIT_CODE}
        except FileNotFoundError:
            return {"stdout": "", "stderr": f"{argv[0]}: command not found", "exit_code": NOT_FOUND_EXIT_CODE}
        return {
            "stdout": truncate_bytes(completed.stdout or "", max_bytes),
            "stderr": truncate_bytes(completed.stderr or "", max_bytes),
            "exit_code": completed.returncode,
        }

    def _error_summary(self, args: ErrorSummaryArgs) -> dict:
        stderr = args.stderr
        emit(self._tracer, "diagnostics_error_summary", bytes=len(stderr.encode("utf-8")))
        empty = {"root_cause": "", "confidence": 0.0}
        if not stderr.strip() or self._model is None:
            return empty
        try:
            raw = self._model.query("diagnostics", f"{prompts.DIAGNOSTICS_ERROR_SUMMARY_SYSTEM}\n\nSTDERR:\n{stderr}")
            summary = ErrorSummary.model_validate(extract_json(raw))
        except (ValueError, ValidationError, OpenAIError) as exc:
            emit(self._tracer, "error_summary_failed", message=str(exc))
            return empty
        if not _grounded(summary.root_cause, stderr):
            return empty
        return summary.model_dump()

    # ------------------------------------------------------------------
    # Version control (read-only)
    # ------------------------------------------------------------------

    def _is_repo(self) -> bool:
        return os.path.isdir(os.path.join(self._safety.root, ".git"))

    def _git_status(self, args: GitStatusArgs) -> dict:
        emit(self._tracer, "git_status")
        if not self._is_repo():
            return {"stdout": "", "stderr": "Not a git repository", "exit_code": 1}
        return self._run(["git", "status", "--porcelain"])

    def _git_diff(self, args: GitDiffArgs) -> dict:
        emit(self._tracer, "git_diff", staged=args.staged)
        if not self._is_repo():
            return {"stdout": "", "stderr": "Not a git repository", "exit_code": 1}
        return self._run(["git", "diff", "--cached"] if args.staged else ["git", "diff"])


def _grounded(root_cause: str, stderr: str) -> bool:
    """A summary must share at least one substantive word with the text it summarizes."""
    words = {w.lower() for w in re.findall(r"[A-Za-z_][\w.]{3,}", root_cause)}
    if not words:
        return not root_cause.strip()
    haystack = stderr.lower()
    return any(word in haystack for word in words)
