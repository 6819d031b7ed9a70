# diffs.py
# Unified diff generation, repair, validation and application.
#
# Every file mutation in the loop is a diff. The developer model proposes one
# for edits; creations use a deterministic add-file diff that never touches a
# model. Whatever the source, a diff is validated here before it is applied.

import difflib
import os
import re
import shutil
import subprocess
from typing import Protocol

from openai import OpenAIError
from pydantic import BaseModel

from codeloop import prompts
from codeloop.errors import DiffInvalid
from codeloop.parsing import strip_fences

DEV_NULL = "/dev/null"
NO_NEWLINE_MARKER = "\\ No newline at end of file\n"
CONTEXT_LINES = 3

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_HEADER_INTENT = re.compile(
    r"\b(header|comment)\b.*\b(top|beginning|start|header)\b|\bheader comment\b",
    re.IGNORECASE,
)
_QUOTED = re.compile(r"[\"'`]([^\"'`]{2,})[\"'`]")
_COMMENT_PREFIXES = ("#", "//", "/*", "--", ";", "<!--")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def diff_has_changes(diff: str) -> bool:
    """True when the diff adds or removes at least one line."""
    for line in diff.splitlines():
        if line.startswith(("+++", "---")):
            continue
        if line.startswith(("+", "-")):
            return True
    return False


def expected_headers(path: str, file_exists: bool) -> str:
    old = f"a/{path}" if file_exists else DEV_NULL
    return f"--- {old}\n+++ b/{path}\n"


def _render(prefix: str, line: str) -> str:
    if line.endswith("\n"):
        return f"{prefix}{line}"
    return f"{prefix}{line}\n{NO_NEWLINE_MARKER}"


def build_add_file_diff(path: str, content: str) -> str:
    """Deterministic add-file diff: every line of `content` prefixed with '+'."""
    lines = content.splitlines(keepends=True)
    body = "".join(_render("+", line) for line in lines)
    return f"{expected_headers(path, False)}@@ -0,0 +{1 if lines else 0},{len(lines)} @@\n{body}"


def build_noop_diff(path: str, original: str) -> str:
    """A context-only diff: valid syntax, no additions or removals."""
    lines = original.splitlines(keepends=True)[:CONTEXT_LINES]
    body = "".join(_render(" ", line) for line in lines)
    return f"{expected_headers(path, True)}@@ -1,{len(lines)} +1,{len(lines)} @@\n{body}"


def build_diff(path: str, original: str, updated: str, file_exists: bool = True) -> str:
    """Minimal unified diff between two texts with CONTEXT_LINES of context."""
    old = f"a/{path}" if file_exists else DEV_NULL
    chunks = difflib.unified_diff(
        original.splitlines(keepends=True),
        updated.splitlines(keepends=True),
        fromfile=old,
        tofile=f"b/{path}",
        n=CONTEXT_LINES,
    )
    out: list[str] = []
    for chunk in chunks:
        if chunk.startswith(("---", "+++", "@@")):
            out.append(chunk if chunk.endswith("\n") else chunk + "\n")
        else:
            out.append(_render(chunk[0], chunk[1:]))
    return "".join(out)


def validate_diff(path: str, diff: str, max_lines: int) -> None:
    """Raise DiffInvalid unless `diff` is a bounded single-file diff for `path`."""
    lines = diff.splitlines()
    if len(lines) > max_lines:
        raise DiffInvalid(f"diff too large: {len(lines)} lines (max {max_lines})")
    if not any(line.startswith("@@") for line in lines):
        raise DiffInvalid("diff missing @@ hunk marker")
    if len(lines) < 2:
        raise DiffInvalid("diff missing file headers")
    old, new = lines[0], lines[1]
    if old not in (f"--- a/{path}", f"--- {DEV_NULL}") or new != f"+++ b/{path}":
        raise DiffInvalid(f"path mismatch in diff headers for {path}")
    file_headers = sum(
        1 for prev, line in zip(lines, lines[1:]) if prev.startswith("--- ") and line.startswith("+++ ")
    )
    if file_headers != 1:
        raise DiffInvalid("diff must touch exactly one file")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def _parse_hunks(diff: str) -> list[tuple[int, list[str]]]:
    hunks: list[tuple[int, list[str]]] = []
    current: list[str] | None = None
    for line in diff.splitlines(keepends=True):
        match = _HUNK_HEADER.match(line)
        if match:
            current = []
            hunks.append((int(match.group(1)), current))
            continue
        if current is None:
            continue
        if line.startswith("\\"):
            # The marker belongs to the previous line.
            if current:
                current[-1] = current[-1].rstrip("\n")
            continue
        if line in ("\n", "\r\n"):
            line = " " + line
        if line[:1] in (" ", "+", "-"):
            current.append(line)
    return hunks


def _locate(lines: list[str], needle: list[str], hint: int, floor: int) -> int | None:
    if not needle:
        return min(max(hint, floor), len(lines))
    candidates = [hint] + list(range(floor, len(lines) - len(needle) + 1))
    for pos in candidates:
        if pos >= floor and lines[pos:pos + len(needle)] == needle:
            return pos
    return None


def apply_unified_diff(original: str, diff: str) -> str:
    """Apply every hunk of `diff` to `original`. Raises DiffInvalid on conflict."""
    lines = original.splitlines(keepends=True)
    out: list[str] = []
    cursor = 0
    for start, body in _parse_hunks(diff):
        old = [line[1:] for line in body if line[0] in (" ", "-")]
        new = [line[1:] for line in body if line[0] in (" ", "+")]
        # A pure insertion's start line is the line it follows.
        hint = max(start - 1, 0) if old else start
        pos = _locate(lines, old, hint, cursor)
        if pos is None:
            raise DiffInvalid(f"hunk starting at line {start} does not apply")
        out.extend(lines[cursor:pos])
        out.extend(new)
        cursor = pos + len(old)
    out.extend(lines[cursor:])
    return "".join(out)


def _target_paths(diff: str) -> tuple[str, str]:
    old = new = ""
    for line in diff.splitlines():
        if line.startswith("--- ") and not old:
            old = line[4:].strip()
        elif line.startswith("+++ ") and not new:
            new = line[4:].strip()
            break
    return old, new


def _strip_prefix(header_path: str) -> str:
    if header_path.startswith(("a/", "b/")):
        return header_path[2:]
    return header_path


class PatchOutcome(BaseModel):
    ok: bool
    detail: str = ""


class PatchApplier(Protocol):
    def apply(self, diff: str) -> PatchOutcome: ...


class GitPatchApplier:
    """Applies diffs with `git apply`, which also works outside a repository."""

    def __init__(self, root: str, timeout: float = 60.0) -> None:
        self._root = root
        self._timeout = timeout

    def apply(self, diff: str) -> PatchOutcome:
        try:
            completed = subprocess.run(
                ["git", "apply", "--recount", "--whitespace=nowarn", "-"],
                input=diff,
                cwd=self._root,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            return PatchOutcome(ok=False, detail=f"git apply timed out after {self._timeout}s")
        if completed.returncode != 0:
            return PatchOutcome(ok=False, detail=(completed.stderr or completed.stdout).strip() or "conflict")
        return PatchOutcome(ok=True)


class DirectPatchApplier:
    """Pure-Python applier for sandboxes without a VCS binary."""

    def __init__(self, root: str) -> None:
        self._root = root

    def apply(self, diff: str) -> PatchOutcome:
        old_header, new_header = _target_paths(diff)
        if not new_header:
            return PatchOutcome(ok=False, detail="missing +++ header")
        deleting = new_header == DEV_NULL
        relative = _strip_prefix(old_header if deleting else new_header)
        full = os.path.join(self._root, relative)

        if old_header == DEV_NULL:
            original = ""
        elif os.path.isfile(full):
            with open(full, "r", encoding="utf-8", newline="") as fh:
                original = fh.read()
        else:
            return PatchOutcome(ok=False, detail=f"{relative}: no such file")

        try:
            updated = apply_unified_diff(original, diff)
        except DiffInvalid as exc:
            return PatchOutcome(ok=False, detail=str(exc))

        if deleting:
            os.remove(full)
            return PatchOutcome(ok=True)
        os.makedirs(os.path.dirname(full) or self._root, exist_ok=True)
        with open(full, "w", encoding="utf-8", newline="") as fh:
            fh.write(updated)
        return PatchOutcome(ok=True)


def default_applier(root: str, timeout: float = 60.0) -> PatchApplier:
    if shutil.which("git"):
        return GitPatchApplier(root, timeout=timeout)
    return DirectPatchApplier(root)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class DiffGenerator:
    """Turns an edit intent into a minimal, validated unified diff."""

    def __init__(self, model, max_lines: int = 200) -> None:
        self._model = model
        self._max_lines = max_lines

    def generate(self, path: str, original: str, goal: str, reason: str, file_exists: bool) -> str:
        header_intent = bool(_HEADER_INTENT.search(f"{reason}\n{goal}"))

        # (1) idempotent short-circuit
        if file_exists and header_intent and self._header_present(original, reason, goal):
            return build_noop_diff(path, original)

        # (2) model request, (3) fence stripping
        try:
            raw = self._model.query("developer", self._prompt(path, original, goal, reason, file_exists))
        except OpenAIError as exc:
            raise DiffInvalid(f"developer model failed for {path}: {exc}") from exc
        diff = strip_fences(raw or "")

        # (4) repair or synthesize
        if "@@" in diff:
            diff = self._normalize_headers(diff, path, file_exists)
        else:
            diff = self._synthesize(diff, path, original, file_exists, header_intent)
        if not diff.endswith("\n"):
            diff += "\n"

        # (5) final validation
        validate_diff(path, diff, self._max_lines)
        return diff

    # ------------------------------------------------------------------

    @staticmethod
    def _prompt(path: str, original: str, goal: str, reason: str, file_exists: bool) -> str:
        return (
            f"{prompts.DIFF_SYSTEM}\n\n"
            f"Path:\n{path}\n\n"
            f"File exists:\n{'true' if file_exists else 'false'}\n\n"
            f"Goal:\n{goal}\n\n"
            f"Change intent:\n{reason}\n\n"
            f"ORIGINAL (full file contents):\n{original}"
        )

    @staticmethod
    def _header_present(original: str, reason: str, goal: str) -> bool:
        head = [line.strip() for line in original.splitlines()[:CONTEXT_LINES]]
        if not head:
            return False
        quoted = _QUOTED.findall(reason) or _QUOTED.findall(goal)
        if quoted:
            return any(q.strip() in line for q in quoted for line in head)
        return head[0].startswith(_COMMENT_PREFIXES)

    @staticmethod
    def _normalize_headers(diff: str, path: str, file_exists: bool) -> str:
        lines = diff.splitlines(keepends=True)
        first = next((i for i, line in enumerate(lines) if line.startswith(("--- ", "@@"))), 0)
        lines = lines[first:]
        if lines and lines[0].startswith("@@"):
            return expected_headers(path, file_exists) + "".join(lines)
        if len(lines) >= 2 and lines[1].startswith("+++ "):
            named = _strip_prefix(lines[1][4:].strip())
            if named == path:
                return expected_headers(path, file_exists) + "".join(lines[2:])
        return "".join(lines)

    @staticmethod
    def _synthesize(text: str, path: str, original: str, file_exists: bool, at_top: bool) -> str:
        added: list[str] = []
        for line in text.splitlines(keepends=True):
            if line.startswith(("--- ", "+++ ")):
                continue
            if line.startswith("-"):
                continue
            added.append(line[1:] if line.startswith("+") else line)
        if not "".join(added).strip():
            raise DiffInvalid("model returned no usable diff")
        if not added[-1].endswith("\n"):
            added[-1] += "\n"
        block = "".join(added)

        if not file_exists:
            return build_add_file_diff(path, block)
        if at_top:
            updated = block + original
        else:
            sep = "" if not original or original.endswith("\n") else "\n"
            updated = original + sep + block
        return build_diff(path, original, updated)
