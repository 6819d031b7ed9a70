# safety.py
# Path sandboxing policy.
#
# A textual sandbox: paths are resolved by string normalization only, never by
# following symlinks. Every filesystem handler in the tool bus calls guard()
# before touching disk, independently of plan validation.

import os
import re

import pathspec

from codeloop.config import AgentConfig
from codeloop.errors import PathNotAllowed

SYSTEM_DIRS = (
    "/etc",
    "/usr",
    "/var",
    "/bin",
    "/sbin",
    "/lib",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
)

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


class Safety:
    """Decides whether a repository-relative path may be read, written or deleted."""

    def __init__(self, config: AgentConfig) -> None:
        self._root = os.path.normpath(os.path.abspath(str(config.repo_path)))
        if _under_system_dir(self._root):
            raise ValueError(f"sandbox root {self._root} is inside a system directory; no path under it could be allowed")
        self._allow = pathspec.PathSpec.from_lines("gitwildmatch", config.allow_globs)
        self._deny = pathspec.PathSpec.from_lines("gitwildmatch", config.deny_globs)

    @property
    def root(self) -> str:
        return self._root

    def allowed(self, relative_path: str | None) -> bool:
        path = (relative_path or "").strip()
        if not path:
            return False

        # (a) absolute, home-relative, drive-letter or root-level parent escapes
        if path.startswith(("/", "\\", "~")) or _DRIVE_LETTER.match(path):
            return False
        if path == ".." or path.startswith(("../", "..\\")):
            return False

        # (b) leading ./
        while path.startswith("./"):
            path = path[2:]
        if not path:
            return False

        # (c) textual containment under the sandbox root
        full = os.path.normpath(os.path.join(self._root, path))
        if not full.startswith(self._root + os.sep):
            return False

        # (d) system directories, regardless of where the root lives
        if _under_system_dir(full):
            return False

        # (e) configured globs
        relative = os.path.relpath(full, self._root).replace(os.sep, "/")
        return self._allow.match_file(relative) and not self._deny.match_file(relative)

    def guard(self, relative_path: str | None) -> str:
        """Return the absolute path for `relative_path` or raise PathNotAllowed."""
        if not self.allowed(relative_path):
            raise PathNotAllowed(f"path not allowed: {relative_path!r}")
        return self.resolve(relative_path)

    def resolve(self, relative_path: str) -> str:
        path = relative_path.strip()
        while path.startswith("./"):
            path = path[2:]
        return os.path.normpath(os.path.join(self._root, path))


def _under_system_dir(path: str) -> bool:
    return any(path == d or path.startswith(d + os.sep) for d in SYSTEM_DIRS)
