"""Path confinement under a safe root directory."""

from __future__ import annotations

import os
from pathlib import Path


class PathValidator:
    """Resolve user-supplied relative paths without escaping ``safe_root``.

    Rejects NUL bytes, parent-directory segments, and anything whose fully
    resolved location (symlinked directories included) falls outside the
    root. A final component that is itself a symlink is rejected too. A path
    that does not exist yet is accepted so that write tools can create it.
    """

    def __init__(self, safe_root: str | Path) -> None:
        self.safe_root = Path(safe_root).resolve()

    def is_path_safe(self, requested_path: str) -> bool:
        return self.resolve_path_safely(requested_path) is not None

    def resolve_path_safely(self, requested_path: str) -> Path | None:
        if "\x00" in requested_path:
            return None
        normalized = os.path.normpath(requested_path)
        if ".." in Path(normalized).parts:
            return None
        candidate = self.safe_root / normalized
        if candidate.is_symlink():
            return None
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            return None
        if resolved != self.safe_root and self.safe_root not in resolved.parents:
            return None
        return resolved
