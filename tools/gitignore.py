"""Which workspace paths file listings skip: .gitignore rules plus build and VCS noise."""

import logging
import os
from typing import Dict, Optional, Tuple

import pathspec

logger = logging.getLogger(__name__)

_NOISE_DIRS = frozenset({
    ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".ruff_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".cache", "coverage", "htmlcov",
})

_NOISE_SUFFIXES = (
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
    ".min.js", ".min.css", ".map", ".lock",
)


class IgnoreRules:
    """Ignore matcher for one project root."""

    def __init__(self, spec: Optional[pathspec.PathSpec] = None):
        self.spec = spec

    def ignores(self, rel_path: str, is_dir: bool) -> bool:
        name = os.path.basename(rel_path)
        if is_dir and name in _NOISE_DIRS:
            return True
        if not is_dir and name.endswith(_NOISE_SUFFIXES):
            return True
        if self.spec is None:
            return False
        return self.spec.match_file(rel_path + "/" if is_dir else rel_path)


# root -> (.gitignore mtime or None, rules)
_cache: Dict[str, Tuple[Optional[float], IgnoreRules]] = {}


def ignore_rules(root: str) -> IgnoreRules:
    """Rules for a project root. Re-read whenever the root's .gitignore changes."""
    path = os.path.join(root, ".gitignore")
    try:
        mtime: Optional[float] = os.path.getmtime(path)
    except OSError:
        mtime = None

    cached = _cache.get(root)
    if cached and cached[0] == mtime:
        return cached[1]

    spec = None
    if mtime is not None:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                spec = pathspec.GitIgnoreSpec.from_lines(f)
        except OSError as e:
            logger.debug(f"Could not read {path}: {e}")
    rules = IgnoreRules(spec)
    _cache[root] = (mtime, rules)
    return rules


def invalidate_gitignore_cache(root: Optional[str] = None) -> None:
    if root:
        _cache.pop(root, None)
    else:
        _cache.clear()
