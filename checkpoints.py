"""
Workspace checkpoints backed by a shadow git repository.

The repository lives in the task directory (GIT_DIR) and tracks the working
directory (GIT_WORK_TREE), so checkpoints never touch the project's own .git.
"""

import logging
import os
import subprocess
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_GIT_TIMEOUT = 60


class CheckpointError(Exception):
    """A checkpoint operation failed."""
    pass


class CheckpointTracker:
    """Commit / restore / diff snapshots of a working directory for one task."""

    def __init__(self, task_dir: str, working_directory: str):
        self.git_dir = os.path.join(task_dir, "checkpoints", ".git")
        self.working_directory = os.path.abspath(working_directory)
        self._initialized = False

    def _git(self, *args: str) -> str:
        env = dict(os.environ, GIT_DIR=self.git_dir, GIT_WORK_TREE=self.working_directory)
        try:
            result = subprocess.run(
                ["git", *args], cwd=self.working_directory, env=env,
                capture_output=True, text=True, timeout=_GIT_TIMEOUT,
            )
        except FileNotFoundError:
            raise CheckpointError("git is not installed")
        except subprocess.TimeoutExpired:
            raise CheckpointError(f"git {args[0]} timed out")
        if result.returncode != 0:
            raise CheckpointError(f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result.stdout

    def _ensure_repo(self) -> None:
        if self._initialized:
            return
        if not os.path.isdir(self.git_dir):
            os.makedirs(os.path.dirname(self.git_dir), exist_ok=True)
            self._git("init", "--quiet")
            self._git("config", "user.name", "task-engine")
            self._git("config", "user.email", "checkpoints@task-engine.local")
            self._git("config", "core.autocrlf", "false")
            logger.info(f"Initialized checkpoint repository at {self.git_dir}")
        self._initialized = True

    def commit(self, message: str = "checkpoint") -> str:
        """Snapshot the working directory. Returns the commit hash."""
        self._ensure_repo()
        self._git("add", "--all", ".")
        self._git("commit", "--quiet", "--allow-empty", "--no-verify", "-m", message)
        commit_hash = self._git("rev-parse", "HEAD").strip()
        logger.debug(f"Checkpoint {commit_hash[:8]}: {message}")
        return commit_hash

    def restore(self, commit_hash: str) -> None:
        """Reset the working directory to a checkpoint."""
        self._ensure_repo()
        self._git("reset", "--hard", "--quiet", commit_hash)
        self._git("clean", "-fd", "--quiet")
        logger.info(f"Restored checkpoint {commit_hash[:8]}")

    def diff_since(self, commit_hash: str, rhs_hash: Optional[str] = None) -> List[Dict[str, str]]:
        """Changed files between a checkpoint and the working tree (or another checkpoint)."""
        self._ensure_repo()
        if rhs_hash is None:
            self._git("add", "--all", ".")
            output = self._git("diff", "--cached", "--name-status", commit_hash)
        else:
            output = self._git("diff", "--name-status", commit_hash, rhs_hash)
        changes = []
        for line in output.splitlines():
            status, _, path = line.partition("\t")
            if path:
                changes.append({"status": status.strip(), "path": path.strip()})
        return changes
