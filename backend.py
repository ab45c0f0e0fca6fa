"""
Workspace access for tools.

Every file and command operation a tool performs goes through a Backend bound
to the task's working directory. Paths are resolved against that directory and
may not leave it.
"""

import logging
import os
import re
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL when a command is stopped
_KILL_GRACE_SECONDS = 2.0
_SEARCH_TIMEOUT = 15
_MATCHES_PER_FILE = 100

_MATCH_LINE_RE = re.compile(r"^(.*?):(\d+):(.*)$")


@dataclass
class DirEntry:
    name: str
    is_dir: bool
    size: int = 0


@dataclass
class CommandResult:
    """A finished shell command."""
    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0


@dataclass
class SearchMatch:
    path: str  # relative to the working directory
    line: int
    text: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.text}"


class Backend(ABC):
    """File and command operations scoped to one working directory."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Absolute path every relative path is resolved against."""

    def resolve(self, path: str) -> str:
        """Absolute, symlink-free form of path.
        Raises PermissionError when the result is outside the working directory."""
        root = os.path.realpath(self.working_directory)
        full = os.path.realpath(os.path.join(root, path or "."))
        if full != root and not full.startswith(root + os.sep):
            raise PermissionError(f"Access denied: {path!r} is outside the working directory")
        return full

    def relative(self, full_path: str) -> str:
        return os.path.relpath(full_path, os.path.realpath(self.working_directory))

    @abstractmethod
    def read_text(self, path: str) -> str:
        ...

    @abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Create or overwrite a file, creating parent directories."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        ...

    @abstractmethod
    def remove(self, path: str) -> None:
        ...

    @abstractmethod
    def list_dir(self, path: str) -> List[DirEntry]:
        """Entries of a directory sorted by name."""

    @abstractmethod
    def run_command(self, command: str, timeout: float = 120) -> CommandResult:
        """Run a shell command in the working directory.
        Raises TimeoutError if it does not finish in time."""

    @abstractmethod
    def search(self, regex: str, path: str, file_glob: Optional[str] = None) -> List[SearchMatch]:
        """Lines matching regex under path. Raises ValueError for a pattern the searcher rejects."""

    def cancel_running_command(self) -> bool:
        """Stop the command in flight, if any. Returns True if one was stopped."""
        return False

    def close(self) -> None:
        self.cancel_running_command()


_has_ripgrep: Optional[bool] = None


def ripgrep_available() -> bool:
    global _has_ripgrep
    if _has_ripgrep is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _has_ripgrep = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _has_ripgrep = False
    return _has_ripgrep


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # Commands run in their own session, so the group id is the shell's pid
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


class LocalBackend(Backend):
    """Backend over the local filesystem and /bin/sh."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._lock = threading.Lock()
        self._running: Optional[subprocess.Popen] = None

    @property
    def working_directory(self) -> str:
        return self._working_directory

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def read_text(self, path: str) -> str:
        with open(self.resolve(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_text(self, path: str, content: str) -> None:
        full = self.resolve(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def exists(self, path: str) -> bool:
        return os.path.exists(self.resolve(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self.resolve(path))

    def remove(self, path: str) -> None:
        os.remove(self.resolve(path))

    def list_dir(self, path: str) -> List[DirEntry]:
        entries = []
        with os.scandir(self.resolve(path)) as it:
            for entry in it:
                if entry.is_dir():
                    entries.append(DirEntry(entry.name, True))
                elif entry.is_file():
                    entries.append(DirEntry(entry.name, False, entry.stat().st_size))
        entries.sort(key=lambda e: e.name)
        return entries

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run_command(self, command: str, timeout: float = 120) -> CommandResult:
        started = time.monotonic()
        proc = subprocess.Popen(
            command, shell=True, cwd=self._working_directory,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE,
            text=True, errors="replace", start_new_session=True,
        )
        with self._lock:
            self._running = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._stop(proc)
            proc.communicate()
            raise TimeoutError(f"Command timed out after {timeout}s: {command}")
        finally:
            with self._lock:
                if self._running is proc:
                    self._running = None
        return CommandResult(stdout or "", stderr or "", proc.returncode, time.monotonic() - started)

    def cancel_running_command(self) -> bool:
        with self._lock:
            proc = self._running
        if proc is None or proc.poll() is not None:
            return False
        logger.info(f"Stopping running command (pid {proc.pid})")
        self._stop(proc)
        return True

    @staticmethod
    def _stop(proc: subprocess.Popen) -> None:
        """SIGTERM the command's process group now and SIGKILL it if still alive after a grace period.
        Never blocks, since it is called from the event loop on abort."""
        _signal_group(proc, signal.SIGTERM)

        def kill_if_alive():
            if proc.poll() is None:
                _signal_group(proc, signal.SIGKILL)

        timer = threading.Timer(_KILL_GRACE_SECONDS, kill_if_alive)
        timer.daemon = True
        timer.start()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, regex: str, path: str, file_glob: Optional[str] = None) -> List[SearchMatch]:
        target = self.resolve(path)
        if ripgrep_available():
            cmd = ["rg", "--line-number", "--with-filename", "--no-heading", "--color=never",
                   "--max-count", str(_MATCHES_PER_FILE)]
            if file_glob:
                cmd.extend(["--glob", file_glob])
        else:
            cmd = ["grep", "-rnHE", "--color=never"]
            if file_glob:
                cmd.extend(["--include", file_glob])
        cmd.extend(["-e", regex, target])

        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace",
                                timeout=_SEARCH_TIMEOUT, cwd=self._working_directory)
        # Exit 1 only means no matches
        if result.returncode == 2:
            raise ValueError(f"Invalid regex {regex!r}: {result.stderr.strip()}")

        matches = []
        for line in result.stdout.splitlines():
            m = _MATCH_LINE_RE.match(line)
            if m:
                matches.append(SearchMatch(self.relative(m.group(1)), int(m.group(2)), m.group(3)))
        return matches
