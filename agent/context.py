"""
Per-task context for the task loop.
Handles file snapshots for in-progress edits, approval tracking and the
environment details attached to each user turn.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from config import AutoApprovalConfig, auto_approval_config
from tools import EDIT_TOOLS, approval_class, list_files

from .prompts import environment_details

logger = logging.getLogger(__name__)


class ContextMixin:
    """Mixin providing edit snapshots, approval state and environment details.

    Expects the host class to provide:
    - self.backend (Backend)
    - self.working_directory (str)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # abs path -> original content, None for files the edit created
        self._file_snapshots: Dict[str, Optional[str]] = {}
        self._edited_files: List[str] = []
        # Operations the user approved once and should not be asked about again
        self._approved_commands: set = set()
        self._consecutive_auto_approved: int = 0
        self.auto_approval: AutoApprovalConfig = auto_approval_config

    # ------------------------------------------------------------------
    # File Snapshots
    # ------------------------------------------------------------------

    def _snapshot_file(self, tool_name: str, tool_input: Dict[str, Any]) -> None:
        """Capture the original content of a file before an edit tool touches it.
        First snapshot wins until the snapshots are cleared."""
        if tool_name not in EDIT_TOOLS:
            return
        rel_path = tool_input.get("path", "")
        if not rel_path:
            return
        try:
            abs_path = self.backend.resolve(rel_path)
        except PermissionError:
            # The tool itself will refuse the path
            return
        if abs_path in self._file_snapshots:
            return
        try:
            self._file_snapshots[abs_path] = self.backend.read_text(rel_path)
        except FileNotFoundError:
            self._file_snapshots[abs_path] = None  # new file
        except (OSError, ValueError) as e:
            logger.debug(f"Could not snapshot {rel_path}: {e}")

    def clear_snapshots(self) -> None:
        """Forget snapshots once an edit has completed."""
        self._file_snapshots = {}

    def revert_all(self) -> List[str]:
        """Revert files touched by an in-progress edit.
        Created files are removed; modified files get their original content back.
        Returns the reverted paths."""
        reverted = []
        for abs_path, original in self._file_snapshots.items():
            try:
                if original is None:
                    if self.backend.exists(abs_path):
                        self.backend.remove(abs_path)
                        reverted.append(abs_path)
                else:
                    self.backend.write_text(abs_path, original)
                    reverted.append(abs_path)
            except OSError as e:
                logger.error(f"Failed to revert {abs_path}: {e}")
        self._file_snapshots = {}
        if reverted:
            logger.info(f"Reverted {len(reverted)} in-progress edit(s)")
        return reverted

    def _note_edited(self, tool_input: Dict[str, Any]) -> None:
        path = tool_input.get("path", "")
        if path and path not in self._edited_files:
            self._edited_files.append(path)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def _approval_key(self, tool_name: str, tool_input: Dict[str, Any]) -> str:
        """Return a hashable key that uniquely identifies an operation for approval purposes."""
        if tool_name == "execute_command":
            return f"cmd:{tool_input.get('command', '')}"
        return f"{tool_name}:{json.dumps(tool_input, sort_keys=True)}"

    def was_previously_approved(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return self._approval_key(tool_name, tool_input) in self._approved_commands

    def remember_approval(self, tool_name: str, tool_input: Dict[str, Any]) -> None:
        self._approved_commands.add(self._approval_key(tool_name, tool_input))

    def _should_auto_approve(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        cfg = self.auto_approval
        if not cfg.enabled:
            return False
        kind = approval_class(tool_name)
        if kind == "read":
            return cfg.read_files
        if kind == "edit":
            return cfg.edit_files
        if kind == "command":
            # The model flags commands with side effects; those always ask
            risky = str(tool_input.get("requires_approval", "")).strip().lower() == "true"
            return cfg.execute_commands and not risky
        return False

    def _auto_approval_limit_reached(self) -> bool:
        cfg = self.auto_approval
        return cfg.enabled and self._consecutive_auto_approved >= cfg.max_requests

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def _environment_details(self, include_file_details: bool = False) -> str:
        listing = None
        if include_file_details:
            result = list_files(".", recursive=True, backend=self.backend,
                                working_directory=self.working_directory)
            listing = result.output if result.success else f"(unable to list files: {result.error})"
        return environment_details(self.working_directory, listing, list(self._edited_files))
