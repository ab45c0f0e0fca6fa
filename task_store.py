"""
Task persistence.
Each task gets its own directory holding the conversation history (owned by
agent.history.ConversationHistoryStore) and a small metadata file, so a task
can be listed, resumed after a crash or abort, and deleted.
"""

import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Dict, Any, List, Optional

from config import app_config

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "task_metadata.json"
HISTORY_FILE_NAME = "api_conversation_history.json"


@dataclass
class HistoryItem:
    """Metadata for one persisted task."""
    id: str
    ts: float
    task: str
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0
    status: str = "active"
    cancel_reason: Optional[str] = None
    working_directory: str = ""
    model_id: str = ""

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


def _summary(task: str, limit: int = 80) -> str:
    text = " ".join(task.split())
    return text if len(text) <= limit else text[:limit - 3] + "..."


class TaskStore:
    """
    Manages task directories on disk.

    File layout:  {base_dir}/{task_id}/task_metadata.json
                  {base_dir}/{task_id}/api_conversation_history.json
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or app_config.tasks_directory
        os.makedirs(self.base_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def create_task(self, task: str, working_directory: str = "", model_id: str = "") -> HistoryItem:
        """Create the directory and metadata for a new task."""
        now = time.time()
        task_id = f"{int(now * 1000)}-{uuid.uuid4().hex[:8]}"
        os.makedirs(self.task_dir(task_id), exist_ok=True)
        item = HistoryItem(
            id=task_id,
            ts=now,
            task=task,
            working_directory=os.path.abspath(working_directory) if working_directory else "",
            model_id=model_id,
        )
        self.save_item(item)
        logger.info(f"Task created: {task_id} ({_summary(task)})")
        return item

    def task_dir(self, task_id: str) -> str:
        if not task_id or os.sep in task_id or task_id in (".", ".."):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return os.path.join(self.base_dir, task_id)

    def save_item(self, item: HistoryItem) -> str:
        """Write the task metadata atomically. Returns the file path."""
        directory = self.task_dir(item.id)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, METADATA_FILE_NAME)

        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(asdict(item), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.debug(f"Task metadata saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return path

    def load_item(self, task_id: str) -> Optional[HistoryItem]:
        """Load task metadata by ID, or None if the task does not exist."""
        path = os.path.join(self.task_dir(task_id), METADATA_FILE_NAME)
        if not os.path.exists(path):
            return None
        return self._read_item(path)

    def list_tasks(self) -> List[HistoryItem]:
        """All tasks, newest first."""
        items: List[HistoryItem] = []
        for name in os.listdir(self.base_dir):
            path = os.path.join(self.base_dir, name, METADATA_FILE_NAME)
            if os.path.isfile(path):
                item = self._read_item(path)
                if item:
                    items.append(item)
        items.sort(key=lambda i: i.ts, reverse=True)
        return items

    def delete_task(self, task_id: str) -> bool:
        """Remove a task directory. Returns True if deleted."""
        directory = self.task_dir(task_id)
        if os.path.isdir(directory):
            shutil.rmtree(directory)
            logger.info(f"Task deleted: {task_id}")
            return True
        return False

    def read_history(self, task_id: str) -> Optional[Dict[str, Any]]:
        """The raw persisted history ({messages, deletedRange?}) for inspection."""
        path = os.path.join(self.task_dir(task_id), HISTORY_FILE_NAME)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, list):
            return {"messages": data}
        return data

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _read_item(self, path: str) -> Optional[HistoryItem]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return HistoryItem(
                id=data["id"],
                ts=data.get("ts", 0.0),
                task=data.get("task", ""),
                tokens_in=data.get("tokens_in", 0),
                tokens_out=data.get("tokens_out", 0),
                cache_writes=data.get("cache_writes", 0),
                cache_reads=data.get("cache_reads", 0),
                total_cost=data.get("total_cost", 0.0),
                status=data.get("status", "active"),
                cancel_reason=data.get("cancel_reason"),
                working_directory=data.get("working_directory", ""),
                model_id=data.get("model_id", ""),
            )
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Failed to read task metadata {path}: {e}")
            return None
