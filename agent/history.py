"""
Conversation history store.

The only component that reads or writes a task's api_conversation_history.json.
Operations return a HistoryResult instead of raising; only use after dispose()
raises InvalidStateError. Persistence is a debounced, best-effort mirror of the
in-memory log: a failed write is reported and leaves memory untouched.
"""

import copy
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config import app_config

from .errors import InvalidStateError
from .truncation import DeletedRange, truncated_messages, validate_range

logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "api_conversation_history.json"


class HistoryErrorCode(str, Enum):
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INVALID_STATE = "INVALID_STATE"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"      # a debounced write is scheduled
    UNSYNCED = "unsynced"    # the last write failed; disk is behind memory


@dataclass
class HistoryError:
    code: HistoryErrorCode
    message: str


@dataclass
class HistoryResult:
    success: bool
    data: Any = None
    error: Optional[HistoryError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "HistoryResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: HistoryErrorCode, message: str, data: Any = None) -> "HistoryResult":
        return cls(success=False, data=data, error=HistoryError(code, message))


class ConversationHistoryStore:
    """Append-oriented message log with a soft-deleted truncation range."""

    def __init__(
        self,
        task_dir: str,
        debounce_ms: Optional[int] = None,
        on_persist_error: Optional[Callable[[HistoryError], None]] = None,
    ):
        self.task_dir = task_dir
        self.file_path = os.path.join(task_dir, HISTORY_FILE_NAME)
        self._debounce = (debounce_ms if debounce_ms is not None
                          else app_config.history_persist_debounce_ms) / 1000
        self._on_persist_error = on_persist_error

        self._messages: List[Dict[str, Any]] = []
        self._deleted_range: Optional[DeletedRange] = None
        self._lock = threading.RLock()
        # Serialises file writes; at most one writer at a time
        self._write_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._disposed = False
        # Set once a newer store owns the file; no write may happen after it
        self._discarded = False
        self._sync_status = SyncStatus.SYNCED
        self.last_persist_error: Optional[HistoryError] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def initialize(self) -> HistoryResult:
        """Load the history file if it exists. A missing file is an empty history."""
        self._check_alive()
        try:
            os.makedirs(self.task_dir, exist_ok=True)
            if not os.path.exists(self.file_path):
                return HistoryResult.ok(0)
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load conversation history {self.file_path}: {e}")
            return HistoryResult.fail(HistoryErrorCode.INITIALIZATION_ERROR, str(e))

        # Older files are a bare list of messages
        if isinstance(data, list):
            messages, deleted = data, None
        elif isinstance(data, dict):
            messages, deleted = data.get("messages", []), data.get("deletedRange")
        else:
            return HistoryResult.fail(HistoryErrorCode.INITIALIZATION_ERROR,
                                      f"Unexpected history format: {type(data).__name__}")
        deleted_range = tuple(deleted) if deleted else None
        reason = validate_range(deleted_range, len(messages))
        if reason:
            logger.warning(f"Ignoring stored deleted range: {reason}")
            deleted_range = None

        with self._lock:
            self._messages = list(messages)
            self._deleted_range = deleted_range
        logger.info(f"Loaded {len(messages)} messages from {self.file_path}")
        return HistoryResult.ok(len(messages))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_message(self, message: Dict[str, Any]) -> HistoryResult:
        self._check_alive()
        if message.get("role") not in ("user", "assistant"):
            return HistoryResult.fail(HistoryErrorCode.INVALID_STATE,
                                      f"Invalid message role: {message.get('role')!r}")
        entry = dict(message)
        entry.setdefault("ts", time.time())
        with self._lock:
            self._messages.append(entry)
            index = len(self._messages) - 1
        return self._persist(index)

    def overwrite_history(self, messages: List[Dict[str, Any]]) -> HistoryResult:
        """Replace the whole log. The deleted range is dropped if it no longer fits."""
        self._check_alive()
        with self._lock:
            self._messages = [dict(m) for m in messages]
            if validate_range(self._deleted_range, len(self._messages)):
                self._deleted_range = None
            count = len(self._messages)
        return self._persist(count)

    def set_deleted_range(self, deleted_range: Optional[DeletedRange]) -> HistoryResult:
        self._check_alive()
        with self._lock:
            reason = validate_range(deleted_range, len(self._messages))
            if reason:
                return HistoryResult.fail(HistoryErrorCode.INVALID_STATE, reason)
            self._deleted_range = tuple(deleted_range) if deleted_range else None
        return self._persist(self._deleted_range)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_history(self, for_model: bool = False) -> HistoryResult:
        """Full log for persistence/replay, or the truncated view sent to the model."""
        self._check_alive()
        with self._lock:
            messages = copy.deepcopy(self._messages)
            deleted = self._deleted_range
        if for_model:
            messages = truncated_messages(messages, deleted)
        return HistoryResult.ok(messages)

    @property
    def deleted_range(self) -> Optional[DeletedRange]:
        return self._deleted_range

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, data: Any) -> HistoryResult:
        if self._debounce <= 0:
            error = self._write()
            if error:
                return HistoryResult(success=False, data=data, error=error)
            return HistoryResult.ok(data)
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._write)
            self._timer.daemon = True
            self._sync_status = SyncStatus.PENDING
            self._timer.start()
        return HistoryResult.ok(data)

    def _write(self) -> Optional[HistoryError]:
        with self._lock:
            self._timer = None
            payload: Dict[str, Any] = {"messages": copy.deepcopy(self._messages)}
            if self._deleted_range:
                payload["deletedRange"] = list(self._deleted_range)

        with self._write_lock:
            if self._discarded:
                return None
            tmp_path = self.file_path + ".tmp"
            try:
                os.makedirs(self.task_dir, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, ensure_ascii=False)
                os.replace(tmp_path, self.file_path)
            except (OSError, TypeError, ValueError) as e:
                # Memory stays the source of truth; the caller sees an unsynced status
                error = HistoryError(HistoryErrorCode.PERSISTENCE_ERROR, str(e))
                self.last_persist_error = error
                self._sync_status = SyncStatus.UNSYNCED
                logger.warning(f"Failed to persist conversation history: {e}")
                if os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        pass
                if self._on_persist_error is not None:
                    self._on_persist_error(error)
                return error

        with self._lock:
            if self._timer is None:
                self._sync_status = SyncStatus.SYNCED
        self.last_persist_error = None
        return None

    def flush(self) -> HistoryResult:
        """Write any pending state now and report the outcome."""
        self._check_alive()
        return self._flush()

    def _flush(self) -> HistoryResult:
        with self._lock:
            pending = self._timer is not None or self._sync_status != SyncStatus.SYNCED
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if not pending:
            return HistoryResult.ok()
        error = self._write()
        if error:
            return HistoryResult(success=False, error=error)
        return HistoryResult.ok()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise InvalidStateError("ConversationHistoryStore has been disposed")

    def dispose(self) -> HistoryResult:
        """Flush pending writes and release the store. Later calls raise InvalidStateError."""
        self._check_alive()
        result = self._flush()
        self._disposed = True
        return result

    def discard(self) -> None:
        """Release the store without writing. Pending debounced writes are dropped,
        so a store that lost ownership of its file cannot overwrite the new owner."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._discarded = True
            self._disposed = True
        logger.debug(f"Discarded unsaved history for {self.file_path}")

    @property
    def disposed(self) -> bool:
        return self._disposed
