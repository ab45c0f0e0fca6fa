import json
import os
import time

import pytest

from agent.errors import InvalidStateError
from agent.history import (
    HISTORY_FILE_NAME,
    ConversationHistoryStore,
    HistoryErrorCode,
    SyncStatus,
)


def _msg(role, text):
    return {"role": role, "content": [{"type": "text", "text": text}]}


def _store(tmp_path, debounce_ms=0):
    store = ConversationHistoryStore(str(tmp_path / "task"), debounce_ms=debounce_ms)
    assert store.initialize().success
    return store


def _read_file(tmp_path):
    with open(tmp_path / "task" / HISTORY_FILE_NAME, encoding="utf-8") as f:
        return json.load(f)


def test_add_message_persists_and_returns_index(tmp_path):
    store = _store(tmp_path)
    assert store.add_message(_msg("user", "hello")).data == 0
    assert store.add_message(_msg("assistant", "hi")).data == 1
    data = _read_file(tmp_path)
    assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
    assert "ts" in data["messages"][0]
    assert store.sync_status == SyncStatus.SYNCED


def test_invalid_role_is_rejected(tmp_path):
    store = _store(tmp_path)
    result = store.add_message({"role": "system", "content": []})
    assert not result.success
    assert result.error.code == HistoryErrorCode.INVALID_STATE
    assert len(store) == 0


def test_current_history_is_a_copy(tmp_path):
    store = _store(tmp_path)
    store.add_message(_msg("user", "hello"))
    messages = store.get_current_history().data
    messages[0]["content"][0]["text"] = "changed"
    assert store.get_current_history().data[0]["content"][0]["text"] == "hello"


def test_deleted_range_is_soft(tmp_path):
    store = _store(tmp_path)
    for i in range(3):
        store.add_message(_msg("user", f"u{i}"))
        store.add_message(_msg("assistant", f"a{i}"))
    assert store.set_deleted_range((2, 3)).success

    full = store.get_current_history().data
    view = store.get_current_history(for_model=True).data
    assert len(full) == 6
    assert [m["content"][0]["text"] for m in view] == ["u0", "a0", "u2", "a2"]
    assert _read_file(tmp_path)["deletedRange"] == [2, 3]


def test_illegal_range_is_refused(tmp_path):
    store = _store(tmp_path)
    for i in range(3):
        store.add_message(_msg("user", f"u{i}"))
        store.add_message(_msg("assistant", f"a{i}"))
    result = store.set_deleted_range((0, 1))
    assert not result.success
    assert result.error.code == HistoryErrorCode.INVALID_STATE
    assert store.deleted_range is None


def test_initialize_reads_legacy_list_format(tmp_path):
    task_dir = tmp_path / "task"
    task_dir.mkdir()
    (task_dir / HISTORY_FILE_NAME).write_text(json.dumps([_msg("user", "old")]), encoding="utf-8")
    store = ConversationHistoryStore(str(task_dir), debounce_ms=0)
    result = store.initialize()
    assert result.success
    assert result.data == 1
    assert store.deleted_range is None


def test_initialize_drops_invalid_stored_range(tmp_path):
    task_dir = tmp_path / "task"
    task_dir.mkdir()
    payload = {"messages": [_msg("user", "u"), _msg("assistant", "a")], "deletedRange": [2, 9]}
    (task_dir / HISTORY_FILE_NAME).write_text(json.dumps(payload), encoding="utf-8")
    store = ConversationHistoryStore(str(task_dir), debounce_ms=0)
    assert store.initialize().success
    assert store.deleted_range is None


def test_initialize_reports_corrupt_file(tmp_path):
    task_dir = tmp_path / "task"
    task_dir.mkdir()
    (task_dir / HISTORY_FILE_NAME).write_text("{not json", encoding="utf-8")
    store = ConversationHistoryStore(str(task_dir), debounce_ms=0)
    result = store.initialize()
    assert not result.success
    assert result.error.code == HistoryErrorCode.INITIALIZATION_ERROR


def test_overwrite_history_replaces_messages(tmp_path):
    store = _store(tmp_path)
    store.add_message(_msg("user", "a"))
    store.add_message(_msg("assistant", "b"))
    assert store.overwrite_history([_msg("user", "only")]).success
    assert len(store) == 1
    assert _read_file(tmp_path)["messages"][0]["content"][0]["text"] == "only"


def test_debounced_writes_are_flushed(tmp_path):
    store = _store(tmp_path, debounce_ms=60000)
    store.add_message(_msg("user", "hello"))
    assert store.sync_status == SyncStatus.PENDING
    assert not os.path.exists(tmp_path / "task" / HISTORY_FILE_NAME)
    assert store.flush().success
    assert store.sync_status == SyncStatus.SYNCED
    assert len(_read_file(tmp_path)["messages"]) == 1


def test_persistence_failure_keeps_memory(tmp_path):
    store = _store(tmp_path)
    # A directory where the file should be makes the final rename fail
    os.makedirs(tmp_path / "task" / HISTORY_FILE_NAME)
    result = store.add_message(_msg("user", "kept"))
    assert not result.success
    assert result.error.code == HistoryErrorCode.PERSISTENCE_ERROR
    assert store.sync_status == SyncStatus.UNSYNCED
    assert len(store) == 1
    assert store.last_persist_error is not None


def test_dispose_flushes_and_blocks_further_use(tmp_path):
    store = _store(tmp_path, debounce_ms=60000)
    store.add_message(_msg("user", "hello"))
    assert store.dispose().success
    assert store.disposed
    assert len(_read_file(tmp_path)["messages"]) == 1
    with pytest.raises(InvalidStateError):
        store.add_message(_msg("assistant", "late"))
    with pytest.raises(InvalidStateError):
        store.get_current_history()


def test_discarded_store_never_overwrites_a_newer_store(tmp_path):
    old = _store(tmp_path, debounce_ms=200)
    old.add_message(_msg("user", "OLD"))
    assert old.sync_status == SyncStatus.PENDING

    newer = _store(tmp_path)
    newer.add_message(_msg("user", "NEW"))
    old.discard()
    time.sleep(0.5)

    texts = [m["content"][0]["text"] for m in _read_file(tmp_path)["messages"]]
    assert texts == ["NEW"]
    assert old.disposed
    with pytest.raises(InvalidStateError):
        old.flush()
