import shutil

import pytest

from checkpoints import CheckpointError, CheckpointTracker

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def tracker(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    (work / "a.txt").write_text("one\n", encoding="utf-8")
    return CheckpointTracker(str(tmp_path / "task"), str(work)), work


def test_commit_diff_and_restore(tracker):
    tracker, work = tracker
    first = tracker.commit("start")
    (work / "a.txt").write_text("two\n", encoding="utf-8")
    (work / "b.txt").write_text("new\n", encoding="utf-8")

    changes = {c["path"]: c["status"] for c in tracker.diff_since(first)}
    assert changes == {"a.txt": "M", "b.txt": "A"}

    tracker.restore(first)
    assert (work / "a.txt").read_text(encoding="utf-8") == "one\n"
    assert not (work / "b.txt").exists()


def test_checkpoints_do_not_touch_project_git(tracker):
    tracker, work = tracker
    tracker.commit("start")
    assert not (work / ".git").exists()


def test_unknown_hash_raises(tracker):
    tracker, _ = tracker
    tracker.commit("start")
    with pytest.raises(CheckpointError):
        tracker.restore("0" * 40)
