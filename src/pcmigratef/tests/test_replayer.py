"""
选择性重放模块测试
"""
import os
from datetime import datetime

import pytest

from pcmigratef.core.models import ChangeEntry, ChangeSet, ChangeType
from pcmigratef.core.planner import load_plan, save_plan
from pcmigratef.core.replayer import SelectiveReplayer
from pcmigratef.core.skip_policy import SkipPolicy


@pytest.fixture
def dirs(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    (src / "Documents").mkdir(parents=True)
    (src / "Documents" / "a.txt").write_text("alpha", encoding="utf-8")
    (src / "b.txt").write_text("beta", encoding="utf-8")
    (src / "OneDrive").mkdir()
    (src / "OneDrive" / "c.txt").write_text("cloud", encoding="utf-8")
    dst.mkdir()
    (dst / "extra.txt").write_text("keep me", encoding="utf-8")
    return src, dst


def make_changeset(src, dst, entries):
    return ChangeSet(str(src), str(dst), datetime.now(), entries)


class TestSelectiveReplayer:
    """测试重放"""

    def test_copies_copyable_entries(self, dirs, tmp_path):
        src, dst = dirs
        changeset = make_changeset(src, dst, [
            ChangeEntry(ChangeType.NEW_FILE, 5, "Documents\\a.txt"),
            ChangeEntry(ChangeType.OLDER, 4, "b.txt"),
            ChangeEntry(ChangeType.EXTRA_FILE, 7, "extra.txt"),
        ])
        log_path = tmp_path / "replay.log"
        report = SelectiveReplayer(log_path).replay(changeset)

        assert report.success_count == 2
        assert report.failed_count == 0
        assert (dst / "Documents" / "a.txt").read_text(encoding="utf-8") == "alpha"
        # 重放器从不删除
        assert (dst / "extra.txt").exists()
        log = log_path.read_text(encoding="utf-8")
        assert "OK" in log
        assert "Documents\\a.txt" in log

    def test_idempotent(self, dirs):
        src, dst = dirs
        changeset = make_changeset(src, dst, [ChangeEntry(ChangeType.NEW_FILE, 5, "Documents\\a.txt")])
        replayer = SelectiveReplayer()
        replayer.replay(changeset)
        first = (dst / "Documents" / "a.txt").read_bytes()
        report = replayer.replay(changeset)
        assert report.success_count == 1
        assert (dst / "Documents" / "a.txt").read_bytes() == first

    def test_skip_policy_never_touches_path(self, dirs):
        src, dst = dirs
        changeset = make_changeset(src, dst, [ChangeEntry(ChangeType.NEW_FILE, 5, "OneDrive\\c.txt")])
        report = SelectiveReplayer().replay(changeset, SkipPolicy.cloud_placeholders())
        assert report.skipped == 1
        assert report.outcomes == []
        assert not (dst / "OneDrive").exists()

    def test_failure_does_not_stop_replay(self, dirs):
        src, dst = dirs
        changeset = make_changeset(src, dst, [
            ChangeEntry(ChangeType.NEW_FILE, 1, "missing.txt"),
            ChangeEntry(ChangeType.NEW_FILE, 4, "b.txt"),
        ])
        report = SelectiveReplayer().replay(changeset)
        assert report.failed_count == 1
        assert report.success_count == 1
        assert report.outcomes[0].error
        assert (dst / "b.txt").exists()

    def test_rejects_escaping_paths(self, dirs):
        src, dst = dirs
        changeset = make_changeset(src, dst, [
            ChangeEntry(ChangeType.NEW_FILE, 1, "..\\escape.txt"),
            ChangeEntry(ChangeType.NEW_FILE, 1, "C:\\Windows\\x.txt"),
        ])
        report = SelectiveReplayer().replay(changeset)
        assert report.failed_count == 2
        assert not os.path.exists(dst.parent / "escape.txt")

    def test_replays_saved_plan(self, dirs, tmp_path):
        """计划写入磁盘再读回后重放结果一致"""
        src, dst = dirs
        changeset = make_changeset(src, dst, [ChangeEntry(ChangeType.NEWER, 4, "b.txt")])
        plan = save_plan(changeset, tmp_path / "plan.json")
        report = SelectiveReplayer().replay(load_plan(plan))
        assert report.success_count == 1
        assert (dst / "b.txt").read_text(encoding="utf-8") == "beta"
