"""
并行复制与进度汇总测试
"""
import threading

from pcmigratef.core.models import StageStatus, TransferMode, TransferSpec, TuningParams
from pcmigratef.core.parallel import ParallelProfileCopier, aggregate
from pcmigratef.core.progress import ProgressAggregator


def template(mode=TransferMode.BULK_COPY, **kwargs):
    return TransferSpec(
        source="\\\\OLDPC\\C$\\Users",
        destination="\\\\NEWPC\\C$\\Users",
        mode=mode,
        tuning=TuningParams(thread_count=8),
        **kwargs,
    )


class ExplodingInvoker:
    """对指定配置文件抛出异常的调用器"""

    def __init__(self, inner, explode_label):
        self.inner = inner
        self.explode_label = explode_label

    def invoke(self, spec, log_path, on_line=None, on_progress=None):
        if spec.label == self.explode_label:
            raise RuntimeError("boom")
        return self.inner.invoke(spec, log_path, on_line)


class TestParallelProfileCopier:
    """测试并行复制"""

    def test_one_result_per_profile_in_input_order(self, tmp_path, fake_invoker_cls):
        invoker = fake_invoker_cls(default=1)
        copier = ParallelProfileCopier(invoker)
        results = copier.copy_profiles(["carol", "alice", "bob"], template(), log_root=tmp_path)
        assert list(results) == ["carol", "alice", "bob"]
        sources = sorted(spec.source for spec in invoker.specs)
        assert sources == [
            "\\\\OLDPC\\C$\\Users\\alice",
            "\\\\OLDPC\\C$\\Users\\bob",
            "\\\\OLDPC\\C$\\Users\\carol",
        ]
        assert results["alice"].label == "precopy:alice"

    def test_failure_is_isolated(self, tmp_path, fake_invoker_cls):
        invoker = fake_invoker_cls(codes={"precopy:bob": 16}, default=1)
        results = ParallelProfileCopier(invoker).copy_profiles(["alice", "bob", "carol"], template(), log_root=tmp_path)
        assert results["bob"].is_fatal
        assert not results["alice"].is_fatal
        assert not results["carol"].is_fatal

    def test_worker_exception_becomes_fatal_result(self, tmp_path, fake_invoker_cls):
        invoker = ExplodingInvoker(fake_invoker_cls(default=0), "precopy:bob")
        results = ParallelProfileCopier(invoker).copy_profiles(["alice", "bob"], template(), log_root=tmp_path)
        assert results["bob"].exit_code == 16
        assert results["alice"].exit_code == 0

    def test_progress_reaches_100(self, tmp_path, fake_invoker_cls):
        progress = ProgressAggregator()
        ParallelProfileCopier(fake_invoker_cls(), progress).copy_profiles(
            ["alice", "bob"], template(), stage="cutover", log_root=tmp_path
        )
        assert progress.snapshot() == {"cutover:alice": 100, "cutover:bob": 100}

    def test_concurrency_limit(self, tmp_path, fake_invoker_cls):
        inner = fake_invoker_cls()
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        class CountingInvoker:
            def invoke(self, spec, log_path, on_line=None, on_progress=None):
                with lock:
                    state["active"] += 1
                    state["peak"] = max(state["peak"], state["active"])
                try:
                    threading.Event().wait(0.02)
                    return inner.invoke(spec, log_path, on_line)
                finally:
                    with lock:
                        state["active"] -= 1

        profiles = [f"user{i}" for i in range(8)]
        ParallelProfileCopier(CountingInvoker()).copy_profiles(profiles, template(), concurrency_limit=2, log_root=tmp_path)
        assert state["peak"] <= 2

    def test_mirror_scope_follows_profile(self, tmp_path, fake_invoker_cls):
        invoker = fake_invoker_cls()
        spec = template(
            mode=TransferMode.MIRROR,
            mirror_scope="\\\\NEWPC\\C$\\Users",
            mirror_confirmation="MIRROR",
        )
        ParallelProfileCopier(invoker).copy_profiles(["alice"], spec, log_root=tmp_path)
        assert invoker.specs[0].mirror_scope == "\\\\NEWPC\\C$\\Users\\alice"

    def test_empty_selection(self, tmp_path, fake_invoker_cls):
        assert ParallelProfileCopier(fake_invoker_cls()).copy_profiles([], template(), log_root=tmp_path) == {}

    def test_intermediate_progress_is_reported(self, tmp_path, fake_invoker_cls):
        """传输过程中的百分比写入进度表，结束前不会提前显示 100"""
        progress = ProgressAggregator()
        inner = fake_invoker_cls(default=1)
        seen = []

        class PercentInvoker:
            def invoke(self, spec, log_path, on_line=None, on_progress=None):
                for percent in (12.5, 45.0, 100.0):
                    on_progress(percent)
                    seen.append(progress.snapshot()[spec.label])
                return inner.invoke(spec, log_path)

        ParallelProfileCopier(PercentInvoker(), progress).copy_profiles(["alice"], template(), log_root=tmp_path)
        assert seen == [12, 45, 99]
        assert progress.snapshot() == {"precopy:alice": 100}

    def test_profile_excludes_anchored_to_each_profile(self, tmp_path, fake_invoker_cls):
        """配置文件内的排除子路径锚定到各自的根目录，不再是裸目录名"""
        invoker = fake_invoker_cls()
        ParallelProfileCopier(invoker).copy_profiles(
            ["alice", "bob"],
            template(exclude_dirs={"OneDrive"}),
            log_root=tmp_path,
            profile_exclude_dirs=["AppData\\Local\\Temp"],
        )
        by_label = {spec.label: spec for spec in invoker.specs}
        alice = by_label["precopy:alice"].exclude_dirs
        assert "\\\\OLDPC\\C$\\Users\\alice\\AppData\\Local\\Temp" in alice
        assert "\\\\OLDPC\\C$\\Users\\bob\\AppData\\Local\\Temp" not in alice
        assert "Temp" not in alice
        assert "OneDrive" in alice
        assert "\\\\OLDPC\\C$\\Users\\bob\\AppData\\Local\\Temp" in by_label["precopy:bob"].exclude_dirs


class TestAggregate:
    """测试结果汇总"""

    def test_all_ok(self, tmp_path, fake_invoker_cls):
        results = ParallelProfileCopier(fake_invoker_cls(default=3)).copy_profiles(["a", "b"], template(), log_root=tmp_path)
        status, detail = aggregate(results)
        assert status == StageStatus.OK
        assert "a=3" in detail

    def test_failing_profiles_listed(self, tmp_path, fake_invoker_cls):
        invoker = fake_invoker_cls(codes={"precopy:b": 8})
        status, detail = aggregate(ParallelProfileCopier(invoker).copy_profiles(["a", "b"], template(), log_root=tmp_path))
        assert status == StageStatus.WARN
        assert "b" in detail
        assert "a (" not in detail


class TestProgressAggregator:
    """测试进度表"""

    def test_clamps_values(self):
        progress = ProgressAggregator()
        assert progress.set_progress("x", 150) == 100
        assert progress.set_progress("y", -5) == 0
        assert progress.snapshot() == {"x": 100, "y": 0}

    def test_snapshot_is_a_copy(self):
        progress = ProgressAggregator()
        progress.set_progress("x", 10)
        snap = progress.snapshot()
        progress.set_progress("x", 50)
        assert snap["x"] == 10

    def test_reset(self):
        progress = ProgressAggregator()
        progress.set_progress("x", 10)
        progress.reset()
        assert progress.snapshot() == {}
