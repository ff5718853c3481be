"""
进度显示测试
"""
import _thread
import io
import threading

import pytest
from rich.console import Console

from pcmigratef.core.progress import ProgressAggregator
from pcmigratef.ui.progress_view import render, run_with_progress


def quiet_console():
    return Console(file=io.StringIO(), force_terminal=False, width=100)


class TestProgressView:
    """测试后台运行与轮询显示"""

    def test_render_rows(self):
        table = render({"b": 50, "a": 100})
        assert table.row_count == 2

    def test_returns_value(self):
        progress = ProgressAggregator()

        def work():
            progress.set_progress("precopy:alice", 100)
            return 42

        assert run_with_progress(work, progress, quiet_console(), refresh_interval=0.01) == 42

    def test_reraises_in_caller(self):
        def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            run_with_progress(work, ProgressAggregator(), quiet_console(), refresh_interval=0.01)

    def test_ctrl_c_reaches_control_thread_through_callback(self):
        """主线程收到 Ctrl+C 时调用中断回调，并等待后台阶段收尾后返回结果"""
        stop = threading.Event()
        calls = []

        def on_interrupt():
            calls.append("cancel")
            stop.set()

        def work():
            threading.Event().wait(0.2)
            _thread.interrupt_main()
            assert stop.wait(10)
            return "stopped"

        result = run_with_progress(
            work, ProgressAggregator(), quiet_console(), refresh_interval=0.01, on_interrupt=on_interrupt
        )
        assert result == "stopped"
        assert calls == ["cancel"]

    def test_ctrl_c_without_callback_propagates(self):
        release = threading.Event()

        def work():
            _thread.interrupt_main()
            release.wait(10)

        try:
            with pytest.raises(KeyboardInterrupt):
                run_with_progress(work, ProgressAggregator(), quiet_console(), refresh_interval=0.01)
        finally:
            release.set()
