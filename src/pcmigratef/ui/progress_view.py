"""
进度显示模块 - 在主线程轮询进度快照，阶段在后台控制线程中运行
"""
import threading
from typing import Callable, Dict, Optional, TypeVar

from loguru import logger
from rich.console import Console
from rich.live import Live
from rich.progress_bar import ProgressBar
from rich.table import Table

from ..core.progress import ProgressAggregator

T = TypeVar("T")

REFRESH_INTERVAL_SECONDS = 0.25


def render(snapshot: Dict[str, int]) -> Table:
    """把进度快照渲染成表格"""
    table = Table(title="传输进度", expand=False)
    table.add_column("任务", style="cyan", no_wrap=True)
    table.add_column("进度", min_width=30)
    table.add_column("%", justify="right")
    for label in sorted(snapshot):
        percent = snapshot[label]
        style = "green" if percent >= 100 else "yellow"
        table.add_row(label, ProgressBar(total=100, completed=percent, width=30, complete_style=style), f"{percent}%")
    return table


def run_with_progress(
    func: Callable[[], T],
    aggregator: ProgressAggregator,
    console: Optional[Console] = None,
    refresh_interval: float = REFRESH_INTERVAL_SECONDS,
    on_interrupt: Optional[Callable[[], None]] = None,
) -> T:
    """在后台线程运行 func，同时按固定间隔刷新进度表

    Ctrl+C 只会送到主线程。第一次中断调用 on_interrupt（由它终止子进程），
    然后继续等待 func 收尾并返回它的结果；再次中断或未提供 on_interrupt 时直接抛出。
    func 抛出的异常会在主线程重新抛出。
    """
    console = console or Console()
    outcome: Dict[str, object] = {}
    done = threading.Event()

    def worker():
        try:
            outcome["value"] = func()
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    thread = threading.Thread(target=worker, name="pcmigratef-control", daemon=True)
    thread.start()
    with Live(render(aggregator.snapshot()), console=console, refresh_per_second=4, transient=False) as live:
        interrupted = False
        while True:
            try:
                if done.wait(refresh_interval):
                    break
                live.update(render(aggregator.snapshot()))
            except KeyboardInterrupt:
                if interrupted or on_interrupt is None:
                    raise
                interrupted = True
                logger.warning("收到 Ctrl+C，正在取消当前阶段，再按一次立即退出")
                on_interrupt()
        live.update(render(aggregator.snapshot()))
    thread.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
