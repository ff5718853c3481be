"""
进度汇总模块 - 进程内的 标签 -> 完成百分比 映射
"""
from threading import Lock
from typing import Dict


class ProgressAggregator:
    """线程安全的进度表

    写入方是各个传输工作线程，读取方是界面轮询。锁只在更新或复制字典时持有，
    读取方拿到的是快照，不会阻塞写入方。
    """

    def __init__(self):
        self._lock = Lock()
        self._progress: Dict[str, int] = {}

    def set_progress(self, label: str, percent: float) -> int:
        value = max(0, min(100, int(percent)))
        with self._lock:
            self._progress[label] = value
        return value

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._progress)

    def reset(self) -> None:
        """新会话开始时清空"""
        with self._lock:
            self._progress.clear()
