"""
外部进程执行模块 - 实时转发子进程输出并同时写入日志
"""
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional, Set

from loguru import logger

from .errors import OperationCancelled

LineCallback = Callable[[str], None]

TERMINATE_TIMEOUT_SECONDS = 10


def console_encoding() -> Optional[str]:
    """Windows 控制台工具 (robocopy/scanstate/reg) 向管道输出 OEM 代码页"""
    if sys.platform == "win32":
        return "oem"
    return None


class ProcessRunner:
    """以流式方式运行外部工具

    robocopy / scanstate / loadstate 都通过这里启动。stderr 合并到 stdout，
    逐行读取，避免管道缓冲区写满时阻塞父进程。

    cancel() 可以从任意线程调用：终止所有正在运行的子进程，之后的 run()
    直接抛出 OperationCancelled。
    """

    def __init__(self, encoding: Optional[str] = None):
        self.encoding = encoding or console_encoding()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._active: Set[subprocess.Popen] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """终止所有子进程并拒绝启动新的子进程"""
        self._cancelled.set()
        with self._lock:
            active = list(self._active)
        for proc in active:
            logger.warning(f"操作员中断，终止进程 pid={proc.pid}")
            self._terminate(proc)

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()

    def run(
        self,
        args: List[str],
        log_path: Optional[Path] = None,
        on_line: Optional[LineCallback] = None,
        append: bool = True,
    ) -> int:
        """运行命令并返回退出码

        Args:
            args: 命令及参数
            log_path: 每一行输出追加到的日志文件
            on_line: 每一行输出的回调（控制台显示、进度解析）
            append: False 时先清空日志文件

        Raises:
            FileNotFoundError: 可执行文件不存在
            OperationCancelled: cancel() 已被调用，子进程已终止
            KeyboardInterrupt: 在本线程收到 Ctrl+C；子进程会先被终止
        """
        if self.cancelled:
            raise OperationCancelled(f"操作已取消，未启动 {args[0]}")

        logger.debug(f"执行命令: {subprocess.list2cmdline(args)}")
        log_file = None
        if log_path is not None:
            log_path = Path(log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "a" if append else "w", encoding="utf-8")

        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding=self.encoding,
                errors="replace",
                bufsize=1,
            )
            with self._lock:
                self._active.add(proc)
            try:
                if self.cancelled:
                    # cancel() 在登记之前执行时不会看到这个进程
                    self._terminate(proc)
                for raw_line in proc.stdout:
                    line = raw_line.rstrip("\r\n")
                    if log_file is not None:
                        log_file.write(line + "\n")
                        log_file.flush()
                    if on_line is not None:
                        on_line(line)
                code = proc.wait()
            except KeyboardInterrupt:
                logger.warning(f"操作员中断，终止进程 {args[0]} (pid={proc.pid})")
                self._terminate(proc)
                raise
            finally:
                with self._lock:
                    self._active.discard(proc)
                if proc.stdout is not None:
                    proc.stdout.close()
        finally:
            if log_file is not None:
                log_file.close()

        if self.cancelled:
            raise OperationCancelled(f"{args[0]} 被操作员中断 (退出码 {code})")
        return code
