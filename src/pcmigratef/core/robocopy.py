"""
robocopy 调用模块 - 把 TransferSpec 翻译成命令行参数并执行
"""
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger
from rich.console import Console

from .errors import OperationCancelled
from .exit_codes import REJECTED_EXIT_CODE, explain, is_fatal
from .models import AclMode, TransferMode, TransferResult, TransferSpec
from .process import LineCallback, ProcessRunner

ROBOCOPY_EXE = "robocopy"
MIRROR_CONFIRMATION_TOKEN = "MIRROR"

# 复制时 robocopy 以回车分隔输出的百分比，例如 "  45%" 或 " 12.5%"
PERCENT_PATTERN = re.compile(r"^\s*(\d{1,3}(?:\.\d+)?)%\s*$")

DEFAULT_RETRIES = 2
DEFAULT_WAIT_SECONDS = 5

ACL_COPY_FLAGS = {
    AclMode.PRESERVE: ["/COPY:DATSO", "/DCOPY:DAT"],
    AclMode.INHERIT: ["/COPY:DAT", "/DCOPY:DAT"],
}

console = Console(highlight=False)


def build_args(
    spec: TransferSpec,
    log_path: Path,
    executable: str = ROBOCOPY_EXE,
    retries: int = DEFAULT_RETRIES,
    wait_seconds: int = DEFAULT_WAIT_SECONDS,
) -> List[str]:
    """构建 robocopy 参数列表

    始终包含 /E /Z /R /W /V /TEE /XJ /MT；只有 MIRROR 会加入 /MIR。
    试运行加 /NP，其余模式保留百分比输出供进度回调使用。
    """
    args = [
        executable,
        str(spec.source),
        str(spec.destination),
        "/E",
        "/Z",
        f"/R:{retries}",
        f"/W:{wait_seconds}",
        "/V",
        "/TEE",
        "/XJ",
        f"/MT:{spec.tuning.thread_count}",
    ]
    if spec.tuning.inter_packet_gap_ms > 0:
        args.append(f"/IPG:{spec.tuning.inter_packet_gap_ms}")

    args.extend(ACL_COPY_FLAGS[spec.acl_mode])

    if spec.mode == TransferMode.DRY_RUN:
        # 完整路径 + 字节数，方便解析器按固定语法读取
        args.extend(["/L", "/FP", "/BYTES", "/NP"])
    elif spec.mode == TransferMode.MIRROR:
        args.append("/MIR")

    if spec.exclude_dirs:
        args.append("/XD")
        args.extend(sorted(spec.exclude_dirs))
    if spec.exclude_files:
        args.append("/XF")
        args.extend(sorted(spec.exclude_files))

    args.append(f"/LOG+:{log_path}")
    return args


class RobocopyInvoker:
    """robocopy 调用器"""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        executable: str = ROBOCOPY_EXE,
        retries: int = DEFAULT_RETRIES,
        wait_seconds: int = DEFAULT_WAIT_SECONDS,
        echo: Optional[LineCallback] = None,
        encoding: Optional[str] = None,
    ):
        self.runner = runner or ProcessRunner(encoding=encoding)
        self.executable = executable
        self.retries = retries
        self.wait_seconds = wait_seconds
        self.echo = echo if echo is not None else self._echo_to_console

    @staticmethod
    def _echo_to_console(line: str) -> None:
        console.print(line, markup=False)

    def executable_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def invoke(
        self,
        spec: TransferSpec,
        log_path: Path,
        on_line: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> TransferResult:
        """执行一次传输

        Args:
            spec: 传输请求
            log_path: 本次传输专属的日志文件，会被覆盖
            on_line: 额外的逐行回调（例如试运行解析器）
            on_progress: 百分比回调；百分比行不会回显也不会转给 on_line

        Returns:
            TransferResult: 退出码按位掩码解释，是否继续由调用方决定
        """
        started = datetime.now()

        if spec.mode == TransferMode.MIRROR and spec.mirror_confirmation != MIRROR_CONFIRMATION_TOKEN:
            logger.error(f"[{spec.label}] 镜像模式未获确认，已拒绝，不会启动 robocopy")
            return TransferResult(
                label=spec.label,
                exit_code=REJECTED_EXIT_CODE,
                log_path=None,
                started_at=started,
                finished_at=datetime.now(),
                rejected=True,
            )

        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # 每次调用覆盖日志，robocopy 之后以 /LOG+ 追加
        log_path.write_text(
            f"# {spec.label} {spec.mode.value} {started.isoformat()}\n"
            f"# {spec.source} -> {spec.destination}\n",
            encoding="utf-8",
        )

        args = build_args(spec, log_path, self.executable, self.retries, self.wait_seconds)
        logger.info(f"[{spec.label}] 开始传输: {spec.source} -> {spec.destination} ({spec.mode.value})")

        def handle_line(line: str) -> None:
            match = PERCENT_PATTERN.match(line)
            if match:
                if on_progress is not None:
                    on_progress(float(match.group(1)))
                return
            self.echo(line)
            if on_line is not None:
                on_line(line)

        cancelled = False
        try:
            exit_code = self.runner.run(args, on_line=handle_line)
        except FileNotFoundError as e:
            logger.error(f"[{spec.label}] 找不到 robocopy 可执行文件: {e}")
            self._append_note(log_path, f"启动失败: {e}")
            exit_code = REJECTED_EXIT_CODE
        except (KeyboardInterrupt, OperationCancelled):
            # 子进程已被终止，记为致命结果并标记为操作员取消
            logger.warning(f"[{spec.label}] 传输被操作员取消")
            self._append_note(log_path, "操作员取消")
            cancelled = True
            exit_code = REJECTED_EXIT_CODE

        if exit_code < 0:
            # 被信号杀死的进程与崩溃无法区分，统一按致命处理
            logger.error(f"[{spec.label}] robocopy 被外部终止 (退出码 {exit_code})")
            exit_code = REJECTED_EXIT_CODE

        result = TransferResult(
            label=spec.label,
            exit_code=exit_code,
            log_path=log_path,
            started_at=started,
            finished_at=datetime.now(),
            cancelled=cancelled,
        )
        if is_fatal(exit_code):
            logger.error(f"[{spec.label}] robocopy 退出码 {exit_code}: {explain(exit_code)}")
        elif exit_code > 1:
            logger.warning(f"[{spec.label}] robocopy 退出码 {exit_code}: {explain(exit_code)}")
        else:
            logger.info(f"[{spec.label}] robocopy 退出码 {exit_code}: {explain(exit_code)}")
        return result

    @staticmethod
    def _append_note(log_path: Path, note: str) -> None:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(f"# {note}\n")
