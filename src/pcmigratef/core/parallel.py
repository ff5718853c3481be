"""
并行用户配置文件复制模块
"""
import concurrent.futures
import dataclasses
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple

from loguru import logger

from .exit_codes import REJECTED_EXIT_CODE
from .hosts import join_path, transfer_log_path
from .models import StageStatus, TransferMode, TransferResult, TransferSpec
from .progress import ProgressAggregator
from .robocopy import RobocopyInvoker

DEFAULT_CONCURRENCY_LIMIT = 4


class ParallelProfileCopier:
    """每个用户配置文件启动一次 robocopy，并发数受限

    每个任务相互隔离：某个配置文件失败不会取消或阻塞其他任务。
    """

    def __init__(self, invoker: RobocopyInvoker, progress: Optional[ProgressAggregator] = None):
        self.invoker = invoker
        self.progress = progress or ProgressAggregator()

    def _spec_for(self, template: TransferSpec, profile: str, stage: str,
                  profile_exclude_dirs: Sequence[str] = ()) -> TransferSpec:
        source = join_path(template.source, profile)
        destination = join_path(template.destination, profile)
        # /XD 的名称会匹配任意深度，配置文件内的子路径必须锚定到该配置文件根目录
        anchored = [join_path(source, *sub.split("\\")) for sub in profile_exclude_dirs]
        changes = dict(
            source=source,
            destination=destination,
            label=f"{stage}:{profile}",
            exclude_dirs=list(template.exclude_dirs) + anchored,
        )
        if template.mode == TransferMode.MIRROR:
            changes["mirror_scope"] = destination
        return dataclasses.replace(template, **changes)

    def _copy_one(self, spec: TransferSpec, log_path: Path) -> TransferResult:
        self.progress.set_progress(spec.label, 0)
        try:
            result = self.invoker.invoke(
                spec,
                log_path,
                on_progress=lambda percent: self.progress.set_progress(spec.label, min(percent, 99)),
            )
        finally:
            self.progress.set_progress(spec.label, 100)
        return result

    def copy_profiles(
        self,
        profiles: Iterable[str],
        template: TransferSpec,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        stage: str = "precopy",
        log_root: Path = Path("logs") / "transfers",
        profile_exclude_dirs: Sequence[str] = (),
    ) -> Dict[str, TransferResult]:
        """并行复制

        Args:
            profiles: 配置文件名称（Users 下的目录名）
            template: source/destination 指向 Users 根目录的模板
            concurrency_limit: 最大并发数，多余的配置文件排队等待
            stage: 阶段名，用于进度标签和日志文件名
            profile_exclude_dirs: 相对于每个配置文件根目录的排除子路径（反斜杠分隔）

        Returns:
            Dict[str, TransferResult]: 每个配置文件一条结果
        """
        profiles = list(dict.fromkeys(profiles))
        if not profiles:
            logger.warning("没有选中的用户配置文件")
            return {}

        workers = max(1, concurrency_limit)
        logger.info(f"[{stage}] 并行复制 {len(profiles)} 个配置文件，并发数 {workers}")
        results: Dict[str, TransferResult] = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {}
            for profile in profiles:
                spec = self._spec_for(template, profile, stage, profile_exclude_dirs)
                log_path = transfer_log_path(log_root, stage, profile)
                futures[executor.submit(self._copy_one, spec, log_path)] = (profile, spec)

            for future in concurrent.futures.as_completed(futures):
                profile, spec = futures[future]
                try:
                    results[profile] = future.result()
                except Exception as e:
                    # 单个工作线程的异常只影响它自己的结果
                    logger.error(f"[{stage}] 配置文件 {profile} 复制时发生意外错误: {e}")
                    now = datetime.now()
                    results[profile] = TransferResult(
                        label=spec.label,
                        exit_code=REJECTED_EXIT_CODE,
                        log_path=None,
                        started_at=now,
                        finished_at=now,
                    )

        return {profile: results[profile] for profile in profiles}


def aggregate(results: Dict[str, TransferResult]) -> Tuple[StageStatus, str]:
    """汇总：全部非致命为 OK，否则 WARN 并列出失败的配置文件"""
    failing = [profile for profile, result in results.items() if result.is_fatal]
    if not failing:
        codes = ", ".join(f"{p}={r.exit_code}" for p, r in results.items())
        return StageStatus.OK, f"{len(results)} 个配置文件完成 ({codes})"
    detail = "失败的配置文件: " + ", ".join(
        f"{p} (退出码 {results[p].exit_code})" for p in failing
    )
    return StageStatus.WARN, detail
