"""
选择性重放模块 - 按计划文件逐个复制文件，不依赖 robocopy

操作员可以先审阅、编辑试运行计划，再只重放认可的条目。
"""
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from .models import COPYABLE_CHANGES, ChangeEntry, ChangeSet, ReplayOutcome, ReplayReport
from .skip_policy import SkipPolicy, split_relative


class SelectiveReplayer:
    """选择性重放器"""

    def __init__(self, log_path: Optional[Path] = None):
        self.log_path = Path(log_path) if log_path else None

    def _log(self, message: str) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(f"{datetime.now().isoformat(timespec='seconds')} {message}\n")

    @staticmethod
    def _resolve(root: str, relative_path: str) -> Path:
        """把计划中的相对路径解析到根目录下，拒绝绝对路径和 '..'"""
        parts = split_relative(relative_path)
        if (
            not parts
            or relative_path.startswith(("\\", "/"))
            or ":" in parts[0]
            or ".." in parts
        ):
            raise ValueError(f"条目路径不是根目录下的相对路径: {relative_path}")
        return Path(root).joinpath(*parts)

    def replay_entry(self, changeset: ChangeSet, entry: ChangeEntry) -> ReplayOutcome:
        """复制单个条目，失败不抛出异常"""
        try:
            src = self._resolve(changeset.source, entry.relative_path)
            dst = self._resolve(changeset.destination, entry.relative_path)
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
        except (OSError, ValueError) as e:
            logger.error(f"重放失败 {entry.relative_path}: {e}")
            self._log(f"FAIL {entry.type.value} {entry.relative_path}: {e}")
            return ReplayOutcome(entry=entry, success=False, error=str(e))
        logger.debug(f"重放成功: {entry.relative_path}")
        self._log(f"OK   {entry.type.value} {entry.relative_path}")
        return ReplayOutcome(entry=entry, success=True)

    def replay(self, changeset: ChangeSet, skip_policy: Optional[SkipPolicy] = None) -> ReplayReport:
        """按计划顺序重放

        只处理 NewFile / Older / Newer；Extra* 仅供参考，重放器从不删除。
        跳过策略在这里再检查一次，防止计划文件过期或被手工改过。
        """
        skip_policy = skip_policy or SkipPolicy.none()
        report = ReplayReport()
        self._log(f"# replay {changeset.source} -> {changeset.destination}")

        for entry in changeset.entries:
            if entry.type not in COPYABLE_CHANGES:
                continue
            hit, pattern = skip_policy.check(entry.relative_path)
            if hit:
                logger.warning(f"跳过策略命中 ({pattern}): {entry.relative_path}")
                self._log(f"SKIP {entry.type.value} {entry.relative_path}")
                report.skipped += 1
                continue
            report.outcomes.append(self.replay_entry(changeset, entry))

        logger.info(
            f"重放总结: 成功 {report.success_count} 个, 失败 {report.failed_count} 个, "
            f"策略跳过 {report.skipped} 个"
        )
        self._log(f"# done ok={report.success_count} fail={report.failed_count} skip={report.skipped}")
        return report
