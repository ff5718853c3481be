"""
跳过策略模块

统一判断某个相对路径是否属于不应迁移的云同步占位目录（OneDrive 等）。
试运行生成计划和重放计划时都使用同一份策略。
"""
import fnmatch
import re
from typing import Iterable, List, Tuple

# 云同步占位目录，按路径中的任意一级目录名匹配（不区分大小写）
CLOUD_PLACEHOLDER_PATTERNS = [
    "OneDrive",
    "OneDrive - *",
    "iCloudDrive",
    "iCloud Drive",
]


def split_relative(path: str) -> List[str]:
    """按 \\ 或 / 拆分相对路径"""
    return [part for part in re.split(r"[\\/]+", path) if part]


class SkipPolicy:
    """跳过策略"""

    def __init__(self, patterns: Iterable[str] = (), enabled: bool = True):
        """
        参数:
            patterns: fnmatch 风格的目录名模式
            enabled: False 时不跳过任何路径
        """
        self.patterns = [p.lower() for p in patterns]
        self.enabled = enabled

    @classmethod
    def cloud_placeholders(cls, enabled: bool = True) -> "SkipPolicy":
        return cls(CLOUD_PLACEHOLDER_PATTERNS, enabled=enabled)

    @classmethod
    def none(cls) -> "SkipPolicy":
        return cls((), enabled=False)

    def check(self, relative_path: str) -> Tuple[bool, str]:
        """
        检查路径是否被策略命中

        返回:
            tuple: (是否命中, 命中的模式)
        """
        if not self.enabled or not self.patterns:
            return False, ""
        for part in split_relative(relative_path):
            name = part.lower()
            for pattern in self.patterns:
                if fnmatch.fnmatchcase(name, pattern):
                    return True, pattern
        return False, ""

    def matches(self, relative_path: str) -> bool:
        return self.check(relative_path)[0]

    def robocopy_exclude_dirs(self) -> List[str]:
        """供 robocopy /XD 使用的目录名列表"""
        if not self.enabled:
            return []
        return list(self.patterns)
