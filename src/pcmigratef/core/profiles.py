"""
用户配置文件清点模块 - 枚举 Users 下的配置文件并统计大小
"""
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import psutil
from loguru import logger

# 系统内置的配置文件目录，不参与迁移
SYSTEM_PROFILES = {"public", "default", "default user", "all users", "defaultapppool", "wdagutilityaccount"}


@dataclass
class ProfileInfo:
    """单个配置文件的清点结果"""
    name: str
    path: str
    size_bytes: int = 0
    file_count: int = 0
    error_count: int = 0


def _is_link(entry: os.DirEntry) -> bool:
    # 目录联接 (junction) 不是 symlink，需要单独判断
    is_junction = getattr(entry, "is_junction", None)
    return entry.is_symlink() or bool(is_junction and is_junction())


def list_profiles(users_root: str) -> List[str]:
    """列出 Users 下的配置文件目录，排除系统内置目录"""
    names = []
    with os.scandir(users_root) as it:
        for entry in it:
            if not entry.is_dir(follow_symlinks=False) or _is_link(entry):
                continue
            if entry.name.lower() in SYSTEM_PROFILES:
                continue
            names.append(entry.name)
    return sorted(names, key=str.lower)


def measure(path: str) -> ProfileInfo:
    """统计目录大小，不跟随符号链接和目录联接"""
    info = ProfileInfo(name=os.path.basename(str(path).rstrip("\\/")), path=str(path))
    stack = [str(path)]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if _is_link(entry):
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(entry.path)
                        elif entry.is_file(follow_symlinks=False):
                            info.size_bytes += entry.stat(follow_symlinks=False).st_size
                            info.file_count += 1
                    except OSError as e:
                        info.error_count += 1
                        logger.debug(f"无法读取 {entry.path}: {e}")
        except OSError as e:
            info.error_count += 1
            logger.debug(f"无法扫描目录 {current}: {e}")
    return info


def format_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


def free_space(path: str) -> Optional[int]:
    """目标磁盘剩余空间，读取失败返回 None"""
    try:
        return psutil.disk_usage(path).free
    except OSError as e:
        logger.warning(f"无法读取 {path} 的磁盘空间: {e}")
        return None


def write_inventory_report(
    report_dir: Path,
    source_host: str,
    profiles: Iterable[ProfileInfo],
    destination_free: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Path]:
    """写入 JSON 和可读文本两份清点报告"""
    now = now or datetime.now()
    profiles = list(profiles)
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    stamp = now.strftime("%Y%m%d-%H%M%S")
    total = sum(p.size_bytes for p in profiles)

    json_path = report_dir / f"inventory-{stamp}.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(
            {
                "generatedAt": now.isoformat(timespec="seconds"),
                "sourceHost": source_host,
                "totalBytes": total,
                "destinationFreeBytes": destination_free,
                "profiles": [asdict(p) for p in profiles],
            },
            f,
            indent=2,
            ensure_ascii=False,
        )

    lines = [
        f"配置文件清点 - {source_host} - {now:%Y-%m-%d %H:%M:%S}",
        "",
        f"{'配置文件':<32}{'大小':>14}{'文件数':>10}{'错误':>6}",
    ]
    for p in profiles:
        lines.append(f"{p.name:<32}{format_size(p.size_bytes):>14}{p.file_count:>10}{p.error_count:>6}")
    lines.append("")
    lines.append(f"合计: {format_size(total)}")
    if destination_free is not None:
        lines.append(f"目标剩余空间: {format_size(destination_free)}")
        if destination_free < total:
            lines.append("警告: 目标剩余空间不足以容纳全部配置文件")
    text_path = report_dir / f"inventory-{stamp}.txt"
    text_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    logger.info(f"清点报告已写入: {json_path}")
    return {"json": json_path, "text": text_path}
