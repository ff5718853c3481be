"""
主机与路径工具 - 管理共享路径拼接、可达性检查、传输日志路径
"""
import ntpath
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Set

from loguru import logger

from .errors import PreconditionError

ADMIN_SHARE = "C$"

_allocated_lock = threading.Lock()
_allocated_logs: Set[Path] = set()


def join_path(root: str, *parts: str) -> str:
    """拼接路径；UNC/Windows 风格的根使用反斜杠"""
    root = str(root)
    if "\\" in root or re.match(r"^[A-Za-z]:", root):
        return ntpath.join(root, *parts)
    return os.path.join(root, *parts)


def admin_share(host: str, *parts: str) -> str:
    """\\\\HOST\\C$\\... ；host 为本机路径（如测试目录）时原样拼接"""
    if host.startswith("\\\\") or os.path.isabs(host) or re.match(r"^[A-Za-z]:", host):
        return join_path(host, *parts)
    return ntpath.join(f"\\\\{host}\\{ADMIN_SHARE}", *parts)


def validate_host(host: str) -> str:
    """确认主机的管理共享可访问

    Returns:
        str: 管理共享根路径

    Raises:
        PreconditionError: 共享不存在或无权访问
    """
    root = admin_share(host)
    try:
        accessible = os.path.isdir(root)
    except OSError as e:
        raise PreconditionError(f"无法访问 {root}: {e}") from e
    if not accessible:
        raise PreconditionError(f"主机不可达或管理共享不可访问: {root}")
    logger.info(f"主机可达: {root}")
    return root


def safe_label(label: str) -> str:
    """把传输标签转换成可用作文件名的片段"""
    return re.sub(r"[^\w.-]+", "_", label).strip("_") or "transfer"


def transfer_log_path(log_root: Path, stage: str, profile: Optional[str] = None,
                      now: Optional[datetime] = None) -> Path:
    """<log_root>/<YYYYmmdd-HHMMSS>-<stage>[-<profile>][-N].log

    同一秒内的同名请求，或标签清洗后相同的配置文件（"a b" 与 "a_b"），
    依次追加 -2、-3 ...，已存在的文件同样跳过。
    """
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    name = f"{stamp}-{safe_label(stage)}"
    if profile:
        name += f"-{safe_label(profile)}"
    candidate = Path(log_root) / f"{name}.log"
    suffix = 1
    with _allocated_lock:
        while candidate in _allocated_logs or candidate.exists():
            suffix += 1
            candidate = Path(log_root) / f"{name}-{suffix}.log"
        _allocated_logs.add(candidate)
    return candidate
