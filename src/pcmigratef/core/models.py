"""pcmigratef 数据模型"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional


class TransferMode(str, Enum):
    """传输模式"""
    DRY_RUN = "dryrun"      # 仅列出 (/L)，不写入任何数据
    BULK_COPY = "bulk"      # 递归复制，从不删除目标多余文件
    MIRROR = "mirror"       # 镜像 (/MIR)，唯一允许删除的模式
    DELTA = "delta"         # 增量补齐，与 BULK_COPY 参数相同


class AclMode(str, Enum):
    """ACL/所有者信息处理方式"""
    INHERIT = "inherit"     # 使用目标继承的默认权限
    PRESERVE = "preserve"   # 复制安全描述符和所有者


class TuningProfile(str, Enum):
    """线程调优预设"""
    AUTO = "auto"
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    WIFI = "wifi"


class ChangeType(str, Enum):
    """试运行输出中的文件分类"""
    NEW_FILE = "NewFile"
    OLDER = "Older"
    NEWER = "Newer"
    EXTRA_FILE = "ExtraFile"
    EXTRA_DIR = "ExtraDir"


# 重放器会实际复制的类型，Extra* 仅作信息展示
COPYABLE_CHANGES = frozenset({ChangeType.NEW_FILE, ChangeType.OLDER, ChangeType.NEWER})


class StageStatus(str, Enum):
    """阶段执行状态"""
    PENDING = "Pending"
    RUNNING = "Running"
    OK = "Ok"
    WARN = "Warn"
    ERROR = "Error"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class TuningParams:
    """robocopy 并发参数"""
    thread_count: int
    inter_packet_gap_ms: int = 0
    profile: TuningProfile = TuningProfile.AUTO

    def __post_init__(self):
        if self.thread_count < 1:
            raise ValueError(f"thread_count 必须 >= 1: {self.thread_count}")
        if self.inter_packet_gap_ms < 0:
            raise ValueError(f"inter_packet_gap_ms 必须 >= 0: {self.inter_packet_gap_ms}")


@dataclass(frozen=True)
class TransferSpec:
    """一次源 -> 目标的复制请求，构造后不可变

    MIRROR 模式必须显式声明删除范围 mirror_scope，且只能等于 destination，
    这样被修剪的目录总是调用方亲手写下的那一个。
    """
    source: str
    destination: str
    mode: TransferMode = TransferMode.BULK_COPY
    exclude_dirs: FrozenSet[str] = frozenset()
    exclude_files: FrozenSet[str] = frozenset()
    acl_mode: AclMode = AclMode.INHERIT
    tuning: TuningParams = field(default_factory=lambda: TuningParams(thread_count=8))
    label: str = "transfer"
    mirror_confirmation: Optional[str] = None
    mirror_scope: Optional[str] = None

    def __post_init__(self):
        if not self.source or not self.destination:
            raise ValueError("source 和 destination 不能为空")
        # 允许传入 list/set，统一冻结
        object.__setattr__(self, "exclude_dirs", frozenset(self.exclude_dirs))
        object.__setattr__(self, "exclude_files", frozenset(self.exclude_files))
        if self.mode == TransferMode.MIRROR:
            if not self.mirror_scope:
                raise ValueError("MIRROR 模式必须显式指定 mirror_scope")
            if _norm(self.mirror_scope) != _norm(self.destination):
                raise ValueError(
                    f"mirror_scope '{self.mirror_scope}' 与目标 '{self.destination}' 不一致"
                )


def _norm(path: str) -> str:
    return str(path).rstrip("\\/").lower()


@dataclass
class TransferResult:
    """一次 robocopy 调用的结果"""
    label: str
    exit_code: int
    log_path: Optional[Path]
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    rejected: bool = False

    @property
    def is_fatal(self) -> bool:
        return self.exit_code >= 8

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class ChangeEntry:
    """变更集中的单个条目"""
    type: ChangeType
    size_hint: Optional[int]
    relative_path: str


@dataclass
class ChangeSet:
    """持久化的试运行计划"""
    source: str
    destination: str
    generated_at: datetime
    entries: List[ChangeEntry] = field(default_factory=list)
    # 试运行的原始输出，仅用于排查，不写入计划 JSON
    raw_lines: List[str] = field(default_factory=list, repr=False, compare=False)


@dataclass
class CaptureManifest:
    """用户状态捕获清单"""
    version: int
    generated_at: datetime
    source_computer: str
    identities: List[str] = field(default_factory=list)


@dataclass
class StageRun:
    """单个阶段的执行记录"""
    stage_id: str
    status: StageStatus = StageStatus.PENDING
    detail: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class ReplayOutcome:
    """单个条目的重放结果"""
    entry: ChangeEntry
    success: bool
    error: str = ""


@dataclass
class ReplayReport:
    """重放汇总"""
    outcomes: List[ReplayOutcome] = field(default_factory=list)
    skipped: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)


@dataclass
class UsmtOptions:
    """USMT 捕获/还原选项"""
    use_shadow_copy: bool = True
    encryption_key: Optional[str] = None
    active_within_days: Optional[int] = None
    capture_all: bool = False
    user_remaps: Dict[str, str] = field(default_factory=dict)


@dataclass
class MigrationContext:
    """单次迁移会话的上下文，传递给每个阶段"""
    source_host: str
    destination_host: str
    profiles: List[str] = field(default_factory=list)
    acl_mode: AclMode = AclMode.INHERIT
    tuning_profile: TuningProfile = TuningProfile.AUTO
    business_hours_throttle: bool = False
    skip_onedrive: bool = True
    concurrency_limit: int = 4
    log_root: Path = field(default_factory=lambda: Path("logs"))
    state_store: Optional[str] = None
    usmt: UsmtOptions = field(default_factory=UsmtOptions)
    hosts_validated: bool = False
    stage_runs: List[StageRun] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_stage(self, run: StageRun) -> None:
        """追加一条阶段记录（审计轨迹）"""
        with self._lock:
            self.stage_runs.append(run)

    def stage_history(self) -> List[StageRun]:
        with self._lock:
            return list(self.stage_runs)
