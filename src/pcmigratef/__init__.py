"""
pcmigratef 包 - 通过管理共享把 Windows 工作站迁移到新机器

主要功能:
- 按链路速度和时段自动调整 robocopy 的线程数与包间隔
- 试运行生成差异计划，并按计划逐个重放复制
- 并行预复制多个用户配置文件，汇总进度
- 使用 USMT (scanstate/loadstate) 捕获和还原用户状态
- 按阶段编排整个迁移会话，记录遥测
"""

from .config import MigrationConfig, load_config
from .core.models import (
    AclMode,
    ChangeSet,
    MigrationContext,
    TransferMode,
    TransferSpec,
    TuningParams,
    TuningProfile,
)
from .core.planner import DryRunPlanner
from .core.replayer import SelectiveReplayer
from .core.robocopy import RobocopyInvoker
from .core.stages import StageSequencer
from .core.tuning import TuningAdvisor

__all__ = [
    'MigrationConfig',
    'load_config',
    'AclMode',
    'ChangeSet',
    'MigrationContext',
    'TransferMode',
    'TransferSpec',
    'TuningParams',
    'TuningProfile',
    'DryRunPlanner',
    'SelectiveReplayer',
    'RobocopyInvoker',
    'StageSequencer',
    'TuningAdvisor',
]
