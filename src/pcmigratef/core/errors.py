"""
迁移错误类型
"""


class MigrationError(Exception):
    """迁移过程中可被阶段捕获并记录的错误基类"""


class PreconditionError(MigrationError):
    """主机不可达、共享不可访问或缺少必需的可执行文件"""


class PlanError(MigrationError):
    """试运行失败或计划文件无法解析"""


class ManifestError(MigrationError):
    """捕获清单缺失或格式错误"""


class OperationCancelled(MigrationError):
    """操作员中断，子进程已被终止"""
