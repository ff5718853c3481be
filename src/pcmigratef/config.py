"""
程序全局配置模块

默认值直接写在这里；需要覆盖时使用 TOML 配置文件，查找顺序：
    --config 指定的路径 -> ./pcmigratef.toml -> ~/.pcmigratef/config.toml
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli
from loguru import logger

CONFIG_FILE_NAME = "pcmigratef.toml"
USER_CONFIG_PATH = Path.home() / ".pcmigratef" / "config.toml"

# 非系统复制时排除的系统目录（目标机器自己的系统不能被覆盖），只在卷根匹配
SYSTEM_EXCLUDE_DIRS = [
    "Windows",
    "Program Files",
    "Program Files (x86)",
    "ProgramData",
    "$Recycle.Bin",
    "System Volume Information",
    "Recovery",
    "PerfLogs",
    "$WinREAgent",
    "Config.Msi",
    "Users",
]

SYSTEM_EXCLUDE_FILES = [
    "pagefile.sys",
    "hiberfil.sys",
    "swapfile.sys",
    "DumpStack.log.tmp",
]

# 配置文件复制时排除的缓存目录，相对于每个配置文件根目录
PROFILE_EXCLUDE_DIRS = [
    "AppData\\Local\\Temp",
    "AppData\\Local\\Microsoft\\Windows\\INetCache",
    "AppData\\Local\\Microsoft\\Windows\\Temporary Internet Files",
    "AppData\\Local\\CrashDumps",
]

PROFILE_EXCLUDE_FILES = [
    "NTUSER.DAT*",
    "UsrClass.dat*",
]

# 还原后逐个检查的配置文件子路径
SPOT_CHECK_SUBPATHS = [
    "Desktop",
    "Documents",
    "AppData\\Roaming",
]


@dataclass
class MigrationConfig:
    """迁移配置"""
    robocopy_exe: str = "robocopy"
    robocopy_retries: int = 2
    robocopy_wait_seconds: int = 5
    # 外部工具输出的解码方式；为空时 Windows 用 OEM 代码页
    console_encoding: Optional[str] = None
    usmt_dir: str = "C:\\USMT\\amd64"
    capture_prefix: List[str] = field(default_factory=list)
    restore_prefix: List[str] = field(default_factory=list)
    state_store: str = "C:\\MigrationStore"
    log_root: str = "logs"
    concurrency_limit: int = 4
    tuning_profile: str = "auto"
    business_hours_throttle: bool = False
    acl_mode: str = "inherit"
    skip_onedrive: bool = True
    provisioning_source: str = ""
    provisioning_target_dir: str = "Provisioning"
    provisioning_script: str = "Provision.cmd"
    system_exclude_dirs: List[str] = field(default_factory=lambda: list(SYSTEM_EXCLUDE_DIRS))
    system_exclude_files: List[str] = field(default_factory=lambda: list(SYSTEM_EXCLUDE_FILES))
    profile_exclude_dirs: List[str] = field(default_factory=lambda: list(PROFILE_EXCLUDE_DIRS))
    profile_exclude_files: List[str] = field(default_factory=lambda: list(PROFILE_EXCLUDE_FILES))
    spot_check_subpaths: List[str] = field(default_factory=lambda: list(SPOT_CHECK_SUBPATHS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"忽略未知配置项: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})


def find_config(explicit: Optional[Path] = None) -> Optional[Path]:
    if explicit is not None:
        return Path(explicit)
    for candidate in (Path.cwd() / CONFIG_FILE_NAME, USER_CONFIG_PATH):
        if candidate.exists():
            return candidate
    return None


def load_config(path: Optional[Path] = None) -> MigrationConfig:
    """加载配置

    Raises:
        FileNotFoundError: 显式指定的配置文件不存在
        tomli.TOMLDecodeError: 配置文件格式错误
    """
    config_path = find_config(path)
    if config_path is None:
        logger.debug("未找到配置文件，使用默认配置")
        return MigrationConfig()

    with open(config_path, "rb") as f:
        data = tomli.load(f)
    logger.info(f"已加载配置文件: {config_path}")
    # 支持把配置放在 [pcmigratef] 表下
    return MigrationConfig.from_dict(data.get("pcmigratef", data))
