"""
USMT 状态捕获/还原模块 - scanstate / loadstate 的参数构建与调用

两者都被视为外部协作进程：这里只负责拼参数、运行并返回退出码。
"""
import ntpath
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from loguru import logger

from .hosts import join_path, safe_label
from .models import UsmtOptions
from .process import ProcessRunner

ALL_IDENTITIES = "/all"
EXCLUDE_FILE_NAME = "ExcludeCloudSync.xml"
INCLUDE_RULE_FILES = ("MigDocs.xml", "MigApp.xml")
USMT_VERBOSITY = "/v:5"


def identity_for_profile(profile: str) -> str:
    """配置文件目录名 -> 任意域下的同名用户过滤器"""
    return f"/ui:*\\{profile}"


def identity_filter_args(identity: str) -> List[str]:
    """'/all' 直接使用；其他身份先排除所有用户再包含该身份"""
    if identity.lower() == ALL_IDENTITIES:
        return [ALL_IDENTITIES]
    return ["/ue:*\\*", identity]


def identity_store(store: str, identity: str) -> str:
    """每个身份使用独立的存储子目录，避免 /o 互相覆盖"""
    return join_path(store, safe_label(identity.replace("/ui:", "").replace("*", "any")))


def write_exclude_xml(path: Path, folder_patterns: Iterable[str]) -> Path:
    """生成 USMT 无条件排除规则文件，跳过云同步目录"""
    migration = ET.Element(
        "migration", urlid="http://www.microsoft.com/migration/1.0/migxmlext/excludecloudsync"
    )
    component = ET.SubElement(migration, "component", type="Documents", context="User")
    ET.SubElement(component, "displayName").text = "Exclude cloud sync folders"
    role = ET.SubElement(component, "role", role="Data")
    rules = ET.SubElement(role, "rules")
    exclude = ET.SubElement(rules, "unconditionalExclude")
    object_set = ET.SubElement(exclude, "objectSet")
    for pattern in folder_patterns:
        ET.SubElement(object_set, "pattern", type="File").text = f"%CSIDL_PROFILE%\\{pattern}\\* [*]"

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ET.ElementTree(migration).write(path, encoding="utf-8", xml_declaration=True)
    return path


def build_capture_args(
    scanstate: str,
    store: str,
    identity: str,
    options: UsmtOptions,
    log_path: Path,
    rule_dir: str,
    exclude_xml: Optional[Path] = None,
) -> List[str]:
    args = [scanstate, store]
    args.extend(f"/i:{ntpath.join(rule_dir, name)}" for name in INCLUDE_RULE_FILES)
    if exclude_xml is not None:
        args.append(f"/i:{exclude_xml}")
    args.extend(identity_filter_args(identity))
    args.extend(["/o", "/c", USMT_VERBOSITY, f"/l:{log_path}"])
    if options.use_shadow_copy:
        args.append("/vsc")
    if options.encryption_key:
        args.extend(["/encrypt", f"/key:{options.encryption_key}"])
    if options.active_within_days:
        args.append(f"/uel:{options.active_within_days}")
    return args


def build_restore_args(
    loadstate: str,
    store: str,
    identity: str,
    options: UsmtOptions,
    log_path: Path,
    rule_dir: str,
) -> List[str]:
    args = [loadstate, store]
    args.extend(f"/i:{ntpath.join(rule_dir, name)}" for name in INCLUDE_RULE_FILES)
    args.extend(identity_filter_args(identity))
    args.extend(["/c", USMT_VERBOSITY, f"/l:{log_path}"])
    for old, new in options.user_remaps.items():
        args.append(f"/mu:{old}:{new}")
    if options.encryption_key:
        args.extend(["/decrypt", f"/key:{options.encryption_key}"])
    return args


def _mask(args: Sequence[str]) -> List[str]:
    """日志中隐藏加密密钥"""
    return ["/key:****" if a.lower().startswith("/key:") else a for a in args]


class UsmtRunner:
    """scanstate / loadstate 调用器

    remote_prefix 用于在源/目标机器上远程执行（例如 psexec \\\\HOST -s），
    为空时在本机执行。
    """

    def __init__(
        self,
        usmt_dir: str,
        runner: Optional[ProcessRunner] = None,
        capture_prefix: Sequence[str] = (),
        restore_prefix: Sequence[str] = (),
    ):
        self.usmt_dir = usmt_dir
        self.runner = runner or ProcessRunner()
        self.capture_prefix = list(capture_prefix)
        self.restore_prefix = list(restore_prefix)

    @property
    def scanstate(self) -> str:
        return ntpath.join(self.usmt_dir, "scanstate.exe")

    @property
    def loadstate(self) -> str:
        return ntpath.join(self.usmt_dir, "loadstate.exe")

    def _run(self, args: List[str], console_log: Path) -> int:
        logger.debug(f"USMT: {' '.join(_mask(args))}")
        try:
            return self.runner.run(args, log_path=console_log, on_line=lambda line: logger.debug(line))
        except FileNotFoundError as e:
            logger.error(f"找不到 USMT 可执行文件: {e}")
            return -1

    def capture(
        self,
        identity: str,
        store: str,
        options: UsmtOptions,
        log_path: Path,
        exclude_xml: Optional[Path] = None,
    ) -> int:
        args = self.capture_prefix + build_capture_args(
            self.scanstate, identity_store(store, identity), identity, options,
            log_path, self.usmt_dir, exclude_xml,
        )
        code = self._run(args, Path(log_path).with_suffix(".console.log"))
        logger.info(f"scanstate {identity} 退出码 {code}")
        return code

    def restore(self, identity: str, store: str, options: UsmtOptions, log_path: Path) -> int:
        args = self.restore_prefix + build_restore_args(
            self.loadstate, identity_store(store, identity), identity, options,
            log_path, self.usmt_dir,
        )
        code = self._run(args, Path(log_path).with_suffix(".console.log"))
        logger.info(f"loadstate {identity} 退出码 {code}")
        return code
