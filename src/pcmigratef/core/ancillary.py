"""
附属迁移模块 - 映射网络驱动器迁移与 ODBC 数据源清点（仅报告）

全部通过 reg.exe 远程查询完成，失败只产生警告。
"""
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .process import ProcessRunner

REG_EXE = "reg"
PROFILE_LIST_KEY = r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList"
ODBC_SOURCES_KEYS = [
    r"HKLM\SOFTWARE\ODBC\ODBC.INI\ODBC Data Sources",
    r"HKLM\SOFTWARE\WOW6432Node\ODBC\ODBC.INI\ODBC Data Sources",
]
DRIVE_SCRIPT_NAME = "RestoreMappedDrives.cmd"

VALUE_PATTERN = re.compile(r"^\s+(?P<name>.+?)\s{2,}(?P<type>REG_\w+)\s{2,}(?P<data>.*)$")


@dataclass
class RegistryKey:
    path: str
    values: Dict[str, str] = field(default_factory=dict)


def parse_reg_query(lines: List[str]) -> List[RegistryKey]:
    """解析 reg query /s 的输出"""
    keys: List[RegistryKey] = []
    current: Optional[RegistryKey] = None
    for line in lines:
        if line.startswith("HKEY_") or line.startswith("\\\\"):
            current = RegistryKey(path=line.strip())
            keys.append(current)
            continue
        match = VALUE_PATTERN.match(line)
        if match and current is not None:
            current.values[match.group("name")] = match.group("data").strip()
    return keys


@dataclass
class AncillaryReport:
    mapped_drives: Dict[str, Dict[str, str]] = field(default_factory=dict)
    dsns: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class AncillaryCollector:
    """附属设置收集器"""

    def __init__(self, runner: Optional[ProcessRunner] = None, reg_exe: str = REG_EXE):
        self.runner = runner or ProcessRunner()
        self.reg_exe = reg_exe

    def query(self, host: str, key: str, recursive: bool = True) -> Tuple[int, List[str]]:
        remote_key = f"\\\\{host}\\{key}"
        args = [self.reg_exe, "query", remote_key]
        if recursive:
            args.append("/s")
        lines: List[str] = []
        try:
            code = self.runner.run(args, on_line=lines.append)
        except FileNotFoundError as e:
            logger.warning(f"找不到 reg.exe: {e}")
            return -1, []
        return code, lines

    def profile_sids(self, host: str) -> Dict[str, str]:
        """配置文件目录名 -> SID"""
        code, lines = self.query(host, PROFILE_LIST_KEY)
        if code != 0:
            raise OSError(f"读取 {host} 的 ProfileList 失败 (退出码 {code})")
        sids = {}
        for key in parse_reg_query(lines):
            image_path = key.values.get("ProfileImagePath")
            if not image_path:
                continue
            sid = key.path.rsplit("\\", 1)[-1]
            name = re.split(r"[\\/]", image_path.rstrip("\\"))[-1]
            sids[name.lower()] = sid
        return sids

    def mapped_drives(self, host: str, sid: str) -> Dict[str, str]:
        """盘符 -> 远程路径；用户未登录时注册表配置单元未加载，会返回错误"""
        code, lines = self.query(host, f"HKU\\{sid}\\Network")
        if code != 0:
            raise OSError(f"读取 {sid} 的映射驱动器失败 (退出码 {code})，用户可能未登录")
        drives = {}
        for key in parse_reg_query(lines):
            remote = key.values.get("RemotePath")
            if remote:
                letter = key.path.rsplit("\\", 1)[-1].upper()
                drives[letter] = remote
        return drives

    def odbc_dsns(self, host: str) -> Dict[str, str]:
        """数据源名称 -> 驱动，仅用于报告"""
        dsns = {}
        for key_path in ODBC_SOURCES_KEYS:
            code, lines = self.query(host, key_path, recursive=False)
            if code != 0:
                logger.debug(f"{key_path} 不存在或不可读 (退出码 {code})")
                continue
            for key in parse_reg_query(lines):
                dsns.update(key.values)
        return dsns

    def collect(self, host: str, profiles: List[str]) -> AncillaryReport:
        report = AncillaryReport()
        try:
            sids = self.profile_sids(host)
        except OSError as e:
            report.warnings.append(str(e))
            sids = {}

        for profile in profiles:
            sid = sids.get(profile.lower())
            if sid is None:
                report.warnings.append(f"{profile}: 找不到对应的 SID，跳过映射驱动器")
                continue
            try:
                report.mapped_drives[profile] = self.mapped_drives(host, sid)
            except OSError as e:
                report.warnings.append(f"{profile}: {e}")

        try:
            report.dsns = self.odbc_dsns(host)
        except OSError as e:
            report.warnings.append(f"ODBC: {e}")
        return report


def drive_script(drives: Dict[str, str]) -> str:
    lines = ["@echo off", "rem 由 pcmigratef 生成：还原映射网络驱动器"]
    for letter, remote in sorted(drives.items()):
        lines.append(f'net use {letter}: "{remote}" /persistent:yes')
    return "\r\n".join(lines) + "\r\n"


def write_ancillary_report(report_dir: Path, host: str, report: AncillaryReport) -> Path:
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / f"ancillary-{datetime.now():%Y%m%d-%H%M%S}.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(
            {
                "sourceHost": host,
                "mappedDrives": report.mapped_drives,
                "odbcDataSources": report.dsns,
                "warnings": report.warnings,
            },
            f,
            indent=2,
            ensure_ascii=False,
        )
    return path
