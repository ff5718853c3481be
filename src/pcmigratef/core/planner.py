"""
试运行计划模块

用 robocopy /L 列出源与目标之间的差异，解析成 ChangeSet 并保存为 JSON 计划。
计划文件是重放器的唯一依据，跨会话保持稳定。
"""
import json
import os
import re
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .errors import PlanError
from .exit_codes import explain, is_fatal
from .models import ChangeEntry, ChangeSet, ChangeType, TransferMode, TransferSpec, TuningParams
from .robocopy import RobocopyInvoker
from .skip_policy import SkipPolicy

# robocopy 输出中的分类标签 -> ChangeType；New Dir 是结构行，不进入计划
CLASSIFICATIONS = {
    "new file": ChangeType.NEW_FILE,
    "older": ChangeType.OLDER,
    "newer": ChangeType.NEWER,
    "extra file": ChangeType.EXTRA_FILE,
    "*extra file": ChangeType.EXTRA_FILE,
    "extra dir": ChangeType.EXTRA_DIR,
    "*extra dir": ChangeType.EXTRA_DIR,
}

# <分类> <大小或空> <路径>
LINE_PATTERN = re.compile(
    r"^\s*(?P<cls>\*EXTRA File|\*EXTRA Dir|Extra File|Extra Dir|New File|New Dir|Older|Newer)"
    r"(?:\s+(?P<size>-?\d+(?:\.\d+)?(?:\s?[kmgt](?![:\w]))?))?"
    r"\s+(?P<path>\S.*?)\s*$",
    re.IGNORECASE,
)

_UNIT_MULTIPLIERS = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

EXTRA_TYPES = (ChangeType.EXTRA_FILE, ChangeType.EXTRA_DIR)


def parse_size(text: Optional[str]) -> Optional[int]:
    """解析大小字段；'-1' 或空返回 None"""
    if not text:
        return None
    text = text.strip().lower()
    unit = text[-1] if text[-1] in _UNIT_MULTIPLIERS else ""
    number = text[:-1].strip() if unit else text
    try:
        value = float(number)
    except ValueError:
        return None
    if value < 0:
        return None
    return int(value * _UNIT_MULTIPLIERS.get(unit, 1))


def absolute_root(root: str) -> str:
    """robocopy /FP 输出的是绝对路径，相对根目录必须先补全才能截取相对路径"""
    root = str(root)
    if root.startswith("\\\\") or re.match(r"^[A-Za-z]:[\\/]", root):
        return root
    return os.path.abspath(root)


def relativize(path: str, root: str) -> str:
    """把 robocopy /FP 输出的完整路径转换成相对根目录的路径（反斜杠分隔）"""
    normalized = path.replace("/", "\\")
    root_norm = str(root).replace("/", "\\").rstrip("\\")
    if root_norm and normalized.lower().startswith(root_norm.lower() + "\\"):
        normalized = normalized[len(root_norm) + 1:]
    return normalized.rstrip("\\")


def parse_line(line: str, source: str, destination: str) -> Optional[ChangeEntry]:
    """按固定语法解析一行输出，不匹配的横幅/结构行返回 None"""
    match = LINE_PATTERN.match(line)
    if not match:
        return None
    change_type = CLASSIFICATIONS.get(match.group("cls").lower())
    if change_type is None:
        return None
    root = destination if change_type in EXTRA_TYPES else source
    relative_path = relativize(match.group("path"), root)
    if not relative_path:
        return None
    size_hint = None if change_type == ChangeType.EXTRA_DIR else parse_size(match.group("size"))
    return ChangeEntry(type=change_type, size_hint=size_hint, relative_path=relative_path)


def parse_output(
    lines: Iterable[str],
    source: str,
    destination: str,
    skip_policy: Optional[SkipPolicy] = None,
) -> List[ChangeEntry]:
    """解析 robocopy 输出，命中跳过策略的条目在这里直接丢弃"""
    skip_policy = skip_policy or SkipPolicy.none()
    entries: List[ChangeEntry] = []
    dropped = 0
    for line in lines:
        entry = parse_line(line, source, destination)
        if entry is None:
            continue
        if skip_policy.matches(entry.relative_path):
            dropped += 1
            continue
        entries.append(entry)
    if dropped:
        logger.info(f"跳过策略丢弃了 {dropped} 个条目")
    return entries


class DryRunPlanner:
    """试运行计划器"""

    def __init__(self, invoker: RobocopyInvoker, tuning: Optional[TuningParams] = None):
        self.invoker = invoker
        self.tuning = tuning or TuningParams(thread_count=8)

    def plan(
        self,
        source: str,
        destination: str,
        exclusions: Iterable[str] = (),
        log_path: Optional[Path] = None,
        skip_policy: Optional[SkipPolicy] = None,
        exclude_files: Iterable[str] = (),
    ) -> ChangeSet:
        """生成变更集

        Raises:
            PlanError: robocopy 返回致命退出码，此时不生成任何计划
        """
        skip_policy = skip_policy or SkipPolicy.none()
        source = absolute_root(source)
        destination = absolute_root(destination)
        log_path = Path(log_path) if log_path else Path("logs") / "plans" / f"dryrun-{_stamp()}.log"

        spec = TransferSpec(
            source=source,
            destination=destination,
            mode=TransferMode.DRY_RUN,
            exclude_dirs=set(exclusions) | set(skip_policy.robocopy_exclude_dirs()),
            exclude_files=set(exclude_files),
            tuning=self.tuning,
            label="dryrun",
        )
        captured: List[str] = []
        result = self.invoker.invoke(spec, log_path, on_line=captured.append)
        if is_fatal(result.exit_code):
            raise PlanError(f"试运行失败，退出码 {result.exit_code}: {explain(result.exit_code)}")

        entries = parse_output(captured, source, destination, skip_policy)
        changeset = ChangeSet(
            source=source,
            destination=destination,
            generated_at=datetime.now(),
            entries=entries,
            raw_lines=captured,
        )
        logger.info(f"试运行完成: {len(entries)} 个条目 {dict(summarize(changeset))}")
        return changeset


def summarize(changeset: ChangeSet) -> Dict[str, int]:
    """按类型统计条目数量"""
    counts = Counter(entry.type.value for entry in changeset.entries)
    return {t.value: counts.get(t.value, 0) for t in ChangeType}


def changeset_to_dict(changeset: ChangeSet) -> dict:
    return {
        "source": changeset.source,
        "destination": changeset.destination,
        "timestamp": changeset.generated_at.isoformat(timespec="seconds"),
        "entries": [
            {"Type": e.type.value, "Size": e.size_hint, "Path": e.relative_path}
            for e in changeset.entries
        ],
    }


def save_plan(changeset: ChangeSet, path: Path) -> Path:
    """保存计划 JSON；若有原始输出，一并保存为 <plan>.raw.txt 便于排查"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(changeset_to_dict(changeset), f, indent=2, ensure_ascii=False)
    if changeset.raw_lines:
        raw_path = path.with_name(path.name + ".raw.txt")
        raw_path.write_text("\n".join(changeset.raw_lines) + "\n", encoding="utf-8")
    logger.info(f"计划已保存: {path} ({len(changeset.entries)} 个条目)")
    return path


def load_plan(path: Path) -> ChangeSet:
    """读取计划文件

    Raises:
        PlanError: 文件缺失、JSON 错误、缺少字段或条目类型未知
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise PlanError(f"计划文件不存在: {path}") from e
    except json.JSONDecodeError as e:
        raise PlanError(f"计划文件格式错误 {path}: {e}") from e

    try:
        entries = [
            ChangeEntry(
                type=ChangeType(item["Type"]),
                size_hint=None if item.get("Size") is None else int(item["Size"]),
                relative_path=str(item["Path"]),
            )
            for item in data["entries"]
        ]
        return ChangeSet(
            source=str(data["source"]),
            destination=str(data["destination"]),
            generated_at=datetime.fromisoformat(data["timestamp"]),
            entries=entries,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise PlanError(f"计划文件内容无效 {path}: {e}") from e


def _stamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")
