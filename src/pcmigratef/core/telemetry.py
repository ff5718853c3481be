"""
遥测与捕获清单模块
"""
import json
import socket
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional

from loguru import logger

from .errors import ManifestError
from .models import CaptureManifest, StageRun

MANIFEST_VERSION = 1
MANIFEST_FILE_NAME = "capture-manifest.json"
TELEMETRY_FILE_NAME = "telemetry.jsonl"


def new_manifest(identities: Iterable[str], source_computer: Optional[str] = None) -> CaptureManifest:
    return CaptureManifest(
        version=MANIFEST_VERSION,
        generated_at=datetime.now(),
        source_computer=source_computer or socket.gethostname(),
        identities=list(identities),
    )


def write_manifest(path: Path, manifest: CaptureManifest) -> Path:
    """写入捕获清单，新的捕获会覆盖旧清单"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "version": manifest.version,
        "generatedAt": manifest.generated_at.isoformat(timespec="seconds"),
        "sourceComputer": manifest.source_computer,
        "identities": list(manifest.identities),
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.info(f"捕获清单已写入: {path} ({len(manifest.identities)} 个身份)")
    return path


def read_manifest(path: Path) -> CaptureManifest:
    """读取捕获清单

    Raises:
        ManifestError: 文件缺失或格式错误，需要重新捕获而不是猜测
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"捕获清单不存在: {path}") from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"捕获清单格式错误 {path}: {e}") from e

    try:
        identities = data["identities"]
        if not isinstance(identities, list) or not all(isinstance(i, str) for i in identities):
            raise TypeError("identities 必须是字符串列表")
        return CaptureManifest(
            version=int(data["version"]),
            generated_at=datetime.fromisoformat(data["generatedAt"]),
            source_computer=str(data["sourceComputer"]),
            identities=list(identities),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestError(f"捕获清单内容无效 {path}: {e}") from e


class TelemetryWriter:
    """把阶段事件逐行追加到 JSONL 文件"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()

    def record(self, run: StageRun, **extra) -> None:
        event = {
            "time": datetime.now().isoformat(timespec="seconds"),
            "stage": run.stage_id,
            "status": run.status.value,
            "detail": run.detail,
            "startedAt": run.started_at.isoformat(timespec="seconds") if run.started_at else None,
            "finishedAt": run.finished_at.isoformat(timespec="seconds") if run.finished_at else None,
        }
        event.update(extra)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")

    def read_events(self) -> List[dict]:
        if not self.path.exists():
            return []
        events = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"忽略损坏的遥测行: {line[:80]}")
        return events
