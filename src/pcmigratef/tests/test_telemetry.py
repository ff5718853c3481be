"""
捕获清单与遥测测试
"""
import json
from datetime import datetime

import pytest

from pcmigratef.core.errors import ManifestError
from pcmigratef.core.models import CaptureManifest, StageRun, StageStatus
from pcmigratef.core.telemetry import MANIFEST_VERSION, TelemetryWriter, new_manifest, read_manifest, write_manifest


class TestCaptureManifest:
    """测试捕获清单"""

    def test_round_trip(self, tmp_path):
        manifest = CaptureManifest(
            version=MANIFEST_VERSION,
            generated_at=datetime(2024, 6, 1, 12, 0, 0),
            source_computer="OLDPC",
            identities=["/ui:DOMAIN\\alice", "/all"],
        )
        path = write_manifest(tmp_path / "store" / "capture-manifest.json", manifest)
        assert read_manifest(path) == manifest

    def test_json_keys(self, tmp_path):
        path = write_manifest(tmp_path / "m.json", new_manifest(["/ui:*\\bob"], "OLDPC"))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data) == {"version", "generatedAt", "sourceComputer", "identities"}
        assert data["identities"] == ["/ui:*\\bob"]

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(ManifestError):
            read_manifest(tmp_path / "none.json")

    def test_malformed_manifest(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text('{"version": 1, "identities": "alice"}', encoding="utf-8")
        with pytest.raises(ManifestError):
            read_manifest(path)

    def test_default_source_computer(self):
        assert new_manifest([]).source_computer


class TestTelemetryWriter:
    """测试遥测写入"""

    def test_appends_events(self, tmp_path):
        writer = TelemetryWriter(tmp_path / "t" / "telemetry.jsonl")
        writer.record(StageRun("precopy", StageStatus.OK, "done", datetime.now(), datetime.now()))
        writer.record(StageRun("capture", StageStatus.ERROR, "failed"), host="OLDPC")
        events = writer.read_events()
        assert [e["stage"] for e in events] == ["precopy", "capture"]
        assert events[1]["status"] == "Error"
        assert events[1]["host"] == "OLDPC"
        assert events[1]["startedAt"] is None

    def test_skips_corrupt_lines(self, tmp_path):
        path = tmp_path / "telemetry.jsonl"
        path.write_text('{"stage": "a"}\nnot json\n', encoding="utf-8")
        assert TelemetryWriter(path).read_events() == [{"stage": "a"}]
