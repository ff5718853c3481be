"""测试共用的假对象：外部进程一律通过注入的假 runner/invoker 模拟"""
from datetime import datetime
from pathlib import Path

import pytest

from pcmigratef.core.models import TransferResult


class FakeRunner:
    """替代 ProcessRunner：记录参数，按脚本输出行并返回退出码"""

    def __init__(self, lines=None, code=0, raises=None, responder=None):
        self.lines = lines or []
        self.code = code
        self.raises = raises
        self.responder = responder
        self.calls = []

    def run(self, args, log_path=None, on_line=None, append=True):
        self.calls.append(list(args))
        if self.raises is not None:
            raise self.raises
        lines, code = (self.responder(args) if self.responder else (self.lines, self.code))
        for line in lines:
            if on_line is not None:
                on_line(line)
        return code


class FakeInvoker:
    """替代 RobocopyInvoker：按标签返回预设退出码"""

    def __init__(self, codes=None, default=1, cancelled_labels=(), lines=None, percents=()):
        self.codes = codes or {}
        self.default = default
        self.cancelled_labels = set(cancelled_labels)
        self.lines = lines or []
        self.percents = list(percents)
        self.specs = []

    def invoke(self, spec, log_path, on_line=None, on_progress=None):
        self.specs.append(spec)
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        for percent in self.percents:
            if on_progress is not None:
                on_progress(percent)
        now = datetime.now()
        return TransferResult(
            label=spec.label,
            exit_code=self.codes.get(spec.label, self.default),
            log_path=Path(log_path),
            started_at=now,
            finished_at=now,
            cancelled=spec.label in self.cancelled_labels,
        )


class FakeUsmt:
    """替代 UsmtRunner"""

    def __init__(self, capture_codes=None, restore_codes=None):
        self.capture_codes = capture_codes or {}
        self.restore_codes = restore_codes or {}
        self.captured = []
        self.restored = []

    def capture(self, identity, store, options, log_path, exclude_xml=None):
        self.captured.append((identity, exclude_xml))
        return self.capture_codes.get(identity, 0)

    def restore(self, identity, store, options, log_path):
        self.restored.append(identity)
        return self.restore_codes.get(identity, 0)


@pytest.fixture
def fake_runner_cls():
    return FakeRunner


@pytest.fixture
def fake_invoker_cls():
    return FakeInvoker


@pytest.fixture
def fake_usmt_cls():
    return FakeUsmt
