"""
线程调优模块测试
"""
from datetime import datetime

import pytest

from pcmigratef.core.models import TuningParams, TuningProfile
from pcmigratef.core.tuning import (
    FALLBACK_LINK_SPEED_MBPS,
    LinkSpeedProbe,
    TuningAdvisor,
    baseline_threads,
    compute,
)


class TestBaselineThreads:
    """测试链路速度基线"""

    def test_monotonic_in_link_speed(self):
        """速度越快线程数不减少"""
        speeds = [0, 10, 100, 999, 1000, 2500, 5000, 9999, 10000, 40000]
        threads = [baseline_threads(s) for s in speeds]
        assert threads == sorted(threads)

    def test_step_values(self):
        assert baseline_threads(100) == 48
        assert baseline_threads(1000) == 96
        assert baseline_threads(2500) == 128
        assert baseline_threads(5000) == 192
        assert baseline_threads(10000) == 256


class TestCompute:
    """测试调优参数计算"""

    def test_auto_uses_baseline(self):
        params = compute(TuningProfile.AUTO, 1000, False, 12)
        assert params == TuningParams(thread_count=96, inter_packet_gap_ms=0, profile=TuningProfile.AUTO)

    def test_named_profile_overrides_baseline(self):
        """命名预设不受链路速度影响"""
        slow = compute("conservative", 10, False, 3)
        fast = compute("conservative", 10000, False, 3)
        assert slow == fast
        assert slow.thread_count == 16
        assert slow.inter_packet_gap_ms == 20

    def test_throttle_halves_threads_in_business_hours(self):
        params = compute("auto", 10000, True, 10)
        assert params.thread_count == 128
        assert params.inter_packet_gap_ms == 10

    def test_throttle_respects_minimum(self):
        params = compute("conservative", 100, True, 9)
        assert params.thread_count == 16
        assert params.inter_packet_gap_ms == 10

    def test_throttle_only_applies_between_8_and_18(self):
        assert compute("auto", 10000, True, 7).thread_count == 256
        assert compute("auto", 10000, True, 8).thread_count == 128
        assert compute("auto", 10000, True, 17).thread_count == 128
        assert compute("auto", 10000, True, 18).thread_count == 256

    def test_throttle_disabled(self):
        assert compute("auto", 10000, False, 12).thread_count == 256

    def test_thread_count_always_positive(self):
        for profile in TuningProfile:
            for hour in (0, 12):
                params = compute(profile, 0, True, hour)
                assert params.thread_count >= 1
                assert params.inter_packet_gap_ms >= 0

    def test_unknown_profile_raises(self):
        with pytest.raises(ValueError):
            compute("turbo", 1000, False, 12)


class TestTuningParams:
    """测试参数校验"""

    def test_rejects_zero_threads(self):
        with pytest.raises(ValueError):
            TuningParams(thread_count=0)

    def test_rejects_negative_gap(self):
        with pytest.raises(ValueError):
            TuningParams(thread_count=4, inter_packet_gap_ms=-1)


class TestLinkSpeedProbe:
    """测试链路速度探测缓存"""

    def test_cached_within_ttl(self):
        clock = [0.0]
        calls = []

        def reader():
            calls.append(1)
            return 1000.0

        probe = LinkSpeedProbe(ttl_seconds=30, clock=lambda: clock[0], reader=reader)
        assert probe.speed_mbps() == 1000.0
        clock[0] = 29.0
        assert probe.speed_mbps() == 1000.0
        assert len(calls) == 1

        clock[0] = 31.0
        probe.speed_mbps()
        assert len(calls) == 2

    def test_fallback_on_error(self):
        def reader():
            raise RuntimeError("no adapters")

        probe = LinkSpeedProbe(reader=reader)
        assert probe.speed_mbps() == FALLBACK_LINK_SPEED_MBPS


class TestTuningAdvisor:
    """测试调优顾问"""

    def test_advise_uses_probe_and_clock(self):
        probe = LinkSpeedProbe(reader=lambda: 2500.0)
        advisor = TuningAdvisor(probe=probe, now=lambda: datetime(2024, 5, 1, 10, 0))
        params = advisor.advise("auto", business_hours_throttle=True)
        assert params.thread_count == 64
        assert params.inter_packet_gap_ms == 10

    def test_advise_outside_business_hours(self):
        probe = LinkSpeedProbe(reader=lambda: 2500.0)
        advisor = TuningAdvisor(probe=probe, now=lambda: datetime(2024, 5, 1, 22, 0))
        assert advisor.advise("auto", business_hours_throttle=True).thread_count == 128
