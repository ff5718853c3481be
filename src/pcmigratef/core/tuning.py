"""
线程调优模块 - 根据网络链路速度和预设计算 robocopy 的 /MT 与 /IPG 参数
"""
import threading
import time
from datetime import datetime
from typing import Callable, Optional, Union

import psutil
from loguru import logger

from .models import TuningParams, TuningProfile

# 读取链路速度失败时的保守默认值
FALLBACK_LINK_SPEED_MBPS = 100
LINK_SPEED_TTL_SECONDS = 30.0

# (下限 Mbps, 线程数)，按速度从高到低匹配
LINK_SPEED_STEPS = [
    (10000, 256),
    (5000, 192),
    (2500, 128),
    (1000, 96),
    (0, 48),
]

# 命名预设直接覆盖基线：(线程数, 包间隔毫秒)
PROFILE_OVERRIDES = {
    TuningProfile.CONSERVATIVE: (16, 20),
    TuningProfile.BALANCED: (64, 5),
    TuningProfile.AGGRESSIVE: (256, 0),
    TuningProfile.WIFI: (24, 10),
}

BUSINESS_HOURS = (8, 18)
THROTTLE_MIN_THREADS = 16
THROTTLE_GAP_MS = 10


def baseline_threads(link_speed_mbps: float) -> int:
    """链路速度 -> 基线线程数（单调阶梯函数）"""
    for floor, threads in LINK_SPEED_STEPS:
        if link_speed_mbps >= floor:
            return threads
    return LINK_SPEED_STEPS[-1][1]


def compute(
    profile: Union[TuningProfile, str],
    link_speed_mbps: float,
    business_hours_throttle: bool,
    current_hour: int,
) -> TuningParams:
    """计算调优参数

    Args:
        profile: 预设名称，Auto 使用链路速度基线
        link_speed_mbps: 当前链路速度
        business_hours_throttle: 是否在工作时间限速
        current_hour: 当前小时 (0-23)

    Returns:
        TuningParams: 新的参数对象
    """
    profile = TuningProfile(profile)

    if profile in PROFILE_OVERRIDES:
        threads, gap = PROFILE_OVERRIDES[profile]
    else:
        threads, gap = baseline_threads(link_speed_mbps), 0

    # 工作时间限速作用于任意预设之后
    start, end = BUSINESS_HOURS
    if business_hours_throttle and start <= current_hour < end:
        threads = max(THROTTLE_MIN_THREADS, threads // 2)
        gap = THROTTLE_GAP_MS

    return TuningParams(thread_count=threads, inter_packet_gap_ms=gap, profile=profile)


class LinkSpeedProbe:
    """链路速度探测器，结果带短 TTL 缓存"""

    def __init__(
        self,
        ttl_seconds: float = LINK_SPEED_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        reader: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._reader = reader or self._read_from_psutil
        self._cached: Optional[float] = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    @staticmethod
    def _read_from_psutil() -> float:
        """取所有已启用的非回环网卡中最快的速度"""
        speeds = [
            stats.speed
            for name, stats in psutil.net_if_stats().items()
            if stats.isup and stats.speed > 0 and not name.lower().startswith(("lo", "loopback"))
        ]
        if not speeds:
            raise RuntimeError("没有找到报告链路速度的活动网卡")
        return float(max(speeds))

    def speed_mbps(self) -> float:
        with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._cached_at < self.ttl_seconds:
                return self._cached
            try:
                speed = self._reader()
                logger.debug(f"链路速度: {speed} Mbps")
            except Exception as e:
                logger.warning(f"读取链路速度失败，使用默认值 {FALLBACK_LINK_SPEED_MBPS} Mbps: {e}")
                speed = float(FALLBACK_LINK_SPEED_MBPS)
            self._cached = speed
            self._cached_at = now
            return speed


class TuningAdvisor:
    """调优顾问 - 组合链路探测与 compute()"""

    def __init__(self, probe: Optional[LinkSpeedProbe] = None, now: Callable[[], datetime] = datetime.now):
        self.probe = probe or LinkSpeedProbe()
        self._now = now

    def advise(self, profile: Union[TuningProfile, str], business_hours_throttle: bool = False) -> TuningParams:
        speed = self.probe.speed_mbps()
        params = compute(profile, speed, business_hours_throttle, self._now().hour)
        logger.info(
            f"调优参数: 预设={params.profile.value} 链路={speed:.0f}Mbps "
            f"线程={params.thread_count} IPG={params.inter_packet_gap_ms}ms"
        )
        return params
