"""
下载侧休息控制
- 每成功下载 video_limit_before_rest 个视频，休息 video_limit_rest_duration 分钟
- 机器人检测累计达到 bot_detection_threshold 次，休息 bot_detection_rest_duration 分钟并清零

实际休息时长在配置值上随机增加 0-10%
"""

import random
from typing import Callable, Optional

from core.logger import get_logger

logger = get_logger()

REST_JITTER = 0.1


def jittered_rest_seconds(minutes: float, rng: random.Random) -> float:
    return minutes * 60 * (1.0 + rng.uniform(0, REST_JITTER))


class VideoRestController:
    """按成功下载数量休息"""

    def __init__(
        self,
        limit: int,
        rest_minutes: float,
        sleep: Callable[[float], None],
        rng: Optional[random.Random] = None,
    ):
        self.limit = limit
        self.rest_minutes = rest_minutes
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.count = 0

    def record_success(self) -> Optional[float]:
        """记录一次成功下载，达到阈值时休息

        Returns:
            实际休息秒数，未休息返回 None
        """
        if self.limit <= 0:
            return None
        self.count += 1
        if self.count < self.limit:
            return None
        seconds = jittered_rest_seconds(self.rest_minutes, self.rng)
        logger.info(f"已连续下载 {self.count} 个视频，休息 {seconds / 60:.1f} 分钟")
        self.count = 0
        self.sleep(seconds)
        return seconds


class BotRestController:
    """按机器人检测次数休息"""

    def __init__(
        self,
        threshold: int,
        rest_minutes: float,
        sleep: Callable[[float], None],
        rng: Optional[random.Random] = None,
    ):
        self.threshold = threshold
        self.rest_minutes = rest_minutes
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.count = 0

    def record_bot_detected(self) -> Optional[float]:
        if self.threshold <= 0:
            return None
        self.count += 1
        logger.warning(f"机器人检测计数: {self.count}/{self.threshold}", error_type="bot_detected")
        if self.count < self.threshold:
            return None
        seconds = jittered_rest_seconds(self.rest_minutes, self.rng)
        logger.warning(
            f"机器人检测达到 {self.count} 次，休息 {seconds / 60:.1f} 分钟",
            error_type="bot_detected",
        )
        self.count = 0
        self.sleep(seconds)
        return seconds
