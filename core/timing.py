"""
计时工具
"""

import time


class TimePeriod:
    """累计计时器

    tick() 把自上次 tick 以来的时间计入总时间，
    tick(skip=True) 丢弃这段时间（例如输出和可视化）。
    """

    def __init__(self):
        self._last = time.perf_counter()
        self._accumulated = 0.0

    def tick(self, skip: bool = False) -> 'TimePeriod':
        now = time.perf_counter()
        if not skip:
            self._accumulated += now - self._last
        self._last = now
        return self

    def accumulated(self) -> float:
        """累计时间（秒）"""
        return self._accumulated

    def reset(self):
        self._last = time.perf_counter()
        self._accumulated = 0.0
