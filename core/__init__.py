"""
核心模块 - 配置、错误类型和计时工具

为有限元空间与hp自适应模块提供统一的配置类和错误类型。
"""

from .config import (
    # 配置类
    AdaptivityConfig,

    # 常量
    MAX_ORDER,
    MAX_LEVEL,
    STRATEGY_FRACTION_OF_TOTAL,
    STRATEGY_FRACTION_OF_MAX,
    STRATEGY_ABSOLUTE,
)

from .exceptions import InvalidStateError, ResourceExhaustedError
from .timing import TimePeriod

__all__ = [
    'AdaptivityConfig',
    'MAX_ORDER',
    'MAX_LEVEL',
    'STRATEGY_FRACTION_OF_TOTAL',
    'STRATEGY_FRACTION_OF_MAX',
    'STRATEGY_ABSOLUTE',
    'InvalidStateError',
    'ResourceExhaustedError',
    'TimePeriod',
]
