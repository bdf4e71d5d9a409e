"""
自适应引擎的错误类型
"""


class InvalidStateError(RuntimeError):
    """对不存在/已失效对象的非法操作（编程错误，不可恢复）"""


class ResourceExhaustedError(RuntimeError):
    """细化层数或自由度数超出可表示范围"""
