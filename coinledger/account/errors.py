"""账本异常体系

所有业务异常继承自 LedgerError，调用方可按类型区分处理：
- ValidationError: 输入不合法，携带出错字段
- NotFoundError: 交易或组合不存在
- InvalidOperationError: 操作被业务规则拒绝（如删除默认组合）
- ImportRowError: 导入时单行映射失败
- PriceUnavailableError: 行情协作方无法给出价格
- StorageCorruptionError: 持久化数据结构损坏（致命）
"""

from typing import Any, Optional


class LedgerError(Exception):
    """账本异常基类"""


class ValidationError(LedgerError):
    """字段校验失败"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFoundError(LedgerError):
    """记录不存在"""

    def __init__(self, kind: str, id: str):
        self.kind = kind
        self.id = id
        super().__init__(f"{kind} 不存在: {id}")


class InvalidOperationError(LedgerError):
    """被业务规则拒绝的操作"""


class ImportRowError(LedgerError):
    """导入行映射失败"""

    def __init__(self, message: str, field: Optional[str] = None, row: Optional[int] = None):
        self.row = row
        self.field = field
        self.message = message
        super().__init__(message if field is None else f"{field}: {message}")


class PriceUnavailableError(LedgerError):
    """无法获取价格"""

    def __init__(self, asset: str, reason: str = "无可用报价"):
        self.asset = asset
        self.reason = reason
        super().__init__(f"{asset} 价格不可用: {reason}")


class StorageCorruptionError(LedgerError):
    """存储数据损坏

    加载时发现结构不符即抛出，账本拒绝继续运行。
    """

    def __init__(self, key: str, reason: str, payload: Any = None):
        self.key = key
        self.reason = reason
        self.payload = payload
        super().__init__(f"存储数据损坏 [{key}]: {reason}")
