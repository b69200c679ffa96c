"""序列化模块

账本文档的序列化方案：
- msgpack: 二进制序列化，SQLite 存储载荷使用，Decimal / 时间 / 元组 / 集合走扩展类型
- JSON: 文本序列化，文件存储与导出使用
- Decimal 始终按字符串保存，JSON 里的小数读回为 Decimal，不经过浮点
"""

import json
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

import msgpack

# msgpack 扩展类型编号，写入存储后不能再改
EXT_DECIMAL = 1
EXT_DATETIME = 2
EXT_DATE = 3
EXT_TUPLE = 4
EXT_SET = 5


class Serializer(ABC):
    """序列化器基类"""

    @abstractmethod
    def serialize(self, obj: Any) -> bytes:
        """序列化对象为字节"""

    @abstractmethod
    def deserialize(self, data: bytes) -> Any:
        """反序列化字节为对象

        Raises:
            ValueError: 数据损坏
        """


# ============================================================
# MsgPack 序列化器
# ============================================================


class MsgPackSerializer(Serializer):
    """MsgPack 序列化器

    枚举按值保存；其余非原生类型编码为 ExtType，读取时由 ext_hook 还原
    """

    def serialize(self, obj: Any) -> bytes:
        return msgpack.packb(obj, default=self._default, use_bin_type=True, strict_types=True)

    def deserialize(self, data: bytes) -> Any:
        try:
            return msgpack.unpackb(data, ext_hook=self._ext_hook, raw=False, strict_map_key=False)
        except ValueError as e:
            raise ValueError(f"msgpack 数据损坏: {e}") from e

    def _default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Decimal):
            return msgpack.ExtType(EXT_DECIMAL, str(obj).encode("ascii"))
        if isinstance(obj, datetime):
            return msgpack.ExtType(EXT_DATETIME, obj.isoformat().encode("ascii"))
        if isinstance(obj, date):
            return msgpack.ExtType(EXT_DATE, obj.isoformat().encode("ascii"))
        if isinstance(obj, tuple):
            return msgpack.ExtType(EXT_TUPLE, self.serialize(list(obj)))
        if isinstance(obj, (set, frozenset)):
            return msgpack.ExtType(EXT_SET, self.serialize(sorted(obj, key=str)))
        # strict_types 下 str / int 的子类也会走到这里
        for base in (str, int, float, dict, list):
            if isinstance(obj, base):
                return base(obj)
        raise TypeError(f"无法序列化类型: {type(obj)}")

    def _ext_hook(self, code: int, data: bytes) -> Any:
        if code == EXT_DECIMAL:
            return Decimal(data.decode("ascii"))
        if code == EXT_DATETIME:
            return datetime.fromisoformat(data.decode("ascii"))
        if code == EXT_DATE:
            return date.fromisoformat(data.decode("ascii"))
        if code == EXT_TUPLE:
            return tuple(self.deserialize(data))
        if code == EXT_SET:
            return set(self.deserialize(data))
        return msgpack.ExtType(code, data)


# ============================================================
# JSON 序列化器
# ============================================================


class JsonSerializer(Serializer):
    """JSON 序列化器"""

    def __init__(self, indent: Optional[int] = None):
        self.indent = indent

    def serialize(self, obj: Any) -> bytes:
        return self.serialize_to_str(obj).encode("utf-8")

    def deserialize(self, data: Union[bytes, str]) -> Any:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        return json.loads(text, parse_float=Decimal)

    def serialize_to_str(self, obj: Any) -> str:
        return json.dumps(obj, cls=ExtendedJsonEncoder, indent=self.indent, ensure_ascii=False)


class ExtendedJsonEncoder(json.JSONEncoder):
    """扩展 JSON 编码器，Decimal 输出为字符串以保留全部精度"""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)
