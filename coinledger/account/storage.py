"""账本持久化存储

账本只依赖 get(key) / set(key, value) 两个操作，文档每次整体重写。
提供三种后端：
- MemoryPersistence: 进程内字典，测试使用
- JsonFilePersistence: 每个键一个 JSON 文件，原子替换写入
- SqlitePersistence: SQLite 键值表，msgpack 载荷
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from coinledger.account.errors import StorageCorruptionError
from coinledger.utils.retry import retry_storage
from coinledger.utils.serialization import JsonSerializer, MsgPackSerializer

logger = logging.getLogger(__name__)


class PersistenceAdapter(ABC):
    """持久化适配器接口"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """读取文档，不存在返回 None"""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """整体写入文档"""
        pass

    def close(self) -> None:
        """释放资源"""


class MemoryPersistence(PersistenceAdapter):
    """内存存储

    读写都做深拷贝，调用方无法绕过 set 修改已存文档
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial) if initial else {}

    def get(self, key: str) -> Optional[Any]:
        return deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def keys(self):
        return list(self._data.keys())


class JsonFilePersistence(PersistenceAdapter):
    """JSON 文件存储"""

    def __init__(self, directory: Union[str, Path]):
        """
        Args:
            directory: 存储目录，每个键对应 <key>.json
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._serializer = JsonSerializer(indent=2)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    @retry_storage()
    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        raw = path.read_bytes()
        try:
            return self._serializer.deserialize(raw)
        except ValueError as e:
            raise StorageCorruptionError(key, f"JSON 解析失败: {e}") from e

    @retry_storage()
    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        data = self._serializer.serialize(value)

        # 先写临时文件再原子替换，避免写到一半的文件
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class SqlitePersistence(PersistenceAdapter):
    """SQLite 键值存储"""

    TABLE = "ledger_documents"

    def __init__(self, db_path: Union[str, Path]):
        """
        初始化存储

        Args:
            db_path: 数据库文件路径
        """
        self.db_path = str(db_path)
        self._engine = None
        self._serializer = MsgPackSerializer()

    @property
    def engine(self):
        """延迟初始化数据库引擎"""
        if self._engine is None:
            from sqlalchemy import create_engine

            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(f"sqlite:///{self.db_path}")
            self.init_tables()
        return self._engine

    def init_tables(self):
        """初始化数据表"""
        from sqlalchemy import text

        with self._engine.connect() as conn:
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    key TEXT PRIMARY KEY,
                    payload BLOB NOT NULL,
                    updated_at TEXT
                )
            """))
            conn.commit()

    @retry_storage()
    def get(self, key: str) -> Optional[Any]:
        from sqlalchemy import text

        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT payload FROM {self.TABLE} WHERE key = :key"),
                {"key": key},
            ).fetchone()

        if row is None:
            return None

        try:
            return self._serializer.deserialize(row[0])
        except (ValueError, TypeError) as e:
            raise StorageCorruptionError(key, f"msgpack 解码失败: {e}") from e

    @retry_storage()
    def set(self, key: str, value: Any) -> None:
        from sqlalchemy import text

        payload = self._serializer.serialize(value)

        with self.engine.connect() as conn:
            conn.execute(
                text(f"""
                    INSERT OR REPLACE INTO {self.TABLE} (key, payload, updated_at)
                    VALUES (:key, :payload, :updated_at)
                """),
                {
                    "key": key,
                    "payload": payload,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            conn.commit()

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


def create_persistence(settings) -> PersistenceAdapter:
    """
    按配置创建存储后端

    Args:
        settings: AppSettings
    """
    storage = settings.storage
    if storage.backend == "memory":
        return MemoryPersistence()
    if storage.backend == "json":
        return JsonFilePersistence(storage.json_dir)
    if storage.backend == "sqlite":
        return SqlitePersistence(storage.sqlite_path)
    raise ValueError(f"不支持的存储后端: {storage.backend}")
