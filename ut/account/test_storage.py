"""持久化存储测试"""

from types import SimpleNamespace

import pytest

from coinledger.account.errors import StorageCorruptionError
from coinledger.account.storage import (
    JsonFilePersistence,
    MemoryPersistence,
    SqlitePersistence,
    create_persistence,
)

DOCUMENT = [
    {"id": "a", "amount": "0.00000001", "tags": ["x", "y"]},
    {"id": "b", "amount": "12345678901234567890.123456789", "price": None},
]


@pytest.fixture(params=["memory", "json", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        adapter = MemoryPersistence()
    elif request.param == "json":
        adapter = JsonFilePersistence(tmp_path / "ledger")
    else:
        adapter = SqlitePersistence(tmp_path / "ledger.db")
    yield adapter
    adapter.close()


class TestPersistenceAdapters:
    """三种后端的共同行为"""

    def test_missing_key(self, backend):
        assert backend.get("coinledger.data") is None

    def test_set_get(self, backend):
        backend.set("coinledger.data", DOCUMENT)
        assert backend.get("coinledger.data") == DOCUMENT

    def test_overwrite(self, backend):
        backend.set("coinledger.data", DOCUMENT)
        backend.set("coinledger.data", DOCUMENT[:1])
        assert backend.get("coinledger.data") == DOCUMENT[:1]

    def test_keys_are_independent(self, backend):
        backend.set("coinledger.data", [1])
        backend.set("coinledger.portfolios", [2])
        assert backend.get("coinledger.data") == [1]
        assert backend.get("coinledger.portfolios") == [2]


class TestMemoryPersistence:
    """内存存储测试"""

    def test_copies_on_read_and_write(self):
        store = MemoryPersistence()
        doc = [{"id": "a"}]
        store.set("k", doc)
        doc[0]["id"] = "changed"
        store.get("k")[0]["id"] = "changed"
        assert store.get("k") == [{"id": "a"}]

    def test_initial(self):
        store = MemoryPersistence({"k": [1]})
        assert store.keys() == ["k"]


class TestJsonFilePersistence:
    """JSON 文件存储测试"""

    def test_file_layout(self, tmp_path):
        store = JsonFilePersistence(tmp_path)
        store.set("coinledger.data", DOCUMENT)
        assert (tmp_path / "coinledger.data.json").exists()
        assert not list(tmp_path.glob("*.tmp"))

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "coinledger.data.json").write_text("{not json", encoding="utf-8")
        store = JsonFilePersistence(tmp_path)
        with pytest.raises(StorageCorruptionError) as exc:
            store.get("coinledger.data")
        assert exc.value.key == "coinledger.data"


class TestSqlitePersistence:
    """SQLite 存储测试"""

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "ledger.db"
        store = SqlitePersistence(path)
        store.set("coinledger.data", DOCUMENT)
        store.close()

        reopened = SqlitePersistence(path)
        assert reopened.get("coinledger.data") == DOCUMENT
        reopened.close()


class TestCreatePersistence:
    """按配置创建后端"""

    def _settings(self, backend, tmp_path):
        return SimpleNamespace(storage=SimpleNamespace(
            backend=backend,
            json_dir=tmp_path / "json",
            sqlite_path=tmp_path / "ledger.db",
        ))

    def test_backends(self, tmp_path):
        assert isinstance(create_persistence(self._settings("memory", tmp_path)), MemoryPersistence)
        assert isinstance(create_persistence(self._settings("json", tmp_path)), JsonFilePersistence)
        assert isinstance(create_persistence(self._settings("sqlite", tmp_path)), SqlitePersistence)

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError):
            create_persistence(self._settings("redis", tmp_path))
