"""Pytest配置和fixtures"""

import pytest

from config.base import AppSettings
from coinledger.account.services import build_services
from coinledger.account.storage import MemoryPersistence
from coinledger.data.prices import StaticPriceProvider
from tests.mocks.factories import TickingClock


@pytest.fixture
def settings() -> AppSettings:
    """内存存储、价格查询不等待的配置"""
    return AppSettings(
        storage={"backend": "memory"},
        prices={"max_attempts": 2, "min_wait": 0, "max_wait": 0},
    )


@pytest.fixture
def prices() -> StaticPriceProvider:
    return StaticPriceProvider({"BTC": "50000", "ETH": "3000", "SOL": "150"})


@pytest.fixture
def services(settings, prices):
    """装配好的账本服务"""
    svc = build_services(settings, persistence=MemoryPersistence(), price_provider=prices, clock=TickingClock())
    yield svc
    svc.close()


@pytest.fixture
def fifo_services(services):
    """依次买入 1 BTC @ 10000 / 20000 / 30000，再卖出 1.5 BTC @ 40000"""
    store = services.store
    for day, price in ((1, "10000"), (2, "20000"), (3, "30000")):
        store.add_transaction({
            "type": "buy", "asset": "BTC", "amount": "1", "price": price,
            "timestamp": f"2023-01-0{day}T00:00:00Z",
        })
    store.add_transaction({
        "type": "sell", "asset": "BTC", "amount": "1.5", "price": "40000",
        "timestamp": "2024-03-01T00:00:00Z",
    })
    return services
