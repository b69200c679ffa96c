"""单元测试公共 fixtures"""

import pytest

from coinledger.account.cost_basis import CostBasisEngine
from coinledger.account.ledger import Ledger
from coinledger.account.portfolio import PortfolioRegistry
from coinledger.account.storage import MemoryPersistence
from coinledger.account.store import TransactionStore
from coinledger.utils.events import EventBus
from tests.mocks.factories import TickingClock


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def ledger(persistence, clock):
    return Ledger(persistence, event_bus=EventBus(), clock=clock).load()


@pytest.fixture
def store(ledger):
    return TransactionStore(ledger)


@pytest.fixture
def registry(ledger):
    return PortfolioRegistry(ledger)


@pytest.fixture
def engine(ledger):
    return CostBasisEngine(ledger)
