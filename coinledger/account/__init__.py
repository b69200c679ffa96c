"""账本核心

交易日志、组合、成本核算、导入导出与税务报告。
估值 (valuation) 与服务装配 (services) 依赖行情模块，请直接从子模块导入。
"""

from coinledger.account.errors import (
    LedgerError,
    ValidationError,
    NotFoundError,
    InvalidOperationError,
    ImportRowError,
    PriceUnavailableError,
    StorageCorruptionError,
)
from coinledger.account.transaction import Transaction, TransactionType, transaction_from_dict
from coinledger.account.portfolio import Portfolio, PortfolioRegistry
from coinledger.account.storage import (
    PersistenceAdapter,
    MemoryPersistence,
    JsonFilePersistence,
    SqlitePersistence,
    create_persistence,
)
from coinledger.account.ledger import Ledger, LedgerSnapshot
from coinledger.account.store import TransactionFilter, TransactionStore
from coinledger.account.cost_basis import CostBasisEngine, AssetPosition, Lot
from coinledger.account.importer import ImportMapper, ImportResult
from coinledger.account.tax import TaxReportGenerator, TaxReport

__all__ = [
    # 异常
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "InvalidOperationError",
    "ImportRowError",
    "PriceUnavailableError",
    "StorageCorruptionError",
    # 交易与组合
    "Transaction",
    "TransactionType",
    "transaction_from_dict",
    "Portfolio",
    "PortfolioRegistry",
    # 存储
    "PersistenceAdapter",
    "MemoryPersistence",
    "JsonFilePersistence",
    "SqlitePersistence",
    "create_persistence",
    "Ledger",
    "LedgerSnapshot",
    "TransactionFilter",
    "TransactionStore",
    # 派生计算
    "CostBasisEngine",
    "AssetPosition",
    "Lot",
    "ImportMapper",
    "ImportResult",
    "TaxReportGenerator",
    "TaxReport",
]
