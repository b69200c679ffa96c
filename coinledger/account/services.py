"""服务装配

按配置显式构造各组件，不使用全局单例：

    persistence -> Ledger -> TransactionStore / PortfolioRegistry
                          -> CostBasisEngine -> ValuationEngine / TaxReportGenerator
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from coinledger.account.cost_basis import CostBasisEngine
from coinledger.account.importer import ImportMapper
from coinledger.account.ledger import Ledger
from coinledger.account.portfolio import PortfolioRegistry
from coinledger.account.storage import PersistenceAdapter, create_persistence
from coinledger.account.store import TransactionStore
from coinledger.account.tax import TaxReportGenerator
from coinledger.account.transaction import utcnow
from coinledger.account.valuation import ValuationEngine
from coinledger.data.prices import MarketPriceProvider, RetryingPriceProvider, StaticPriceProvider
from coinledger.utils.events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    """一个账本对应的全部服务"""

    ledger: Ledger
    store: TransactionStore
    portfolios: PortfolioRegistry
    cost_basis: CostBasisEngine
    valuation: ValuationEngine
    tax: TaxReportGenerator
    importer: ImportMapper

    @property
    def event_bus(self) -> EventBus:
        return self.ledger.event_bus

    def close(self) -> None:
        """移除事件订阅并释放存储连接"""
        self.cost_basis.close()
        self.ledger.persistence.close()


def build_services(
    settings=None,
    persistence: Optional[PersistenceAdapter] = None,
    price_provider: Optional[MarketPriceProvider] = None,
    clock: Callable[[], datetime] = utcnow,
) -> LedgerServices:
    """
    装配服务

    Args:
        settings: AppSettings，不传使用全局配置
        persistence: 存储后端，不传按配置创建
        price_provider: 行情价格，不传按配置的价格表创建（没有则为空表），外层包重试
        clock: 时钟
    """
    if settings is None:
        from config.base import get_settings

        settings = get_settings()

    if persistence is None:
        persistence = create_persistence(settings)

    ledger = Ledger(
        persistence,
        namespace=settings.ledger.namespace,
        event_bus=EventBus(),
        clock=clock,
        default_portfolio_name=settings.ledger.default_portfolio_name,
    ).load()

    if price_provider is None:
        price_file = settings.prices.price_file
        price_provider = StaticPriceProvider.from_csv(price_file) if price_file else StaticPriceProvider()

    prices = RetryingPriceProvider(
        price_provider,
        max_attempts=settings.prices.max_attempts,
        min_wait=settings.prices.min_wait,
        max_wait=settings.prices.max_wait,
    )

    store = TransactionStore(ledger, default_fiat=settings.ledger.default_fiat)
    cost_basis = CostBasisEngine(ledger)
    services = LedgerServices(
        ledger=ledger,
        store=store,
        portfolios=PortfolioRegistry(ledger),
        cost_basis=cost_basis,
        valuation=ValuationEngine(cost_basis, prices, max_workers=settings.prices.lookup_workers),
        tax=TaxReportGenerator(cost_basis, long_term_days=settings.ledger.long_term_days),
        importer=ImportMapper(
            store,
            default_source=settings.importer.default_source,
            date_format=settings.importer.date_format,
        ),
    )
    logger.debug(
        f"服务已装配: 存储={type(persistence).__name__}, "
        f"{len(ledger.transactions())} 笔交易, {len(ledger.portfolios())} 个组合"
    )
    return services
