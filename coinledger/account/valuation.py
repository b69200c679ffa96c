"""估值引擎

把成本核算结果与行情价格结合，计算已实现/未实现盈亏和组合汇总。

- 先读取一次账本快照，再发起价格查询，长耗时的汇总内部保持一致
- 单个资产无价格时标记为不可用并排除出合计，绝不以 0 代替
- 同一快照、同一价格输入下结果完全一致
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from coinledger.account.amount import HUNDRED, ZERO, dsum, ledger_context, to_decimal
from coinledger.account.cost_basis import (
    ALL_PORTFOLIOS,
    AssetPosition,
    CostBasisEngine,
    Disposal,
    ReplayState,
    replay,
)
from coinledger.account.errors import PriceUnavailableError
from coinledger.account.transaction import TransactionType, parse_timestamp
from coinledger.data.prices import MarketPriceProvider
from coinledger.utils.logging import log_duration

logger = logging.getLogger(__name__)


# ============================================================
# 结果类型
# ============================================================


@dataclass(frozen=True)
class SaleResult:
    """单笔卖出的已实现盈亏"""

    transaction_id: str
    timestamp: datetime
    amount: Decimal
    price: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    uncovered: Decimal


@dataclass(frozen=True)
class ProfitLoss:
    """资产盈亏"""

    asset: str
    portfolio_id: Optional[str]
    balance: Decimal
    current_price: Optional[Decimal]
    current_value: Decimal
    cost_basis: Decimal
    unrealized: Decimal
    realized: Decimal
    average_cost: Decimal = ZERO
    sales: Tuple[SaleResult, ...] = ()

    @property
    def total(self) -> Decimal:
        """总盈亏 = 已实现 + 未实现"""
        with ledger_context():
            return self.realized + self.unrealized

    @property
    def unrealized_pct(self) -> Optional[Decimal]:
        """未实现收益率（%），成本为 0 时为 None"""
        return _pct(self.unrealized, self.cost_basis)


@dataclass(frozen=True)
class AssetSummary:
    """组合汇总中的单个资产

    price_available 为 False 时 price/value/unrealized 为 None，不计入合计
    """

    asset: str
    balance: Decimal
    cost: Decimal
    average_cost: Decimal = ZERO
    price: Optional[Decimal] = None
    value: Optional[Decimal] = None
    unrealized: Optional[Decimal] = None
    allocation: Decimal = ZERO
    price_available: bool = True
    reason: Optional[str] = None

    @property
    def unrealized_pct(self) -> Optional[Decimal]:
        """浮动收益率（%），无价格或成本为 0 时为 None"""
        if self.unrealized is None:
            return None
        return _pct(self.unrealized, self.cost)


@dataclass(frozen=True)
class PortfolioSummary:
    """组合汇总

    total_realized 为范围内全部卖出的已实现盈亏，与价格无关
    """

    portfolio_id: Optional[str]
    revision: int
    total_value: Decimal
    total_cost: Decimal
    total_unrealized: Decimal
    total_realized: Decimal = ZERO
    assets: Tuple[AssetSummary, ...] = ()
    unavailable: Tuple[str, ...] = ()
    as_of: Optional[datetime] = None

    @property
    def complete(self) -> bool:
        return not self.unavailable

    @property
    def total_profit_loss(self) -> Decimal:
        with ledger_context():
            return self.total_realized + self.total_unrealized

    @property
    def unrealized_pct(self) -> Optional[Decimal]:
        """合计浮动收益率（%），成本为 0 时为 None"""
        return _pct(self.total_unrealized, self.total_cost)

    def to_dataframe(self) -> pd.DataFrame:
        """转换为 DataFrame"""
        if not self.assets:
            return pd.DataFrame()
        return pd.DataFrame([
            {
                "asset": a.asset,
                "balance": a.balance,
                "price": a.price,
                "value": a.value,
                "cost": a.cost,
                "average_cost": a.average_cost,
                "unrealized": a.unrealized,
                "unrealized_pct": a.unrealized_pct,
                "allocation": a.allocation,
                "price_available": a.price_available,
            }
            for a in self.assets
        ])


def _pct(part: Decimal, base: Decimal) -> Optional[Decimal]:
    if base == 0:
        return None
    with ledger_context():
        return part / base * HUNDRED


def sale_results(disposals: Iterable[Disposal], asset: Optional[str] = None) -> List[SaleResult]:
    """卖出处置的已实现盈亏（成交额为毛额，手续费不冲减）"""
    results = []
    for d in disposals:
        if d.type is not TransactionType.SELL or (asset is not None and d.asset != asset):
            continue
        with ledger_context():
            proceeds = d.amount * d.price
            cost = d.cost_basis
            results.append(SaleResult(
                transaction_id=d.transaction_id,
                timestamp=d.timestamp,
                amount=d.amount,
                price=d.price,
                proceeds=proceeds,
                cost_basis=cost,
                gain=proceeds - cost,
                uncovered=d.uncovered,
            ))
    return results


# ============================================================
# 估值引擎
# ============================================================


class ValuationEngine:
    """估值引擎"""

    def __init__(
        self,
        cost_basis: CostBasisEngine,
        price_provider: MarketPriceProvider,
        max_workers: int = 4,
    ):
        """
        Args:
            cost_basis: 成本核算引擎
            price_provider: 行情价格
            max_workers: 并发查询价格的线程数
        """
        self.cost_basis = cost_basis
        self.price_provider = price_provider
        self.max_workers = max(1, max_workers)

    @property
    def ledger(self):
        return self.cost_basis.ledger

    def get_profit_loss(
        self,
        asset: str,
        portfolio_id: Optional[str] = ALL_PORTFOLIOS,
        current_price=None,
    ) -> ProfitLoss:
        """
        资产盈亏

        未实现 = 余额 × 现价 − 未平仓批次成本
        已实现 = Σ 卖出 (成交额 − 先进先出成本)

        Args:
            asset: 资产
            portfolio_id: 组合，None 为全部
            current_price: 指定现价；不传时向行情查询（余额为 0 时不查询）

        Raises:
            PriceUnavailableError: 需要现价但无法获取
        """
        symbol = asset.upper()
        snapshot = self.ledger.snapshot()
        state = self.cost_basis.replay_snapshot(snapshot, portfolio_id)
        pos = state.positions.get(symbol) or AssetPosition(asset=symbol)

        price: Optional[Decimal] = None
        if current_price is not None:
            price = to_decimal(current_price, "current_price")
        elif pos.balance != 0:
            price = self.price_provider.get_current_price(symbol)

        sales = sale_results(state.disposals, symbol)

        with ledger_context():
            cost_basis = pos.open_cost
            value = pos.balance * price if price is not None else ZERO
            unrealized = value - cost_basis if price is not None else ZERO

        return ProfitLoss(
            asset=symbol,
            portfolio_id=portfolio_id,
            balance=pos.balance,
            current_price=price,
            current_value=value,
            cost_basis=cost_basis,
            unrealized=unrealized,
            realized=dsum(s.gain for s in sales),
            average_cost=pos.average_cost,
            sales=tuple(sales),
        )

    def get_portfolio_summary(self, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> PortfolioSummary:
        """
        组合汇总

        列出余额非 0 的资产，计算市值、成本、浮动盈亏和占比（市值 / 总市值，总市值为 0 时为 0），
        按市值降序。无价格的资产带标记排在最后，不计入合计。
        """
        snapshot = self.ledger.snapshot()
        state = self.cost_basis.replay_snapshot(snapshot, portfolio_id)
        assets = sorted(_open_positions(state))

        with log_duration("portfolio_summary", logger=logger, level="debug", assets=len(assets)):
            prices = self._fetch_prices(assets, self._current_price)

        return self._summarize(portfolio_id, snapshot.revision, state, prices)

    def get_historical_value(
        self,
        as_of,
        portfolio_id: Optional[str] = ALL_PORTFOLIOS,
    ) -> PortfolioSummary:
        """
        历史时点的组合估值

        回放 as_of 之前的交易，按历史价格估值；历史价格缺失的资产标记为不可用
        """
        cutoff = parse_timestamp(as_of, "as_of")
        snapshot = self.ledger.snapshot()
        state = replay(snapshot.scoped(portfolio_id), before=cutoff)

        def lookup(asset: str) -> Decimal:
            price = self.price_provider.get_historical_price(asset, cutoff)
            if price is None:
                raise PriceUnavailableError(asset, f"{cutoff.date()} 无历史价格")
            return price

        prices = self._fetch_prices(sorted(_open_positions(state)), lookup)
        return self._summarize(portfolio_id, snapshot.revision, state, prices, as_of=cutoff)

    # ============================================================
    # 内部
    # ============================================================

    def _current_price(self, asset: str) -> Decimal:
        return self.price_provider.get_current_price(asset)

    def _fetch_prices(self, assets: List[str], lookup) -> Dict[str, object]:
        """并发查询价格，无价格时结果为 PriceUnavailableError"""
        def fetch(asset: str):
            try:
                return to_decimal(lookup(asset), "price")
            except PriceUnavailableError as e:
                logger.warning(f"{asset} 价格不可用: {e.reason}")
                return e

        if not assets:
            return {}
        if len(assets) == 1 or self.max_workers == 1:
            return {asset: fetch(asset) for asset in assets}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(assets))) as executor:
            results = list(executor.map(fetch, assets))
        return dict(zip(assets, results))

    @staticmethod
    def _summarize(
        portfolio_id: Optional[str],
        revision: int,
        state: ReplayState,
        prices: Dict[str, object],
        as_of: Optional[datetime] = None,
    ) -> PortfolioSummary:
        positions = _open_positions(state)
        priced: List[AssetSummary] = []
        unpriced: List[AssetSummary] = []

        with ledger_context():
            for asset in sorted(positions):
                pos = positions[asset]
                cost = pos.open_cost
                price = prices.get(asset)
                if isinstance(price, Decimal):
                    value = pos.balance * price
                    priced.append(AssetSummary(
                        asset=asset,
                        balance=pos.balance,
                        cost=cost,
                        average_cost=pos.average_cost,
                        price=price,
                        value=value,
                        unrealized=value - cost,
                    ))
                else:
                    reason = price.reason if isinstance(price, PriceUnavailableError) else "无可用报价"
                    unpriced.append(AssetSummary(
                        asset=asset,
                        balance=pos.balance,
                        cost=cost,
                        average_cost=pos.average_cost,
                        price_available=False,
                        reason=reason,
                    ))

            total_value = dsum(a.value for a in priced)
            total_cost = dsum(a.cost for a in priced)
            rows = [
                replace(a, allocation=a.value / total_value * HUNDRED if total_value != 0 else ZERO)
                for a in priced
            ]
            total_unrealized = total_value - total_cost

        rows.sort(key=lambda a: (-a.value, a.asset))

        return PortfolioSummary(
            portfolio_id=portfolio_id,
            revision=revision,
            total_value=total_value,
            total_cost=total_cost,
            total_unrealized=total_unrealized,
            total_realized=dsum(s.gain for s in sale_results(state.disposals)),
            assets=tuple(rows + unpriced),
            unavailable=tuple(a.asset for a in unpriced),
            as_of=as_of,
        )


def _open_positions(state: ReplayState) -> Dict[str, AssetPosition]:
    return {a: p for a, p in state.positions.items() if p.balance != 0}
