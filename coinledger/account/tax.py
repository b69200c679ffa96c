"""税务报告

按自然年汇总已实现损益、收入与费用：
- 卖出按先进先出匹配批次，每个批次切片按持有天数分为短期/长期（默认 365 天）
- 质押、挖矿、空投按到账时的 数量 × 单价 计入收入
- fee 类型交易与各交易的手续费字段计入费用

报告基于一次账本快照的私有回放生成，不修改账本，也不修改成本引擎缓存。
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd

from coinledger.account.amount import ZERO, dsum, ledger_context
from coinledger.account.cost_basis import ALL_PORTFOLIOS, CostBasisEngine, Disposal
from coinledger.account.errors import ValidationError
from coinledger.account.transaction import INCOME_TYPES, TransactionType
from coinledger.utils.logging import log_duration

logger = logging.getLogger(__name__)

DEFAULT_LONG_TERM_DAYS = 365


class HoldingTerm(str, Enum):
    """持有期限"""

    SHORT = "short"
    LONG = "long"


# ============================================================
# 报告明细
# ============================================================


@dataclass(frozen=True)
class TaxLotSale:
    """一笔卖出中来自单个批次的部分"""

    transaction_id: str
    asset: str
    sold_at: datetime
    acquired_at: Optional[datetime]
    amount: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    holding_days: Optional[int]
    term: HoldingTerm
    covered: bool = True


@dataclass(frozen=True)
class IncomeItem:
    """收入明细"""

    transaction_id: str
    type: TransactionType
    asset: str
    amount: Decimal
    price: Decimal
    value: Decimal
    received_at: datetime


@dataclass(frozen=True)
class ExpenseItem:
    """费用明细"""

    transaction_id: str
    type: TransactionType
    asset: str
    value: Decimal
    incurred_at: datetime
    description: str = ""


@dataclass
class AssetTaxSummary:
    """单个资产的年度汇总"""

    asset: str
    proceeds: Decimal = ZERO
    cost_basis: Decimal = ZERO
    short_term_gain: Decimal = ZERO
    long_term_gain: Decimal = ZERO
    income: Decimal = ZERO
    expenses: Decimal = ZERO

    @property
    def total_gain(self) -> Decimal:
        with ledger_context():
            return self.short_term_gain + self.long_term_gain


@dataclass
class TaxReport:
    """年度税务报告"""

    year: int
    portfolio_id: Optional[str]
    revision: int
    generated_at: datetime
    long_term_days: int = DEFAULT_LONG_TERM_DAYS
    sales: List[TaxLotSale] = field(default_factory=list)
    income: List[IncomeItem] = field(default_factory=list)
    expenses: List[ExpenseItem] = field(default_factory=list)
    by_asset: Dict[str, AssetTaxSummary] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def short_term_gain(self) -> Decimal:
        return dsum(s.gain for s in self.sales if s.term is HoldingTerm.SHORT)

    @property
    def long_term_gain(self) -> Decimal:
        return dsum(s.gain for s in self.sales if s.term is HoldingTerm.LONG)

    @property
    def total_gain(self) -> Decimal:
        return dsum(s.gain for s in self.sales)

    @property
    def total_proceeds(self) -> Decimal:
        return dsum(s.proceeds for s in self.sales)

    @property
    def total_cost_basis(self) -> Decimal:
        return dsum(s.cost_basis for s in self.sales)

    @property
    def total_income(self) -> Decimal:
        return dsum(i.value for i in self.income)

    @property
    def total_expenses(self) -> Decimal:
        return dsum(e.value for e in self.expenses)

    @property
    def net(self) -> Decimal:
        """已实现损益 + 收入 − 费用"""
        with ledger_context():
            return self.total_gain + self.total_income - self.total_expenses

    def summary(self) -> Dict[str, Any]:
        """汇总数字"""
        return {
            "year": self.year,
            "sales": len({s.transaction_id for s in self.sales}),
            "proceeds": self.total_proceeds,
            "cost_basis": self.total_cost_basis,
            "short_term_gain": self.short_term_gain,
            "long_term_gain": self.long_term_gain,
            "total_gain": self.total_gain,
            "income": self.total_income,
            "expenses": self.total_expenses,
            "net": self.net,
        }

    def sales_dataframe(self) -> pd.DataFrame:
        """卖出明细表，每个批次切片一行"""
        columns = [
            "transaction_id", "asset", "sold_at", "acquired_at", "amount",
            "proceeds", "cost_basis", "gain", "holding_days", "term", "covered",
        ]
        rows = [
            {
                "transaction_id": s.transaction_id,
                "asset": s.asset,
                "sold_at": s.sold_at,
                "acquired_at": s.acquired_at,
                "amount": s.amount,
                "proceeds": s.proceeds,
                "cost_basis": s.cost_basis,
                "gain": s.gain,
                "holding_days": s.holding_days,
                "term": s.term.value,
                "covered": s.covered,
            }
            for s in self.sales
        ]
        return pd.DataFrame(rows, columns=columns)


# ============================================================
# 生成器
# ============================================================


class TaxReportGenerator:
    """税务报告生成器（只读）"""

    def __init__(self, cost_basis: CostBasisEngine, long_term_days: int = DEFAULT_LONG_TERM_DAYS):
        if long_term_days <= 0:
            raise ValidationError("long_term_days", f"长期持有天数必须大于 0: {long_term_days}")
        self.cost_basis = cost_basis
        self.long_term_days = long_term_days

    def generate_tax_report(self, year: int, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> TaxReport:
        """
        生成年度报告

        Args:
            year: 自然年 (UTC)
            portfolio_id: 组合，None 为全部

        Raises:
            ValidationError: 年份不合法
        """
        if isinstance(year, bool) or not isinstance(year, int) or not 1970 <= year <= 9999:
            raise ValidationError("year", f"年份不合法: {year!r}")

        ledger = self.cost_basis.ledger
        snapshot = ledger.snapshot()

        with log_duration("tax_report", logger=logger, year=year, portfolio=portfolio_id):
            state = self.cost_basis.replay_snapshot(snapshot, portfolio_id)
            report = TaxReport(
                year=year,
                portfolio_id=portfolio_id,
                revision=snapshot.revision,
                generated_at=ledger.now(),
                long_term_days=self.long_term_days,
            )

            for disposal in state.disposals:
                if disposal.type is TransactionType.SELL and disposal.timestamp.year == year:
                    report.sales.extend(self._split_sale(disposal, report.warnings))

            for tx in sorted(snapshot.scoped(portfolio_id), key=lambda t: t.sort_key):
                if tx.timestamp.year != year:
                    continue
                if tx.type in INCOME_TYPES:
                    with ledger_context():
                        value = tx.amount * tx.price
                    report.income.append(IncomeItem(
                        transaction_id=tx.id,
                        type=tx.type,
                        asset=tx.asset,
                        amount=tx.amount,
                        price=tx.price,
                        value=value,
                        received_at=tx.timestamp,
                    ))
                if tx.type is TransactionType.FEE:
                    report.expenses.append(ExpenseItem(
                        transaction_id=tx.id,
                        type=tx.type,
                        asset=tx.asset,
                        value=tx.value,
                        incurred_at=tx.timestamp,
                        description=tx.description,
                    ))
                if tx.fee > 0:
                    report.expenses.append(ExpenseItem(
                        transaction_id=tx.id,
                        type=tx.type,
                        asset=tx.asset,
                        value=tx.fee,
                        incurred_at=tx.timestamp,
                        description="手续费",
                    ))

            report.by_asset = self._by_asset(report)

        logger.info(
            f"{year} 年税务报告: 卖出 {len(report.sales)} 笔切片, "
            f"收入 {len(report.income)} 笔, 费用 {len(report.expenses)} 笔"
        )
        return report

    def _split_sale(self, disposal: Disposal, warnings: List[str]) -> List[TaxLotSale]:
        """按批次切片拆分一笔卖出"""
        rows = []
        for piece in disposal.slices:
            with ledger_context():
                proceeds = piece.amount * disposal.price
                cost = piece.cost
                gain = proceeds - cost

            if piece.covered:
                days = (disposal.timestamp - piece.acquired_at).days
                term = HoldingTerm.LONG if days >= self.long_term_days else HoldingTerm.SHORT
            else:
                days = None
                term = HoldingTerm.SHORT
                warnings.append(
                    f"{disposal.asset} 卖出 {disposal.transaction_id} 有 {piece.amount} 没有对应批次，按零成本短期计算"
                )
                logger.warning(warnings[-1])

            rows.append(TaxLotSale(
                transaction_id=disposal.transaction_id,
                asset=disposal.asset,
                sold_at=disposal.timestamp,
                acquired_at=piece.acquired_at,
                amount=piece.amount,
                proceeds=proceeds,
                cost_basis=cost,
                gain=gain,
                holding_days=days,
                term=term,
                covered=piece.covered,
            ))
        return rows

    @staticmethod
    def _by_asset(report: TaxReport) -> Dict[str, AssetTaxSummary]:
        groups: Dict[str, Dict[str, List[Decimal]]] = defaultdict(lambda: defaultdict(list))
        for s in report.sales:
            g = groups[s.asset]
            g["proceeds"].append(s.proceeds)
            g["cost_basis"].append(s.cost_basis)
            g[f"{s.term.value}_term_gain"].append(s.gain)
        for i in report.income:
            groups[i.asset]["income"].append(i.value)
        for e in report.expenses:
            groups[e.asset]["expenses"].append(e.value)

        return {
            asset: AssetTaxSummary(asset=asset, **{k: dsum(v) for k, v in g.items()})
            for asset, g in sorted(groups.items())
        }
