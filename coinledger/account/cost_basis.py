"""成本核算引擎

从交易日志推导每个 (组合, 资产) 的余额、买入均价与 FIFO 批次。

回放规则（全量回放与增量应用完全一致）：
- buy: 以成交单价新增批次，只有 buy 产生批次
- 其他流入 (转入、奖励、空投、收款、兑换目标): 只增加余额，不产生批次
- 流出 (sell、转出、赠出、付款、fee、兑换源): 按先进先出消耗 buy 批次
- 批次不足时缺口记为 uncovered (余额可为负)，不会凭空补成本

回放顺序按 (事件时间, 录入时间, id) 升序，结果与操作历史无关。
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import TYPE_CHECKING, Deque, Dict, Iterable, List, Optional, Tuple

from coinledger.account.amount import ZERO, dsum, ledger_context, to_decimal
from coinledger.account.errors import ValidationError
from coinledger.account.transaction import (
    INBOUND_TYPES,
    OUTBOUND_TYPES,
    Convert,
    Transaction,
    TransactionType,
    parse_timestamp,
)
from coinledger.utils.events import (
    LedgerEvent,
    PortfolioSaved,
    Priority,
    TransactionAdded,
    TransactionDeleted,
    TransactionUpdated,
)
from coinledger.utils.logging import log_duration

if TYPE_CHECKING:
    from coinledger.account.ledger import Ledger, LedgerSnapshot

logger = logging.getLogger(__name__)


# ============================================================
# 派生数据结构
# ============================================================


@dataclass
class Lot:
    """持仓批次"""

    source_id: str
    source_type: TransactionType
    acquired_at: datetime
    unit_cost: Decimal
    original: Decimal
    remaining: Decimal

    @property
    def consumed(self) -> Decimal:
        with ledger_context():
            return self.original - self.remaining

    @property
    def cost(self) -> Decimal:
        """剩余数量的成本"""
        with ledger_context():
            return self.remaining * self.unit_cost

    def copy(self) -> "Lot":
        return Lot(
            source_id=self.source_id,
            source_type=self.source_type,
            acquired_at=self.acquired_at,
            unit_cost=self.unit_cost,
            original=self.original,
            remaining=self.remaining,
        )


@dataclass(frozen=True)
class LotSlice:
    """一次处置从某个批次消耗的部分

    source_id 为 None 表示没有批次覆盖的缺口部分
    """

    amount: Decimal
    unit_cost: Decimal
    acquired_at: Optional[datetime]
    source_id: Optional[str] = None

    @property
    def covered(self) -> bool:
        return self.source_id is not None

    @property
    def cost(self) -> Decimal:
        with ledger_context():
            return self.amount * self.unit_cost


@dataclass(frozen=True)
class Disposal:
    """一笔流出对批次的消耗记录"""

    transaction_id: str
    type: TransactionType
    asset: str
    amount: Decimal
    timestamp: datetime
    price: Optional[Decimal]
    portfolio_id: str
    slices: Tuple[LotSlice, ...]

    @property
    def cost_basis(self) -> Decimal:
        return dsum(s.cost for s in self.slices)

    @property
    def uncovered(self) -> Decimal:
        return dsum(s.amount for s in self.slices if not s.covered)

    @property
    def proceeds(self) -> Optional[Decimal]:
        if self.price is None:
            return None
        with ledger_context():
            return self.amount * self.price


@dataclass
class AssetPosition:
    """资产持仓（派生，不持久化）"""

    asset: str
    balance: Decimal = ZERO
    lots: Deque[Lot] = field(default_factory=deque)
    total_buy_amount: Decimal = ZERO
    total_buy_cost: Decimal = ZERO
    total_sell_amount: Decimal = ZERO
    uncovered: Decimal = ZERO

    @property
    def open_cost(self) -> Decimal:
        """未平仓批次的总成本"""
        return dsum(lot.cost for lot in self.lots)

    @property
    def average_cost(self) -> Decimal:
        """买入均价（仅 buy 加权）"""
        if self.total_buy_amount == 0:
            return ZERO
        with ledger_context():
            return self.total_buy_cost / self.total_buy_amount

    def copy(self) -> "AssetPosition":
        return AssetPosition(
            asset=self.asset,
            balance=self.balance,
            lots=deque(lot.copy() for lot in self.lots),
            total_buy_amount=self.total_buy_amount,
            total_buy_cost=self.total_buy_cost,
            total_sell_amount=self.total_sell_amount,
            uncovered=self.uncovered,
        )


@dataclass(frozen=True)
class AverageCost:
    """买入均价结果"""

    asset: str
    balance: Decimal
    total_cost: Decimal
    average_cost: Decimal
    total_buy_amount: Decimal
    total_sell_amount: Decimal


@dataclass(frozen=True)
class CostBasisResult:
    """历史成本查询结果

    is_complete 为 False 时 uncovered_amount 部分没有批次覆盖，cost_basis 只含已覆盖部分
    """

    asset: str
    amount: Decimal
    as_of: datetime
    cost_basis: Decimal
    covered_amount: Decimal
    uncovered_amount: Decimal
    slices: Tuple[LotSlice, ...]
    acquisition_date: Optional[datetime]

    @property
    def is_complete(self) -> bool:
        return self.uncovered_amount == 0


# ============================================================
# 回放
# ============================================================


def consume_lots(lots: Deque[Lot], amount: Decimal, mutate: bool = True) -> Tuple[List[LotSlice], Decimal]:
    """
    按先进先出消耗批次

    Args:
        lots: 批次队列（最早的在左）
        amount: 消耗数量
        mutate: False 时只计算不修改

    Returns:
        (消耗切片, 未覆盖数量)
    """
    slices: List[LotSlice] = []
    need = amount

    with ledger_context():
        if mutate:
            while need > 0 and lots:
                lot = lots[0]
                take = min(lot.remaining, need)
                slices.append(LotSlice(take, lot.unit_cost, lot.acquired_at, lot.source_id))
                lot.remaining -= take
                need -= take
                if lot.remaining == 0:
                    lots.popleft()
        else:
            for lot in lots:
                if need <= 0:
                    break
                take = min(lot.remaining, need)
                slices.append(LotSlice(take, lot.unit_cost, lot.acquired_at, lot.source_id))
                need -= take

    return slices, need


class ReplayState:
    """回放状态

    apply() 是唯一的状态转移函数，全量回放与增量更新共用
    """

    def __init__(self):
        self.positions: Dict[str, AssetPosition] = {}
        self.disposals: List[Disposal] = []
        self.last_key: Optional[Tuple[datetime, datetime, str]] = None
        self.applied = 0

    def position(self, asset: str) -> AssetPosition:
        if asset not in self.positions:
            self.positions[asset] = AssetPosition(asset=asset)
        return self.positions[asset]

    def apply(self, tx: Transaction) -> None:
        """应用一笔交易"""
        if isinstance(tx, Convert):
            self._outflow(tx, tx.asset, tx.amount)
            self._inflow(tx.dest_asset, tx.dest_amount)
        elif tx.type is TransactionType.BUY:
            self._buy(tx)
        elif tx.type in INBOUND_TYPES:
            self._inflow(tx.asset, tx.amount)
        elif tx.type in OUTBOUND_TYPES:
            self._outflow(tx, tx.asset, tx.amount)

        self.last_key = tx.sort_key
        self.applied += 1

    def _buy(self, tx: Transaction) -> None:
        pos = self.position(tx.asset)
        with ledger_context():
            pos.balance += tx.amount
            pos.lots.append(Lot(
                source_id=tx.id,
                source_type=tx.type,
                acquired_at=tx.timestamp,
                unit_cost=tx.price,
                original=tx.amount,
                remaining=tx.amount,
            ))
            pos.total_buy_amount += tx.amount
            pos.total_buy_cost += tx.amount * tx.price

    def _inflow(self, asset: str, amount: Decimal) -> None:
        # 非 buy 流入没有成交成本，不进入批次队列
        pos = self.position(asset)
        with ledger_context():
            pos.balance += amount

    def _outflow(self, tx: Transaction, asset: str, amount: Decimal) -> None:
        pos = self.position(asset)
        slices, uncovered = consume_lots(pos.lots, amount)
        with ledger_context():
            pos.balance -= amount
            if uncovered > 0:
                pos.uncovered += uncovered
                slices.append(LotSlice(uncovered, ZERO, None, None))
                logger.debug(f"{tx.id} 流出 {asset} 超出持仓，未覆盖 {uncovered}")
            if tx.type is TransactionType.SELL:
                pos.total_sell_amount += amount

        self.disposals.append(Disposal(
            transaction_id=tx.id,
            type=tx.type,
            asset=asset,
            amount=amount,
            timestamp=tx.timestamp,
            price=tx.price,
            portfolio_id=tx.portfolio_id,
            slices=tuple(slices),
        ))


def replay(transactions: Iterable[Transaction], before: Optional[datetime] = None) -> ReplayState:
    """
    全量回放

    Args:
        transactions: 交易集合（顺序无关）
        before: 只回放早于该时间的交易

    Returns:
        回放状态
    """
    state = ReplayState()
    ordered = sorted(transactions, key=lambda t: t.sort_key)
    for tx in ordered:
        if before is not None and tx.timestamp >= before:
            break
        state.apply(tx)
    return state


def signed_balance(transactions: Iterable[Transaction], asset: str) -> Decimal:
    """带符号求和：流入加、流出减"""
    symbol = asset.upper()
    return dsum(
        amount
        for tx in transactions
        for moved_asset, amount in tx.movements()
        if moved_asset == symbol
    )


# ============================================================
# 引擎
# ============================================================


ALL_PORTFOLIOS: Optional[str] = None


@dataclass
class _ScopeCache:
    state: ReplayState
    revision: int


class CostBasisEngine:
    """成本核算引擎

    按范围（单个组合或全部组合）缓存回放结果：
    - 新增的交易排在已应用交易之后时增量应用
    - 其他任何变更使相关范围失效，下次读取时全量回放
    """

    def __init__(self, ledger: "Ledger"):
        self.ledger = ledger
        self._cache: Dict[Optional[str], _ScopeCache] = {}
        self._lock = RLock()
        ledger.event_bus.subscribe(LedgerEvent, self._on_ledger_event, priority=Priority.HIGHEST)

    def close(self) -> None:
        """取消事件订阅并丢弃缓存"""
        self.ledger.event_bus.unsubscribe(LedgerEvent, self._on_ledger_event)
        with self._lock:
            self._cache.clear()

    # ============================================================
    # 缓存维护
    # ============================================================

    def _on_ledger_event(self, event: LedgerEvent) -> None:
        with self._lock:
            affected = self._affected_scopes(event)
            for scope in list(self._cache):
                cache = self._cache[scope]
                if cache.revision != event.revision - 1:
                    # 中间漏掉了版本，只能重算
                    del self._cache[scope]
                    continue
                if affected is not None and scope not in affected:
                    cache.revision = event.revision
                    continue
                if isinstance(event, TransactionAdded) and self._can_append(cache, event.transaction):
                    cache.state.apply(event.transaction)
                    cache.revision = event.revision
                    continue
                del self._cache[scope]

    @staticmethod
    def _affected_scopes(event: LedgerEvent) -> Optional[set]:
        """受影响的范围，None 表示全部"""
        if isinstance(event, (TransactionAdded, TransactionDeleted)):
            return {ALL_PORTFOLIOS, event.transaction.portfolio_id}
        if isinstance(event, TransactionUpdated):
            return {ALL_PORTFOLIOS, event.transaction.portfolio_id, event.previous.portfolio_id}
        if isinstance(event, PortfolioSaved):
            return set()
        return None

    @staticmethod
    def _can_append(cache: _ScopeCache, tx: Transaction) -> bool:
        return cache.state.last_key is None or tx.sort_key > cache.state.last_key

    def _state(self, portfolio_id: Optional[str], snapshot: Optional["LedgerSnapshot"] = None) -> ReplayState:
        """取得与快照一致的回放状态（调用方需持有 self._lock）"""
        if snapshot is None:
            snapshot = self.ledger.snapshot()
        cache = self._cache.get(portfolio_id)
        if cache is not None and cache.revision == snapshot.revision:
            return cache.state

        state = self._replay_scope(snapshot, portfolio_id)
        if cache is None or cache.revision < snapshot.revision:
            self._cache[portfolio_id] = _ScopeCache(state=state, revision=snapshot.revision)
        return state

    @staticmethod
    def _replay_scope(snapshot: "LedgerSnapshot", portfolio_id: Optional[str]) -> ReplayState:
        with log_duration("ledger_replay", logger=logger, level="debug", portfolio=portfolio_id):
            return replay(snapshot.scoped(portfolio_id))

    def replay_snapshot(self, snapshot: "LedgerSnapshot", portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> ReplayState:
        """
        针对给定快照的回放状态（私有副本，调用方可随意读取）

        快照与缓存版本一致时复制缓存，否则直接回放快照
        """
        with self._lock:
            cache = self._cache.get(portfolio_id)
            if cache is not None and cache.revision == snapshot.revision:
                return _copy_state(cache.state)
        return self._replay_scope(snapshot, portfolio_id)

    # ============================================================
    # 对外接口
    # ============================================================

    def rebuild(self, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> Dict[str, AssetPosition]:
        """
        全量回放指定范围，重置缓存

        Returns:
            各资产持仓副本
        """
        snapshot = self.ledger.snapshot()
        with self._lock:
            state = self._replay_scope(snapshot, portfolio_id)
            self._cache[portfolio_id] = _ScopeCache(state=state, revision=snapshot.revision)
            logger.info(f"回放完成: 范围={portfolio_id or '全部'}, {state.applied} 笔交易")
            return {asset: pos.copy() for asset, pos in state.positions.items()}

    def get_balance(self, asset: str, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> Decimal:
        """余额：对交易日志带符号精确求和"""
        return signed_balance(self.ledger.snapshot().scoped(portfolio_id), asset)

    def get_position(self, asset: str, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> AssetPosition:
        """资产持仓副本，无记录时返回空持仓"""
        snapshot = self.ledger.snapshot()
        symbol = asset.upper()
        with self._lock:
            pos = self._state(portfolio_id, snapshot).positions.get(symbol)
            return pos.copy() if pos is not None else AssetPosition(asset=symbol)

    def positions(self, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> Dict[str, AssetPosition]:
        """全部资产持仓副本"""
        snapshot = self.ledger.snapshot()
        with self._lock:
            state = self._state(portfolio_id, snapshot)
            return {asset: pos.copy() for asset, pos in state.positions.items()}

    def disposals(self, asset: Optional[str] = None, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> List[Disposal]:
        """流出消耗记录（按回放顺序）"""
        snapshot = self.ledger.snapshot()
        with self._lock:
            records = list(self._state(portfolio_id, snapshot).disposals)
        if asset:
            symbol = asset.upper()
            records = [d for d in records if d.asset == symbol]
        return records

    def get_average_cost(self, asset: str, portfolio_id: Optional[str] = ALL_PORTFOLIOS) -> AverageCost:
        """
        买入均价

        只按 buy 交易的数量加权；转入、奖励、空投等不计入均价
        """
        pos = self.get_position(asset, portfolio_id)
        return AverageCost(
            asset=pos.asset,
            balance=pos.balance,
            total_cost=pos.total_buy_cost,
            average_cost=pos.average_cost,
            total_buy_amount=pos.total_buy_amount,
            total_sell_amount=pos.total_sell_amount,
        )

    def get_historical_cost_basis(
        self,
        asset: str,
        amount,
        as_of,
        portfolio_id: Optional[str] = ALL_PORTFOLIOS,
    ) -> CostBasisResult:
        """
        历史成本

        回放 as_of 之前的交易（已发生的处置先消耗批次），
        再按先进先出计算处置 amount 的成本，不修改任何状态。

        Args:
            asset: 资产
            amount: 处置数量
            as_of: 处置时间，只使用早于该时间的批次
            portfolio_id: 组合，None 为全部

        Returns:
            CostBasisResult；批次不足时 is_complete 为 False
        """
        quantity = to_decimal(amount, "amount")
        if quantity <= 0:
            raise ValidationError("amount", f"数量必须大于 0: {quantity}")
        cutoff = parse_timestamp(as_of, "as_of")
        symbol = asset.upper()

        state = replay(self.ledger.snapshot().scoped(portfolio_id), before=cutoff)
        pos = state.positions.get(symbol)
        lots = pos.lots if pos is not None else deque()

        slices, uncovered = consume_lots(lots, quantity, mutate=False)
        with ledger_context():
            covered = quantity - uncovered

        return CostBasisResult(
            asset=symbol,
            amount=quantity,
            as_of=cutoff,
            cost_basis=dsum(s.cost for s in slices),
            covered_amount=covered,
            uncovered_amount=uncovered,
            slices=tuple(slices),
            acquisition_date=slices[0].acquired_at if slices else None,
        )


def _copy_state(state: ReplayState) -> ReplayState:
    copied = ReplayState()
    copied.positions = {asset: pos.copy() for asset, pos in state.positions.items()}
    copied.disposals = list(state.disposals)
    copied.last_key = state.last_key
    copied.applied = state.applied
    return copied
