"""账本

账本是交易与组合两份文档在进程内的唯一所有者：
- 所有写操作在 mutation() 中串行执行，结束后两份文档整体重写
- 写入失败时内存状态回滚，不会出现写了一半的账本
- 读操作基于 snapshot() 返回的不可变快照
- 加载时文档结构不符立即抛出 StorageCorruptionError，拒绝继续运行
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from coinledger.account.errors import (
    LedgerError,
    StorageCorruptionError,
    ValidationError,
)
from coinledger.account.portfolio import DEFAULT_PORTFOLIO_ID, Portfolio, portfolio_from_dict
from coinledger.account.storage import PersistenceAdapter
from coinledger.account.transaction import Transaction, transaction_from_dict, utcnow
from coinledger.utils.events import EventBus, LedgerCleared, LedgerEvent, PortfolioSaved

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    """账本快照（不可变）"""

    transactions: Tuple[Transaction, ...]
    portfolios: Tuple[Portfolio, ...]
    revision: int

    def portfolio(self, portfolio_id: Optional[str]) -> Optional[Portfolio]:
        for p in self.portfolios:
            if p.id == portfolio_id:
                return p
        return None

    def transaction(self, tx_id: str) -> Optional[Transaction]:
        for t in self.transactions:
            if t.id == tx_id:
                return t
        return None

    @property
    def default_portfolio(self) -> Optional[Portfolio]:
        for p in self.portfolios:
            if p.is_default:
                return p
        return None

    def scoped(self, portfolio_id: Optional[str] = None) -> List[Transaction]:
        """按组合过滤，None 表示全部组合"""
        if portfolio_id is None:
            return list(self.transactions)
        return [t for t in self.transactions if t.portfolio_id == portfolio_id]


class Ledger:
    """账本"""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        namespace: str = "coinledger",
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        default_portfolio_name: str = "Main Portfolio",
    ):
        """
        Args:
            persistence: 持久化适配器
            namespace: 文档键前缀，两份文档为 <namespace>.data 与 <namespace>.portfolios
            event_bus: 变更事件总线
            clock: 时钟，测试时可注入固定时间
            default_portfolio_name: 自动创建的默认组合名称
        """
        self.persistence = persistence
        self.namespace = namespace
        self.event_bus = event_bus or EventBus()
        self.clock = clock
        self.default_portfolio_name = default_portfolio_name

        self._lock = RLock()
        self._transactions: Dict[str, Transaction] = {}
        self._portfolios: Dict[str, Portfolio] = {}
        self._revision = 0
        self._loaded = False
        self._depth = 0
        self._pending: List[LedgerEvent] = []

    @property
    def transactions_key(self) -> str:
        return f"{self.namespace}.data"

    @property
    def portfolios_key(self) -> str:
        return f"{self.namespace}.portfolios"

    @property
    def revision(self) -> int:
        """账本版本号，每次成功写入加一"""
        return self._revision

    def now(self) -> datetime:
        return self.clock()

    # ============================================================
    # 加载
    # ============================================================

    def load(self) -> "Ledger":
        """
        从存储加载两份文档

        Raises:
            StorageCorruptionError: 文档结构不符
        """
        with self._lock:
            transactions = self._parse_document(
                self.transactions_key,
                self.persistence.get(self.transactions_key),
                transaction_from_dict,
            )
            portfolios = self._parse_document(
                self.portfolios_key,
                self.persistence.get(self.portfolios_key),
                portfolio_from_dict,
            )

            defaults = [p.id for p in portfolios.values() if p.is_default]
            if len(defaults) > 1:
                raise StorageCorruptionError(self.portfolios_key, f"存在多个默认组合: {defaults}")

            orphans = {t.portfolio_id for t in transactions.values()} - set(portfolios)
            if orphans and portfolios:
                logger.warning(f"存在引用未知组合的交易: {sorted(orphans)}")

            self._transactions = transactions
            self._portfolios = portfolios
            self._loaded = True

        logger.info(f"账本加载完成: {len(transactions)} 笔交易, {len(portfolios)} 个组合")
        return self

    @staticmethod
    def _parse_document(key: str, payload, factory) -> Dict:
        if payload is None:
            return {}
        if not isinstance(payload, list):
            raise StorageCorruptionError(key, f"文档应为列表，实际为 {type(payload).__name__}")

        records: Dict = {}
        for index, item in enumerate(payload):
            if not isinstance(item, dict):
                raise StorageCorruptionError(key, f"第 {index} 条记录不是对象", item)
            try:
                record = factory(item)
            except (ValidationError, TypeError) as e:
                raise StorageCorruptionError(key, f"第 {index} 条记录无效: {e}", item) from e
            if record.id in records:
                raise StorageCorruptionError(key, f"重复的 id: {record.id}", item)
            records[record.id] = record
        return records

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # ============================================================
    # 读取
    # ============================================================

    def snapshot(self) -> LedgerSnapshot:
        """获取当前账本的不可变快照"""
        with self._lock:
            self._ensure_loaded()
            return LedgerSnapshot(
                transactions=tuple(self._transactions.values()),
                portfolios=tuple(self._portfolios.values()),
                revision=self._revision,
            )

    def transactions(self) -> List[Transaction]:
        with self._lock:
            self._ensure_loaded()
            return list(self._transactions.values())

    def transaction(self, tx_id: str) -> Optional[Transaction]:
        with self._lock:
            self._ensure_loaded()
            return self._transactions.get(tx_id)

    def portfolios(self) -> List[Portfolio]:
        with self._lock:
            self._ensure_loaded()
            return list(self._portfolios.values())

    def portfolio(self, portfolio_id: Optional[str]) -> Optional[Portfolio]:
        with self._lock:
            self._ensure_loaded()
            return self._portfolios.get(portfolio_id)

    def default_portfolio(self) -> Portfolio:
        """当前默认组合，没有则创建"""
        return self.ensure_default_portfolio()

    # ============================================================
    # 写入
    # ============================================================

    @contextmanager
    def mutation(self) -> Iterator["Ledger"]:
        """
        串行写入上下文

        块内通过 put_*/remove_*/emit 修改状态；正常退出时整体写回存储并发布事件，
        异常退出时恢复进入前的内存状态。可嵌套，只有最外层负责写回。
        """
        with self._lock:
            self._ensure_loaded()
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            backup = (dict(self._transactions), dict(self._portfolios))
            self._depth = 1
            self._pending = []
            try:
                yield self
                self._persist(backup[0])
            except BaseException:
                self._transactions, self._portfolios = backup
                self._pending = []
                raise
            finally:
                self._depth = 0

            self._revision += 1
            events, self._pending = self._pending, []
            for event in events:
                event.revision = self._revision
                event.source = self.namespace
                self.event_bus.publish(event)

    def _persist(self, previous_transactions: Dict[str, Transaction]) -> None:
        tx_doc = [t.to_dict() for t in self._transactions.values()]
        pf_doc = [p.to_dict() for p in self._portfolios.values()]
        self.persistence.set(self.transactions_key, tx_doc)
        try:
            self.persistence.set(self.portfolios_key, pf_doc)
        except Exception:
            # 交易文档已写入，恢复为上一版本，避免两份文档不一致
            logger.error("组合文档写入失败，回写交易文档", exc_info=True)
            try:
                self.persistence.set(
                    self.transactions_key,
                    [t.to_dict() for t in previous_transactions.values()],
                )
            except Exception:
                logger.critical("交易文档回写失败，存储中的两份文档可能不一致", exc_info=True)
            raise

    def _require_mutation(self) -> None:
        if not self._depth:
            raise LedgerError("账本修改必须在 mutation() 中进行")

    def put_transaction(self, transaction: Transaction) -> None:
        self._require_mutation()
        self._transactions[transaction.id] = transaction

    def remove_transaction(self, tx_id: str) -> Transaction:
        self._require_mutation()
        return self._transactions.pop(tx_id)

    def put_portfolio(self, portfolio: Portfolio) -> None:
        self._require_mutation()
        self._portfolios[portfolio.id] = portfolio

    def remove_portfolio(self, portfolio_id: str) -> Portfolio:
        self._require_mutation()
        return self._portfolios.pop(portfolio_id)

    def emit(self, event: LedgerEvent) -> None:
        """登记事件，写入成功后统一发布"""
        self._require_mutation()
        self._pending.append(event)

    # ============================================================
    # 默认组合与清空
    # ============================================================

    def ensure_default_portfolio(self) -> Portfolio:
        """
        保证存在默认组合

        没有任何组合时创建 id 为 "default" 的组合；
        有组合但都不是默认时，将最早创建的组合设为默认。
        """
        with self._lock:
            self._ensure_loaded()
            for p in self._portfolios.values():
                if p.is_default:
                    return p

            with self.mutation():
                now = self.now()
                if self._portfolios:
                    first = min(self._portfolios.values(), key=lambda p: (p.created_at, p.id))
                    portfolio = Portfolio(
                        id=first.id,
                        name=first.name,
                        description=first.description,
                        icon=first.icon,
                        color=first.color,
                        is_default=True,
                        created_at=first.created_at,
                        updated_at=now,
                    )
                    created = False
                else:
                    portfolio = Portfolio(
                        id=DEFAULT_PORTFOLIO_ID,
                        name=self.default_portfolio_name,
                        is_default=True,
                        created_at=now,
                        updated_at=now,
                    )
                    created = True
                self.put_portfolio(portfolio)
                self.emit(PortfolioSaved(portfolio=portfolio, created=created))

            logger.info(f"默认组合: {portfolio.id} ({portfolio.name})")
            return portfolio

    def clear(self) -> LedgerCleared:
        """清空全部交易与组合"""
        with self.mutation():
            event = LedgerCleared(
                transactions=len(self._transactions),
                portfolios=len(self._portfolios),
            )
            self._transactions.clear()
            self._portfolios.clear()
            self.emit(event)

        logger.warning(f"账本已清空: {event.transactions} 笔交易, {event.portfolios} 个组合")
        return event
