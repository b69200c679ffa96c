"""交易存储

交易日志的增删改查：
- 新增与修改按交易类型校验字段，失败时不落盘
- 查询支持资产、类型、组合、交易所、标签、日期区间过滤，任意字段排序
- 修改与删除后派生状态（余额、批次）由 CostBasisEngine 通过事件失效重算
"""

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from coinledger.account.amount import ZERO, dsum, format_decimal
from coinledger.account.errors import NotFoundError, ValidationError
from coinledger.account.transaction import (
    CANONICAL_FIELDS,
    Transaction,
    TransactionType,
    normalize_keys,
    parse_timestamp,
    transaction_from_dict,
)
from coinledger.utils.events import (
    TransactionAdded,
    TransactionDeleted,
    TransactionsImported,
    TransactionUpdated,
)

if TYPE_CHECKING:
    from coinledger.account.ledger import Ledger

logger = logging.getLogger(__name__)

_CONVERT_ONLY = ("destAsset", "destAmount")


# ============================================================
# 查询条件
# ============================================================


@dataclass
class TransactionFilter:
    """交易查询条件

    date_from / date_to 为闭区间；传入 date 时 date_to 包含当天全天。
    """

    asset: Optional[str] = None
    type: Optional[Union[TransactionType, str, Sequence[Union[TransactionType, str]]]] = None
    portfolio_id: Optional[str] = None
    exchange: Optional[str] = None
    tags: Optional[Sequence[str]] = None
    date_from: Optional[Union[date, datetime, str]] = None
    date_to: Optional[Union[date, datetime, str]] = None
    sort_by: str = "timestamp"
    descending: bool = True
    limit: Optional[int] = None

    def _types(self) -> Optional[set]:
        if self.type is None:
            return None
        values = [self.type] if isinstance(self.type, (str, TransactionType)) else list(self.type)
        return {TransactionType.parse(v) for v in values}

    def _bounds(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        lower = upper = None
        if self.date_from is not None:
            lower = parse_timestamp(self.date_from, "date_from")
        if self.date_to is not None:
            if isinstance(self.date_to, date) and not isinstance(self.date_to, datetime):
                upper = datetime.combine(self.date_to, time.max, tzinfo=timezone.utc)
            else:
                upper = parse_timestamp(self.date_to, "date_to")
        return lower, upper

    def apply(self, transactions: Iterable[Transaction]) -> List[Transaction]:
        """过滤并排序"""
        result = list(transactions)

        if self.asset:
            result = [t for t in result if t.involves(self.asset)]

        types = self._types()
        if types:
            result = [t for t in result if t.type in types]

        if self.portfolio_id:
            result = [t for t in result if t.portfolio_id == self.portfolio_id]

        if self.exchange:
            exchange = self.exchange.strip().lower()
            result = [t for t in result if t.exchange.lower() == exchange]

        if self.tags:
            wanted = set(self.tags)
            result = [t for t in result if wanted.intersection(t.tags)]

        lower, upper = self._bounds()
        if lower:
            result = [t for t in result if t.timestamp >= lower]
        if upper:
            result = [t for t in result if t.timestamp <= upper]

        attr = _sort_attribute(self.sort_by)
        result.sort(key=lambda t: (t.id,))
        result.sort(key=lambda t: _sort_value(t, attr), reverse=self.descending)

        if self.limit is not None:
            result = result[: self.limit]
        return result


def _sort_attribute(name: str) -> str:
    if name == "type":
        return "type"
    attr = CANONICAL_FIELDS.get(name, name)
    if attr not in CANONICAL_FIELDS.values():
        raise ValidationError("sort_by", f"不支持的排序字段: {name}")
    return attr


def _sort_value(tx: Transaction, attr: str):
    value = getattr(tx, attr, None)
    if isinstance(value, TransactionType):
        value = value.value
    # None 排在最前（升序）
    return (value is not None, value if value is not None else 0)


# ============================================================
# 交易存储
# ============================================================


class TransactionStore:
    """交易存储"""

    def __init__(self, ledger: "Ledger", default_fiat: str = "USD"):
        """
        Args:
            ledger: 账本
            default_fiat: 未指定法币时的默认值
        """
        self.ledger = ledger
        self.default_fiat = default_fiat

    # ============================================================
    # 新增
    # ============================================================

    def _prepare(self, ledger: "Ledger", data: Mapping[str, Any], keep_metadata: bool) -> Transaction:
        if not isinstance(data, Mapping):
            raise ValidationError("transaction", f"交易必须是对象: {type(data).__name__}")
        payload = normalize_keys(data)
        for key in ("id", "portfolioId"):
            if payload.get(key) is not None and not isinstance(payload[key], str):
                raise ValidationError(key, f"必须是字符串: {payload[key]!r}")
        now = ledger.now()

        tx_id = payload.get("id") or uuid.uuid4().hex
        if ledger.transaction(tx_id) is not None:
            raise ValidationError("id", f"交易 id 已存在: {tx_id}")
        payload["id"] = tx_id

        portfolio_id = payload.get("portfolioId") or ledger.default_portfolio().id
        if ledger.portfolio(portfolio_id) is None:
            raise ValidationError("portfolioId", f"组合不存在: {portfolio_id}")
        payload["portfolioId"] = portfolio_id

        if payload.get("timestamp") in (None, ""):
            payload["timestamp"] = now
        if not payload.get("fiatCurrency"):
            payload["fiatCurrency"] = self.default_fiat

        if not keep_metadata or not payload.get("createdAt"):
            payload["createdAt"] = now
        if not keep_metadata or not payload.get("updatedAt"):
            payload["updatedAt"] = payload["createdAt"]

        return transaction_from_dict(payload)

    def add_transaction(self, data: Mapping[str, Any], keep_metadata: bool = False) -> Transaction:
        """
        新增交易

        Args:
            data: 交易字段（规范键或 snake_case）
            keep_metadata: 保留 data 中的 createdAt/updatedAt（导入还原时使用）

        Returns:
            已保存的交易

        Raises:
            ValidationError: 字段缺失或非法，例如 convert 缺少 destAsset
        """
        with self.ledger.mutation() as ledger:
            tx = self._prepare(ledger, data, keep_metadata)
            ledger.put_transaction(tx)
            ledger.emit(TransactionAdded(transaction=tx))

        logger.debug(f"新增交易: {tx.id} {tx.type.value} {tx.amount} {tx.asset}")
        return tx

    def add_transactions(
        self,
        items: Sequence[Mapping[str, Any]],
        keep_metadata: bool = False,
    ) -> Tuple[List[Transaction], List[Tuple[int, ValidationError]]]:
        """
        批量新增，单次写入

        Returns:
            (成功的交易, [(下标, 错误)])
        """
        added: List[Transaction] = []
        errors: List[Tuple[int, ValidationError]] = []

        with self.ledger.mutation() as ledger:
            for index, data in enumerate(items):
                try:
                    tx = self._prepare(ledger, data, keep_metadata)
                except ValidationError as e:
                    errors.append((index, e))
                    continue
                ledger.put_transaction(tx)
                added.append(tx)

            portfolio_ids = {t.portfolio_id for t in added}
            ledger.emit(TransactionsImported(
                portfolio_id=portfolio_ids.pop() if len(portfolio_ids) == 1 else "",
                added=len(added),
                invalid=len(errors),
            ))

        logger.info(f"批量新增交易: 成功 {len(added)} 笔, 失败 {len(errors)} 笔")
        return added, errors

    # ============================================================
    # 修改与删除
    # ============================================================

    def update_transaction(self, tx_id: str, patch: Mapping[str, Any]) -> Transaction:
        """
        修改交易

        合并 patch 后按结果类型重新校验，类型可以改变。

        Raises:
            NotFoundError: 交易不存在
            ValidationError: 结果不合法，或试图修改 id / createdAt
        """
        with self.ledger.mutation() as ledger:
            previous = ledger.transaction(tx_id)
            if previous is None:
                raise NotFoundError("transaction", tx_id)

            changes = normalize_keys(patch)
            merged = previous.to_dict()
            if "id" in changes and changes.pop("id") != previous.id:
                raise ValidationError("id", "该字段不可修改")
            if "createdAt" in changes and parse_timestamp(changes.pop("createdAt"), "createdAt") != previous.created_at:
                raise ValidationError("createdAt", "该字段不可修改")
            changes.pop("updatedAt", None)

            merged.update(changes)
            if TransactionType.parse(merged["type"]) is not TransactionType.CONVERT:
                for key in _CONVERT_ONLY:
                    if key not in changes:
                        merged.pop(key, None)

            if ledger.portfolio(merged.get("portfolioId")) is None:
                raise ValidationError("portfolioId", f"组合不存在: {merged.get('portfolioId')}")

            merged["updatedAt"] = ledger.now()
            tx = transaction_from_dict(merged)
            ledger.put_transaction(tx)
            ledger.emit(TransactionUpdated(transaction=tx, previous=previous))

        logger.debug(f"修改交易: {tx_id}")
        return tx

    def delete_transaction(self, tx_id: str) -> Transaction:
        """
        删除交易

        Raises:
            NotFoundError: 交易不存在
        """
        with self.ledger.mutation() as ledger:
            if ledger.transaction(tx_id) is None:
                raise NotFoundError("transaction", tx_id)
            removed = ledger.remove_transaction(tx_id)
            ledger.emit(TransactionDeleted(transaction=removed))

        logger.debug(f"删除交易: {tx_id}")
        return removed

    def clear_all(self) -> None:
        """清空全部数据（交易与组合）"""
        self.ledger.clear()

    # ============================================================
    # 查询
    # ============================================================

    def get_transaction(self, tx_id: str) -> Transaction:
        """
        获取单笔交易

        Raises:
            NotFoundError: 交易不存在
        """
        tx = self.ledger.transaction(tx_id)
        if tx is None:
            raise NotFoundError("transaction", tx_id)
        return tx

    def get_transactions(
        self,
        filters: Optional[TransactionFilter] = None,
        **kwargs,
    ) -> List[Transaction]:
        """
        查询交易

        Args:
            filters: 查询条件，也可以直接用关键字参数传入同名字段

        Returns:
            默认按时间倒序
        """
        if filters is None:
            filters = TransactionFilter(**kwargs)
        elif kwargs:
            raise TypeError("filters 与关键字参数不能同时使用")
        return filters.apply(self.ledger.snapshot().transactions)

    def to_dataframe(self, filters: Optional[TransactionFilter] = None, **kwargs) -> pd.DataFrame:
        """查询结果转换为 DataFrame（数值列保留 Decimal）"""
        transactions = self.get_transactions(filters, **kwargs)
        if not transactions:
            return pd.DataFrame()

        rows = []
        for t in transactions:
            row = t.to_dict()
            row["amount"] = t.amount
            row["price"] = t.price
            row["fee"] = t.fee
            row["timestamp"] = t.timestamp
            rows.append(row)
        df = pd.DataFrame(rows)
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        return df

    # ============================================================
    # 统计
    # ============================================================

    def get_transaction_stats(
        self,
        portfolio_id: Optional[str] = None,
        period: str = "all",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        交易统计

        Args:
            portfolio_id: 组合，None 为全部
            period: all / month（最近一个月）/ year（最近一年）

        Returns:
            按类型计数与成交额、按资产成交额、交易所与标签计数、
            最大一笔、最近 5 笔、按日和按月的时间线
        """
        if period not in ("all", "month", "year"):
            raise ValidationError("period", f"不支持的统计周期: {period}, 可选: all, month, year")

        filters = TransactionFilter(portfolio_id=portfolio_id)
        if period != "all":
            end = pd.Timestamp(now or self.ledger.now())
            start = end - (pd.DateOffset(months=1) if period == "month" else pd.DateOffset(years=1))
            filters.date_from = start.to_pydatetime()
            filters.date_to = end.to_pydatetime()

        transactions = self.get_transactions(filters)

        stats: Dict[str, Any] = {
            "total_transactions": len(transactions),
            "by_type": {},
            "volume_by_type": {},
            "volume_by_asset": {},
            "exchanges": {},
            "tags": {},
            "largest_transaction": None,
            "recent_transactions": [],
            "timeline": {"daily": {}, "monthly": {}},
        }
        if not transactions:
            return stats

        by_type = Counter(t.type.value for t in transactions)
        exchanges = Counter(t.exchange for t in transactions)
        tags = Counter(tag for t in transactions for tag in t.tags)

        volume_by_type: Dict[str, List[Decimal]] = defaultdict(list)
        volume_by_asset: Dict[str, List[Decimal]] = defaultdict(list)
        daily: Dict[str, List[Decimal]] = defaultdict(list)
        monthly: Dict[str, List[Decimal]] = defaultdict(list)

        largest: Optional[Transaction] = None
        largest_value = ZERO

        for t in transactions:
            value = t.value if t.value is not None else ZERO
            volume_by_type[t.type.value].append(value)
            volume_by_asset[t.asset].append(value)
            daily[t.timestamp.strftime("%Y-%m-%d")].append(value)
            monthly[t.timestamp.strftime("%Y-%m")].append(value)
            if value > largest_value:
                largest, largest_value = t, value

        stats["by_type"] = dict(by_type)
        stats["volume_by_type"] = {k: dsum(v) for k, v in volume_by_type.items()}
        stats["volume_by_asset"] = {k: dsum(v) for k, v in volume_by_asset.items()}
        stats["exchanges"] = dict(exchanges)
        stats["tags"] = dict(tags)
        stats["timeline"] = {
            "daily": {k: {"count": len(v), "volume": dsum(v)} for k, v in sorted(daily.items())},
            "monthly": {k: {"count": len(v), "volume": dsum(v)} for k, v in sorted(monthly.items())},
        }

        if largest is not None:
            stats["largest_transaction"] = {
                "id": largest.id,
                "type": largest.type.value,
                "asset": largest.asset,
                "amount": format_decimal(largest.amount),
                "value": largest_value,
                "timestamp": largest.timestamp,
            }

        recent = sorted(transactions, key=lambda t: t.sort_key, reverse=True)[:5]
        stats["recent_transactions"] = [t.to_dict() for t in recent]
        return stats
