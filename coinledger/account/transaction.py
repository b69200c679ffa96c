"""交易记录

每种交易类型对应一个不可变数据类，只携带该类型合法的字段：
- 需要单价的类型 (buy/sell/奖励/空投/fee) 在构造时强制校验 price
- 只有 Convert 带目标资产与目标数量
- 其余类型 price 可选，仅作为参考公允价值

规范字典形态（持久化与导入导出共用）::

    { id, type, asset, amount, price, fee, fiatCurrency, exchange,
      description, portfolioId, tags[], timestamp,
      destAsset?, destAmount?, createdAt, updatedAt }
"""

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Type

from coinledger.account.amount import ZERO, format_decimal, ledger_context, to_decimal
from coinledger.account.errors import ValidationError


class TransactionType(str, Enum):
    """交易类型"""

    BUY = "buy"
    SELL = "sell"
    TRANSFER_IN = "transfer_in"  # 转入
    TRANSFER_OUT = "transfer_out"  # 转出
    CONVERT = "convert"  # 币币兑换
    STAKING_REWARD = "staking_reward"
    MINING_REWARD = "mining_reward"
    AIRDROP = "airdrop"
    GIFT_RECEIVED = "gift_received"
    GIFT_SENT = "gift_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_SENT = "payment_sent"
    FEE = "fee"

    @classmethod
    def parse(cls, value: Any) -> "TransactionType":
        """解析交易类型，大小写与首尾空格不敏感"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("type", "缺少交易类型")
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValidationError("type", f"未知交易类型: {value!r}, 可选: {valid}") from None


INBOUND_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.BUY,
    TransactionType.TRANSFER_IN,
    TransactionType.STAKING_REWARD,
    TransactionType.MINING_REWARD,
    TransactionType.AIRDROP,
    TransactionType.GIFT_RECEIVED,
    TransactionType.PAYMENT_RECEIVED,
})

OUTBOUND_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.SELL,
    TransactionType.TRANSFER_OUT,
    TransactionType.GIFT_SENT,
    TransactionType.PAYMENT_SENT,
    TransactionType.FEE,
})

PRICED_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.BUY,
    TransactionType.SELL,
    TransactionType.STAKING_REWARD,
    TransactionType.MINING_REWARD,
    TransactionType.AIRDROP,
    TransactionType.FEE,
})

INCOME_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.STAKING_REWARD,
    TransactionType.MINING_REWARD,
    TransactionType.AIRDROP,
})


# ============================================================
# 时间处理
# ============================================================


def utcnow() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """
    解析时间戳为带时区的 UTC datetime

    无时区的输入按 UTC 处理；date 取当日零点。

    Raises:
        ValidationError: 无法解析
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            result = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(field_name, f"无法解析时间: {value!r}") from None
    elif value is None or isinstance(value, str):
        raise ValidationError(field_name, "缺少时间")
    else:
        raise ValidationError(field_name, f"不支持的时间类型: {type(value).__name__}")

    if result.tzinfo is None:
        return result.replace(tzinfo=timezone.utc)
    return result.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """格式化为 ISO-8601 (UTC, Z 结尾)"""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ============================================================
# 交易变体
# ============================================================


def _normalize_symbol(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "资产代码不能为空")
    return value.strip().upper()


def _text(value: Any, field_name: str) -> str:
    """文本字段：None 视为空串，非字符串拒绝"""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(field_name, f"必须是字符串: {value!r}")
    return value


def _normalize_tags(value: Any) -> Tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        value = value.split(";")
    if not isinstance(value, Iterable):
        raise ValidationError("tags", "标签必须是字符串列表")
    tags = []
    for tag in value:
        if not isinstance(tag, str):
            raise ValidationError("tags", f"标签必须是字符串: {tag!r}")
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


@dataclass(frozen=True, kw_only=True)
class Transaction:
    """交易记录基类

    实例不可变；修改通过 TransactionStore.update_transaction 生成新实例。
    """

    type: ClassVar[TransactionType]
    requires_price: ClassVar[bool] = False

    id: str
    asset: str
    amount: Decimal
    timestamp: datetime
    portfolio_id: str
    created_at: datetime
    updated_at: datetime
    price: Optional[Decimal] = None
    fee: Decimal = ZERO
    fiat_currency: str = "USD"
    exchange: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("id", "交易 id 不能为空")
        if not isinstance(self.portfolio_id, str) or not self.portfolio_id.strip():
            raise ValidationError("portfolioId", "组合 id 不能为空")

        self._set("asset", _normalize_symbol(self.asset, "asset"))

        amount = to_decimal(self.amount, "amount")
        if amount <= 0:
            raise ValidationError("amount", f"数量必须大于 0: {amount}")
        self._set("amount", amount)

        fee = to_decimal(self.fee if self.fee is not None else ZERO, "fee")
        if fee < 0:
            raise ValidationError("fee", f"手续费不能为负: {fee}")
        self._set("fee", fee)

        if self.price is None:
            if self.requires_price:
                raise ValidationError("price", f"{self.type.value} 交易必须提供单价")
        else:
            price = to_decimal(self.price, "price")
            if price < 0:
                raise ValidationError("price", f"单价不能为负: {price}")
            self._set("price", price)

        self._set("timestamp", parse_timestamp(self.timestamp, "timestamp"))
        self._set("created_at", parse_timestamp(self.created_at, "createdAt"))
        self._set("updated_at", parse_timestamp(self.updated_at, "updatedAt"))
        self._set("fiat_currency", _text(self.fiat_currency, "fiatCurrency").strip().upper() or "USD")
        self._set("exchange", _text(self.exchange, "exchange").strip())
        self._set("description", _text(self.description, "description"))
        self._set("tags", _normalize_tags(self.tags))

    def _set(self, name: str, value: Any) -> None:
        object.__setattr__(self, name, value)

    @property
    def value(self) -> Optional[Decimal]:
        """法币价值 (amount × price)，无单价返回 None"""
        if self.price is None:
            return None
        with ledger_context():
            return self.amount * self.price

    @property
    def sort_key(self) -> Tuple[datetime, datetime, str]:
        """回放顺序：事件时间，其次录入时间，最后 id"""
        return (self.timestamp, self.created_at, self.id)

    def movements(self) -> Tuple[Tuple[str, Decimal], ...]:
        """
        对余额的带符号影响

        Returns:
            (资产, 有符号数量) 序列
        """
        if self.type in INBOUND_TYPES:
            return ((self.asset, self.amount),)
        if self.type in OUTBOUND_TYPES:
            return ((self.asset, -self.amount),)
        return ()

    def involves(self, asset: str) -> bool:
        """是否涉及某资产"""
        return self.asset == asset.upper()

    def evolve(self, **changes) -> "Transaction":
        """生成修改后的副本（重新校验）"""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """转换为规范字典"""
        return {
            "id": self.id,
            "type": self.type.value,
            "asset": self.asset,
            "amount": format_decimal(self.amount),
            "price": None if self.price is None else format_decimal(self.price),
            "fee": format_decimal(self.fee),
            "fiatCurrency": self.fiat_currency,
            "exchange": self.exchange,
            "description": self.description,
            "portfolioId": self.portfolio_id,
            "tags": list(self.tags),
            "timestamp": format_timestamp(self.timestamp),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }


class Buy(Transaction):
    """买入"""
    type = TransactionType.BUY
    requires_price = True


class Sell(Transaction):
    """卖出"""
    type = TransactionType.SELL
    requires_price = True


class TransferIn(Transaction):
    type = TransactionType.TRANSFER_IN


class TransferOut(Transaction):
    type = TransactionType.TRANSFER_OUT


class StakingReward(Transaction):
    """质押奖励"""
    type = TransactionType.STAKING_REWARD
    requires_price = True


class MiningReward(Transaction):
    """挖矿奖励"""
    type = TransactionType.MINING_REWARD
    requires_price = True


class Airdrop(Transaction):
    type = TransactionType.AIRDROP
    requires_price = True


class GiftReceived(Transaction):
    type = TransactionType.GIFT_RECEIVED


class GiftSent(Transaction):
    type = TransactionType.GIFT_SENT


class PaymentReceived(Transaction):
    type = TransactionType.PAYMENT_RECEIVED


class PaymentSent(Transaction):
    type = TransactionType.PAYMENT_SENT


class Fee(Transaction):
    """独立手续费支出（以资产计）"""
    type = TransactionType.FEE
    requires_price = True


@dataclass(frozen=True, kw_only=True)
class Convert(Transaction):
    """币币兑换

    源资产 asset/amount 流出，目标资产 dest_asset/dest_amount 流入。
    """

    type = TransactionType.CONVERT

    dest_asset: Optional[str] = None
    dest_amount: Optional[Decimal] = None

    def __post_init__(self):
        super().__post_init__()
        if self.dest_asset is None or (isinstance(self.dest_asset, str) and not self.dest_asset.strip()):
            raise ValidationError("destAsset", "兑换交易必须提供目标资产")
        self._set("dest_asset", _normalize_symbol(self.dest_asset, "destAsset"))

        if self.dest_amount is None:
            raise ValidationError("destAmount", "兑换交易必须提供目标数量")
        dest_amount = to_decimal(self.dest_amount, "destAmount")
        if dest_amount <= 0:
            raise ValidationError("destAmount", f"目标数量必须大于 0: {dest_amount}")
        self._set("dest_amount", dest_amount)

    def movements(self) -> Tuple[Tuple[str, Decimal], ...]:
        return ((self.asset, -self.amount), (self.dest_asset, self.dest_amount))

    def involves(self, asset: str) -> bool:
        symbol = asset.upper()
        return self.asset == symbol or self.dest_asset == symbol

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["destAsset"] = self.dest_asset
        data["destAmount"] = format_decimal(self.dest_amount)
        return data


TRANSACTION_CLASSES: Dict[TransactionType, Type[Transaction]] = {
    cls.type: cls
    for cls in (
        Buy, Sell, TransferIn, TransferOut, Convert, StakingReward, MiningReward,
        Airdrop, GiftReceived, GiftSent, PaymentReceived, PaymentSent, Fee,
    )
}


# ============================================================
# 字典 <-> 交易
# ============================================================

# 规范键名 -> 数据类字段名
CANONICAL_FIELDS: Dict[str, str] = {
    "id": "id",
    "asset": "asset",
    "amount": "amount",
    "price": "price",
    "fee": "fee",
    "fiatCurrency": "fiat_currency",
    "exchange": "exchange",
    "description": "description",
    "portfolioId": "portfolio_id",
    "tags": "tags",
    "timestamp": "timestamp",
    "destAsset": "dest_asset",
    "destAmount": "dest_amount",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

# 兼容别名
FIELD_ALIASES: Dict[str, str] = {
    **{attr: key for key, attr in CANONICAL_FIELDS.items()},
    "coin": "asset",
    "unitPrice": "price",
    "toCoin": "destAsset",
    "toAmount": "destAmount",
}

_REQUIRED_KEYS = ("id", "asset", "amount", "timestamp", "portfolioId", "createdAt", "updatedAt")


def normalize_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """把别名键统一为规范键，规范键优先"""
    result: Dict[str, Any] = {}
    for key, value in data.items():
        if key in CANONICAL_FIELDS or key == "type":
            result[key] = value
    for key, value in data.items():
        canonical = FIELD_ALIASES.get(key)
        if canonical and canonical not in result:
            result[canonical] = value
    return result


def transaction_from_dict(data: Mapping[str, Any]) -> Transaction:
    """
    由字典构造对应类型的交易

    Args:
        data: 规范键或 snake_case 别名键

    Raises:
        ValidationError: 类型未知、缺少字段或字段非法
    """
    payload = normalize_keys(data)
    tx_type = TransactionType.parse(payload.get("type"))
    cls = TRANSACTION_CLASSES[tx_type]

    for key in _REQUIRED_KEYS:
        value = payload.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(key, "缺少必填字段")

    allowed = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in payload.items():
        attr = CANONICAL_FIELDS.get(key)
        if attr is None:
            continue
        if attr not in allowed:
            # 非兑换交易带目标字段：忽略空值，拒绝有值
            if value not in (None, ""):
                raise ValidationError(key, f"{tx_type.value} 交易不允许该字段")
            continue
        kwargs[attr] = value

    if kwargs.get("fee") in (None, ""):
        kwargs.pop("fee", None)
    if kwargs.get("price") == "":
        kwargs["price"] = None

    return cls(**kwargs)
