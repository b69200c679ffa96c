"""交易导入与导出

把交易所导出的表格行映射为规范交易，再交给 TransactionStore 校验入库：
- 按来源配置 (SourceProfile) 做列名映射与操作类型翻译
- 未知来源按通用列名匹配；未知操作类型逐行报错，不会被当作买入
- 单行失败只记录原因，整批照常完成
- canonical 格式即导出格式，保留 id 与录入时间，可无损往返
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

from coinledger.account.amount import format_decimal
from coinledger.account.errors import ImportRowError, ValidationError
from coinledger.account.transaction import (
    Convert,
    Transaction,
    TransactionType,
    format_timestamp,
    parse_timestamp,
)
from coinledger.utils.serialization import JsonSerializer

if TYPE_CHECKING:
    from coinledger.account.store import TransactionStore

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"

DATE_FORMATS: Dict[str, str] = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
}

# 导出列 -> 规范键
EXPORT_COLUMNS: Dict[str, str] = {
    "Date": "timestamp",
    "Type": "type",
    "Coin": "asset",
    "Amount": "amount",
    "Price": "price",
    "Fee": "fee",
    "Currency": "fiatCurrency",
    "Exchange": "exchange",
    "Description": "description",
    "Tags": "tags",
    "ToCoin": "destAsset",
    "ToAmount": "destAmount",
    "TransactionId": "id",
    "Portfolio": "portfolioId",
    "CreatedAt": "createdAt",
    "UpdatedAt": "updatedAt",
}


# ============================================================
# 来源配置
# ============================================================


@dataclass(frozen=True)
class SourceProfile:
    """导入来源配置

    columns: 规范键 -> 候选列名（按顺序取第一个非空值，列名不区分大小写）
    type_map: 来源操作类型 -> 交易类型；为 None 时直接按规范类型名解析
    """

    name: str
    columns: Dict[str, Tuple[str, ...]]
    type_map: Optional[Dict[str, TransactionType]] = None
    exchange: str = ""
    fiat_currency: Optional[str] = None
    unsigned_amounts: bool = False
    keep_metadata: bool = False


BINANCE = SourceProfile(
    name="binance",
    columns={
        "type": ("Operation",),
        "asset": ("Coin",),
        "amount": ("Amount", "Change"),
        "price": ("Price",),
        "fee": ("Fee",),
        "fiatCurrency": ("Fiat Currency",),
        "timestamp": ("Date", "Date(UTC)", "UTC_Time"),
        "destAsset": ("To Coin",),
        "destAmount": ("To Amount",),
    },
    type_map={
        "buy": TransactionType.BUY,
        "sell": TransactionType.SELL,
        "deposit": TransactionType.TRANSFER_IN,
        "withdrawal": TransactionType.TRANSFER_OUT,
        "withdraw": TransactionType.TRANSFER_OUT,
        "convert": TransactionType.CONVERT,
        "staking reward": TransactionType.STAKING_REWARD,
        "staking rewards": TransactionType.STAKING_REWARD,
        "mining": TransactionType.MINING_REWARD,
        "distribution": TransactionType.AIRDROP,
        "commission": TransactionType.FEE,
        "fee": TransactionType.FEE,
    },
    exchange="Binance",
    unsigned_amounts=True,
)

COINBASE = SourceProfile(
    name="coinbase",
    columns={
        "type": ("Transaction Type",),
        "asset": ("Asset",),
        "amount": ("Quantity Transacted",),
        "price": ("USD Spot Price at Transaction", "Spot Price at Transaction"),
        "fee": ("USD Fee", "Fees and/or Spread"),
        "fiatCurrency": ("Spot Price Currency",),
        "timestamp": ("Timestamp",),
        "description": ("Notes",),
    },
    type_map={
        "buy": TransactionType.BUY,
        "advanced trade buy": TransactionType.BUY,
        "sell": TransactionType.SELL,
        "advanced trade sell": TransactionType.SELL,
        "convert": TransactionType.CONVERT,
        "rewards income": TransactionType.STAKING_REWARD,
        "staking income": TransactionType.STAKING_REWARD,
        "receive": TransactionType.TRANSFER_IN,
        "send": TransactionType.TRANSFER_OUT,
        "airdrop": TransactionType.AIRDROP,
    },
    exchange="Coinbase",
    fiat_currency="USD",
    unsigned_amounts=True,
)

KRAKEN = SourceProfile(
    name="kraken",
    columns={
        "type": ("type",),
        "asset": ("asset", "pair"),
        "amount": ("vol", "amount"),
        "price": ("price",),
        "fee": ("fee",),
        "timestamp": ("time",),
        "description": ("txid",),
    },
    type_map={
        "buy": TransactionType.BUY,
        "sell": TransactionType.SELL,
        "deposit": TransactionType.TRANSFER_IN,
        "withdrawal": TransactionType.TRANSFER_OUT,
        "staking": TransactionType.STAKING_REWARD,
        "earn": TransactionType.STAKING_REWARD,
        "airdrop": TransactionType.AIRDROP,
    },
    exchange="Kraken",
    unsigned_amounts=True,
)

GENERIC = SourceProfile(
    name="generic",
    columns={
        "type": ("Type", "Operation", "Transaction Type"),
        "asset": ("Coin", "Asset", "Symbol", "Currency"),
        "amount": ("Amount", "Quantity", "Volume"),
        "price": ("Price", "Rate", "USD Price", "Unit Price"),
        "fee": ("Fee", "Fees"),
        "fiatCurrency": ("Fiat Currency", "Fiat"),
        "timestamp": ("Date", "Timestamp", "Time"),
        "exchange": ("Exchange", "Source"),
        "description": ("Description", "Notes"),
        "tags": ("Tags",),
        "destAsset": ("ToCoin", "To Coin", "Dest Asset"),
        "destAmount": ("ToAmount", "To Amount", "Dest Amount"),
    },
    type_map={
        "deposit": TransactionType.TRANSFER_IN,
        "withdrawal": TransactionType.TRANSFER_OUT,
        "reward": TransactionType.STAKING_REWARD,
    },
)

CANONICAL = SourceProfile(
    name="canonical",
    columns={
        key: (column, key) for column, key in EXPORT_COLUMNS.items()
    },
    keep_metadata=True,
)

PROFILES: Dict[str, SourceProfile] = {
    p.name: p for p in (BINANCE, COINBASE, KRAKEN, GENERIC, CANONICAL)
}

# Kraken 资产代码
_KRAKEN_ASSETS = {
    "XXBT": "BTC", "XBT": "BTC", "XETH": "ETH", "XXRP": "XRP", "XLTC": "LTC",
    "XXLM": "XLM", "XXDG": "DOGE", "XDG": "DOGE", "ZUSD": "USD", "ZEUR": "EUR",
}
_KRAKEN_QUOTES = ("ZUSD", "ZEUR", "USDT", "USDC", "USD", "EUR")

_COINBASE_CONVERT = re.compile(
    r"Converted\s+([\d.,]+)\s+(\w+)\s+to\s+([\d.,]+)\s+(\w+)", re.IGNORECASE
)


def get_profile(source: Optional[str]) -> SourceProfile:
    """按名称取来源配置，未知名称回退到通用匹配"""
    if not source:
        return GENERIC
    profile = PROFILES.get(source.strip().lower())
    if profile is None:
        logger.info(f"未知导入来源 {source!r}，使用通用列名匹配")
        return GENERIC
    return profile


# ============================================================
# 导入结果
# ============================================================


@dataclass
class InvalidRow:
    """失败的导入行"""

    row: int
    data: Dict[str, Any]
    field: Optional[str]
    reason: str


@dataclass
class ImportResult:
    """导入结果"""

    total: int = 0
    added: int = 0
    invalid: int = 0
    invalid_rows: List[InvalidRow] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.added > 0

    @property
    def summary(self) -> str:
        return f"导入 {self.total} 行: 成功 {self.added}, 失败 {self.invalid}"


# ============================================================
# 单行映射
# ============================================================


def _lookup(row: Mapping[str, Any], candidates: Tuple[str, ...]) -> Optional[str]:
    """按候选列名取值，列名不区分大小写，空值视为缺失"""
    lowered = {str(k).strip().lower(): v for k, v in row.items()}
    for name in candidates:
        value = row.get(name)
        if value is None:
            value = lowered.get(name.lower())
        if value is None:
            continue
        if isinstance(value, float) and pd.isna(value):
            continue
        text = value.strip() if isinstance(value, str) else value
        if text == "" or (isinstance(text, list) and not text):
            continue
        return text
    return None


def _clean_number(value: Any, unsigned: bool) -> Any:
    if not isinstance(value, str):
        return value
    text = value.replace("$", "").replace(" ", "")
    if unsigned and text.startswith("-"):
        text = text[1:]
    return text


def parse_import_date(value: Any, date_format: str = "YYYY-MM-DD") -> datetime:
    """
    解析导入行里的日期

    ISO 字符串直接解析；否则按 date_format (YYYY-MM-DD / MM/DD/YYYY / DD/MM/YYYY)，
    可带 " HH:MM:SS"；仍失败时交给 pandas 推断。

    Raises:
        ImportRowError: 无法解析
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ImportRowError("缺少日期", field="timestamp")
    if not isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValidationError as e:
            raise ImportRowError(e.message, field="timestamp") from None

    text = value.strip()
    try:
        return parse_timestamp(text)
    except ValidationError:
        pass

    pattern = DATE_FORMATS.get(date_format)
    if pattern is None:
        raise ImportRowError(
            f"不支持的日期格式: {date_format}, 可选: {', '.join(DATE_FORMATS)}", field="timestamp"
        )
    for fmt in (pattern, f"{pattern} %H:%M:%S", f"{pattern} %H:%M"):
        try:
            return parse_timestamp(datetime.strptime(text, fmt))
        except ValueError:
            continue

    try:
        return parse_timestamp(pd.to_datetime(text, utc=True).to_pydatetime())
    except (ValueError, TypeError, OverflowError):
        raise ImportRowError(f"无法解析日期: {value!r}", field="timestamp") from None


def _map_type(label: Any, profile: SourceProfile) -> TransactionType:
    if label is None:
        raise ImportRowError("缺少交易类型", field="type")
    text = str(label).strip()
    if profile.type_map:
        mapped = profile.type_map.get(text.lower())
        if mapped is not None:
            return mapped
        if profile is not GENERIC:
            raise ImportRowError(f"{profile.name} 未知操作类型: {text}", field="type")
    try:
        return TransactionType.parse(text.lower().replace(" ", "_"))
    except ValidationError:
        raise ImportRowError(f"未知交易类型: {text}", field="type") from None


def _kraken_asset(value: str) -> str:
    symbol = value.strip().upper()
    if "/" in symbol:
        symbol = symbol.split("/", 1)[0]
    elif symbol not in _KRAKEN_ASSETS:
        # 交易对形式，如 XXBTZUSD
        for quote in _KRAKEN_QUOTES:
            if symbol.endswith(quote) and len(symbol) > len(quote):
                symbol = symbol[: -len(quote)]
                break
    return _KRAKEN_ASSETS.get(symbol, symbol)


def map_row(
    row: Mapping[str, Any],
    profile: Union[SourceProfile, str, None] = None,
    portfolio_id: Optional[str] = None,
    date_format: str = "YYYY-MM-DD",
) -> Dict[str, Any]:
    """
    把一行外部数据映射为规范交易字典（尚未校验入库）

    Args:
        row: 列名 -> 值
        profile: 来源配置或名称
        portfolio_id: 目标组合；canonical 来源不传时沿用行内组合
        date_format: 非 ISO 日期的格式

    Raises:
        ImportRowError: 缺少类型、类型未知或日期无法解析
    """
    if not isinstance(profile, SourceProfile):
        profile = get_profile(profile)

    values = {key: _lookup(row, names) for key, names in profile.columns.items()}
    tx_type = _map_type(values.pop("type"), profile)

    candidate: Dict[str, Any] = {"type": tx_type.value}
    for key, value in values.items():
        if value is not None:
            candidate[key] = value

    candidate["timestamp"] = parse_import_date(candidate.get("timestamp"), date_format)
    for key in ("amount", "price", "fee", "destAmount"):
        if key in candidate:
            candidate[key] = _clean_number(candidate[key], profile.unsigned_amounts)

    if profile is KRAKEN and "asset" in candidate:
        candidate["asset"] = _kraken_asset(str(candidate["asset"]))

    if profile is COINBASE and tx_type is TransactionType.CONVERT and "destAsset" not in candidate:
        match = _COINBASE_CONVERT.search(str(candidate.get("description", "")))
        if match is None:
            raise ImportRowError("无法从备注识别兑换目标", field="destAsset")
        candidate["destAmount"] = match.group(3)
        candidate["destAsset"] = match.group(4)

    if profile.exchange and "exchange" not in candidate:
        candidate["exchange"] = profile.exchange
    if profile.fiat_currency and "fiatCurrency" not in candidate:
        candidate["fiatCurrency"] = profile.fiat_currency
    if portfolio_id:
        candidate["portfolioId"] = portfolio_id
    return candidate


# ============================================================
# 导入器
# ============================================================


class ImportMapper:
    """交易导入导出"""

    def __init__(self, store: "TransactionStore", default_source: str = "generic", date_format: str = "YYYY-MM-DD"):
        """
        Args:
            store: 交易存储
            default_source: 未指定来源时使用的配置
            date_format: 默认日期格式
        """
        self.store = store
        self.default_source = default_source
        self.date_format = date_format

    def import_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        source: Optional[str] = None,
        portfolio_id: Optional[str] = None,
        date_format: Optional[str] = None,
    ) -> ImportResult:
        """
        批量导入

        映射失败与校验失败都记入 invalid_rows（行号从 1 开始），成功的行一次写入。

        Args:
            rows: 已切分好的行
            source: 来源配置名，未知时按通用列名匹配
            portfolio_id: 目标组合，不传为默认组合（canonical 为行内组合）
            date_format: 非 ISO 日期的格式
        """
        profile = get_profile(source or self.default_source)
        fmt = date_format or self.date_format
        result = ImportResult()

        candidates: List[Tuple[int, Dict[str, Any], Dict[str, Any]]] = []
        for number, row in enumerate(rows, start=1):
            result.total += 1
            data = dict(row)
            try:
                candidates.append((number, data, map_row(data, profile, portfolio_id, fmt)))
            except ImportRowError as e:
                result.invalid_rows.append(InvalidRow(number, data, e.field, e.message))

        if candidates:
            added, errors = self.store.add_transactions(
                [c for _, _, c in candidates], keep_metadata=profile.keep_metadata
            )
            result.transactions = added
            for index, error in errors:
                number, data, _ = candidates[index]
                result.invalid_rows.append(InvalidRow(number, data, error.field, error.message))

        result.invalid_rows.sort(key=lambda r: r.row)
        result.added = len(result.transactions)
        result.invalid = len(result.invalid_rows)

        logger.info(f"[{profile.name}] {result.summary}")
        for bad in result.invalid_rows:
            logger.debug(f"第 {bad.row} 行导入失败: {bad.field or '-'}: {bad.reason}")
        return result

    def import_dataframe(
        self,
        df: pd.DataFrame,
        source: Optional[str] = None,
        portfolio_id: Optional[str] = None,
        date_format: Optional[str] = None,
    ) -> ImportResult:
        """导入 DataFrame，建议按字符串读取 (dtype=str, keep_default_na=False)"""
        if df.empty:
            return ImportResult()
        return self.import_rows(df.to_dict("records"), source, portfolio_id, date_format)

    def import_json(self, content: Union[str, bytes], portfolio_id: Optional[str] = None) -> ImportResult:
        """
        导入 export_json 生成的内容

        Raises:
            ValidationError: 内容不是导出格式
        """
        raw = content.encode("utf-8") if isinstance(content, str) else content
        try:
            payload = JsonSerializer().deserialize(raw)
        except ValueError as e:
            raise ValidationError("content", f"JSON 解析失败: {e}") from None

        items = payload.get("transactions") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ValidationError("content", "缺少 transactions 列表")
        rows = [item if isinstance(item, dict) else {"value": item} for item in items]
        return self.import_rows(rows, source="canonical", portfolio_id=portfolio_id)

    # ============================================================
    # 导出
    # ============================================================

    def _export_transactions(self, portfolio_id: Optional[str]) -> List[Transaction]:
        return self.store.get_transactions(portfolio_id=portfolio_id, descending=False)

    @staticmethod
    def _export_row(tx: Transaction) -> Dict[str, str]:
        is_convert = isinstance(tx, Convert)
        return {
            "Date": format_timestamp(tx.timestamp),
            "Type": tx.type.value,
            "Coin": tx.asset,
            "Amount": format_decimal(tx.amount),
            "Price": "" if tx.price is None else format_decimal(tx.price),
            "Fee": format_decimal(tx.fee),
            "Currency": tx.fiat_currency,
            "Exchange": tx.exchange,
            "Description": tx.description,
            "Tags": ";".join(tx.tags),
            "ToCoin": tx.dest_asset if is_convert else "",
            "ToAmount": format_decimal(tx.dest_amount) if is_convert else "",
            "TransactionId": tx.id,
            "Portfolio": tx.portfolio_id,
            "CreatedAt": format_timestamp(tx.created_at),
            "UpdatedAt": format_timestamp(tx.updated_at),
        }

    def export_rows(self, portfolio_id: Optional[str] = None) -> List[Dict[str, str]]:
        """导出为 canonical 行（按时间升序），可直接用 source="canonical" 导回"""
        return [self._export_row(t) for t in self._export_transactions(portfolio_id)]

    def export_dataframe(self, portfolio_id: Optional[str] = None) -> pd.DataFrame:
        return pd.DataFrame(self.export_rows(portfolio_id), columns=list(EXPORT_COLUMNS))

    def export_csv(self, path: Optional[Union[str, Path]] = None, portfolio_id: Optional[str] = None) -> str:
        """
        导出 CSV

        Args:
            path: 写入路径，不传只返回内容
            portfolio_id: 组合，None 为全部
        """
        content = self.export_dataframe(portfolio_id).to_csv(index=False)
        if path is not None:
            Path(path).write_text(content, encoding="utf-8")
            logger.info(f"导出 CSV: {path}")
        return content

    def export_json(self, portfolio_id: Optional[str] = None, indent: Optional[int] = 2) -> str:
        """导出 JSON，附带导出元信息"""
        transactions = self._export_transactions(portfolio_id)
        portfolio = self.store.ledger.portfolio(portfolio_id) if portfolio_id else None
        payload = {
            "metadata": {
                "exported_at": format_timestamp(self.store.ledger.now()),
                "transaction_count": len(transactions),
                "portfolio_id": portfolio_id,
                "portfolio_name": portfolio.name if portfolio else None,
                "version": EXPORT_VERSION,
            },
            "transactions": [t.to_dict() for t in transactions],
        }
        return JsonSerializer(indent=indent).serialize_to_str(payload)
