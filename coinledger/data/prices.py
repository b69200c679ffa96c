"""行情价格协作方

估值只依赖两个接口：
- get_current_price(asset): 当前价格，不可用时抛 PriceUnavailableError
- get_historical_price(asset, ts): 历史价格，不可用时返回 None

实时行情抓取不在本项目范围内；这里提供静态价格表与重试包装。
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import pandas as pd

from coinledger.account.amount import to_decimal
from coinledger.account.errors import PriceUnavailableError, ValidationError
from coinledger.account.transaction import parse_timestamp
from coinledger.utils.retry import price_retrying

logger = logging.getLogger(__name__)


class MarketPriceProvider(ABC):
    """行情价格接口"""

    @abstractmethod
    def get_current_price(self, asset: str) -> Decimal:
        """
        当前价格

        Raises:
            PriceUnavailableError: 无可用价格
        """
        pass

    @abstractmethod
    def get_historical_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        """历史价格，无可用价格返回 None"""
        pass


class StaticPriceProvider(MarketPriceProvider):
    """静态价格表

    历史价格按时间索引保存，查询时取不晚于目标时间的最近一条
    """

    def __init__(self, prices: Optional[Mapping[str, Any]] = None):
        """
        Args:
            prices: 资产 -> 当前价格
        """
        self._current: Dict[str, Decimal] = {}
        self._history: Dict[str, pd.Series] = {}
        for asset, price in (prices or {}).items():
            self.set_price(asset, price)

    def set_price(self, asset: str, price: Any) -> None:
        """设置当前价格"""
        value = to_decimal(price, "price")
        if value < 0:
            raise ValidationError("price", f"价格不能为负: {value}")
        self._current[asset.upper()] = value

    def add_history(self, asset: str, timestamp: Any, price: Any) -> None:
        """追加一条历史价格"""
        ts = pd.Timestamp(parse_timestamp(timestamp))
        value = to_decimal(price, "price")
        symbol = asset.upper()
        point = pd.Series([value], index=pd.DatetimeIndex([ts]), dtype=object)
        series = self._history.get(symbol)
        series = point if series is None else pd.concat([series[series.index != ts], point])
        self._history[symbol] = series.sort_index()

    def get_current_price(self, asset: str) -> Decimal:
        symbol = asset.upper()
        if symbol not in self._current:
            raise PriceUnavailableError(symbol, "价格表中没有该资产")
        return self._current[symbol]

    def get_historical_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        series = self._history.get(asset.upper())
        if series is None or series.empty:
            return None
        ts = pd.Timestamp(parse_timestamp(timestamp))
        pos = series.index.searchsorted(ts, side="right") - 1
        if pos < 0:
            return None
        return series.iloc[pos]

    @property
    def assets(self) -> list:
        return sorted(set(self._current) | set(self._history))

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "StaticPriceProvider":
        """
        由 DataFrame 构造

        需要 asset、price 两列；带 timestamp 列且有值的行作为历史价格，
        同一资产最新的一条同时作为当前价格
        """
        missing = {"asset", "price"} - set(df.columns)
        if missing:
            raise ValidationError("columns", f"价格表缺少列: {sorted(missing)}")

        provider = cls()
        has_ts = "timestamp" in df.columns
        for record in df.to_dict("records"):
            asset, price = str(record["asset"]), str(record["price"])
            ts = record.get("timestamp") if has_ts else None
            if ts in (None, "") or (not isinstance(ts, str) and pd.isna(ts)):
                provider.set_price(asset, price)
            else:
                provider.add_history(asset, ts, price)

        for asset, series in provider._history.items():
            if asset not in provider._current:
                provider._current[asset] = series.iloc[-1]
        return provider

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "StaticPriceProvider":
        """从 CSV 加载，所有列按字符串读取"""
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        provider = cls.from_frame(df)
        logger.info(f"加载价格表: {path}, {len(provider.assets)} 个资产")
        return provider


class RetryingPriceProvider(MarketPriceProvider):
    """带重试的价格查询包装

    只重试传输类异常 (连接、超时、IO)，PriceUnavailableError 直接抛出
    """

    def __init__(
        self,
        inner: MarketPriceProvider,
        max_attempts: int = 3,
        min_wait: float = 1,
        max_wait: float = 30,
    ):
        self.inner = inner
        self._retrying = price_retrying(max_attempts, min_wait, max_wait)

    def get_current_price(self, asset: str) -> Decimal:
        return self._retrying.copy()(self.inner.get_current_price, asset)

    def get_historical_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        return self._retrying.copy()(self.inner.get_historical_price, asset, timestamp)
