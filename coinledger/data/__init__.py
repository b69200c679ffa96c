"""行情数据"""

from .prices import MarketPriceProvider, StaticPriceProvider, RetryingPriceProvider

__all__ = [
    "MarketPriceProvider",
    "StaticPriceProvider",
    "RetryingPriceProvider",
]
