"""测试数据工厂"""

from datetime import datetime, timedelta, timezone


class TickingClock:
    """每次读取前进 1 秒的时钟，保证录入时间各不相同"""

    def __init__(self, start: datetime = datetime(2024, 6, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


def buy(asset="BTC", amount="1", price="100", timestamp="2024-01-01T00:00:00Z", **extra):
    return {"type": "buy", "asset": asset, "amount": amount, "price": price, "timestamp": timestamp, **extra}


def sell(asset="BTC", amount="1", price="100", timestamp="2024-02-01T00:00:00Z", **extra):
    return {"type": "sell", "asset": asset, "amount": amount, "price": price, "timestamp": timestamp, **extra}


def tx(tx_type, asset="BTC", amount="1", timestamp="2024-01-15T00:00:00Z", **extra):
    return {"type": tx_type, "asset": asset, "amount": amount, "timestamp": timestamp, **extra}
