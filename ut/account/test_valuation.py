"""估值引擎测试"""

from decimal import Decimal

import pytest

from coinledger.account.errors import PriceUnavailableError, ValidationError
from coinledger.account.valuation import ValuationEngine
from coinledger.data.prices import RetryingPriceProvider, StaticPriceProvider
from tests.mocks.factories import buy, sell, tx
from tests.mocks.mock_price_provider import FlakyPriceProvider


@pytest.fixture
def holdings(store):
    store.add_transaction(buy("BTC", "1", "10000", "2024-01-01T00:00:00Z"))
    store.add_transaction(buy("BTC", "1", "20000", "2024-01-02T00:00:00Z"))
    store.add_transaction(buy("BTC", "1", "30000", "2024-01-03T00:00:00Z"))
    store.add_transaction(sell("BTC", "1.5", "40000", "2024-01-04T00:00:00Z"))
    store.add_transaction(buy("ETH", "10", "1000", "2024-01-05T00:00:00Z"))
    return store


def valuation(engine, prices, **kwargs):
    return ValuationEngine(engine, FlakyPriceProvider(prices, **kwargs), max_workers=2)


class TestProfitLoss:
    """盈亏测试"""

    def test_realized_and_unrealized(self, holdings, engine):
        pl = valuation(engine, {"BTC": "50000"}).get_profit_loss("btc")

        assert pl.balance == Decimal("1.5")
        assert pl.current_value == Decimal("75000")
        assert pl.cost_basis == Decimal("40000")
        assert pl.unrealized == Decimal("35000")
        assert pl.realized == Decimal("40000")
        assert pl.total == Decimal("75000")
        assert pl.unrealized_pct == Decimal("87.5")
        assert pl.average_cost == Decimal("20000")
        assert len(pl.sales) == 1
        assert pl.sales[0].proceeds == Decimal("60000")

    def test_explicit_price_skips_lookup(self, holdings, engine):
        engine_ = valuation(engine, {})
        pl = engine_.get_profit_loss("BTC", current_price="40000")
        assert pl.unrealized == Decimal("20000")
        assert engine_.price_provider.calls == []

    def test_float_price_rejected(self, holdings, engine):
        with pytest.raises(ValidationError):
            valuation(engine, {}).get_profit_loss("BTC", current_price=40000.0)

    def test_missing_price_raises(self, holdings, engine):
        with pytest.raises(PriceUnavailableError):
            valuation(engine, {}).get_profit_loss("BTC")

    def test_zero_balance_skips_lookup(self, store, engine):
        store.add_transaction(buy("SOL", "2", "10", "2024-01-01T00:00:00Z"))
        store.add_transaction(sell("SOL", "2", "15", "2024-01-02T00:00:00Z"))
        engine_ = valuation(engine, {})

        pl = engine_.get_profit_loss("SOL")
        assert pl.current_price is None
        assert pl.unrealized == 0
        assert pl.realized == Decimal("10")
        assert pl.unrealized_pct is None
        assert engine_.price_provider.calls == []

    def test_convert_is_not_a_sale(self, store, engine):
        store.add_transaction(buy("BTC", "1", "100"))
        store.add_transaction(tx("convert", "BTC", "1", destAsset="ETH", destAmount="5"))
        pl = valuation(engine, {}).get_profit_loss("BTC")
        assert pl.realized == 0
        assert pl.sales == ()


class TestPortfolioSummary:
    """组合汇总测试"""

    def test_totals_and_allocation(self, holdings, engine):
        summary = valuation(engine, {"BTC": "40000", "ETH": "1500"}).get_portfolio_summary()

        assert summary.complete
        assert summary.total_value == Decimal("75000")
        assert summary.total_cost == Decimal("50000")
        assert summary.total_unrealized == Decimal("25000")
        assert [a.asset for a in summary.assets] == ["BTC", "ETH"]
        assert summary.assets[0].allocation == Decimal("80")
        assert summary.assets[1].allocation == Decimal("20")

    def test_profit_loss_fields(self, holdings, engine):
        summary = valuation(engine, {"BTC": "40000", "ETH": "1500"}).get_portfolio_summary()

        assert summary.total_realized == Decimal("40000")
        assert summary.total_profit_loss == Decimal("65000")
        assert summary.unrealized_pct == Decimal("50")
        btc, eth = summary.assets
        assert btc.average_cost == Decimal("20000")
        assert btc.unrealized_pct == Decimal("50")
        assert eth.average_cost == Decimal("1000")
        assert eth.unrealized_pct == Decimal("50")

        df = summary.to_dataframe()
        assert list(df["average_cost"]) == [Decimal("20000"), Decimal("1000")]

    def test_unavailable_marked_not_zeroed(self, holdings, engine):
        summary = valuation(engine, {"ETH": "1500"}).get_portfolio_summary()

        assert summary.unavailable == ("BTC",)
        assert not summary.complete
        assert summary.total_value == Decimal("15000")
        btc = summary.assets[-1]
        assert btc.asset == "BTC"
        assert btc.price_available is False
        assert btc.value is None
        assert btc.reason
        assert btc.unrealized_pct is None
        assert btc.average_cost == Decimal("20000")
        assert summary.total_realized == Decimal("40000")
        assert summary.assets[0].allocation == Decimal("100")

    def test_zero_total_value_allocation(self, store, engine):
        store.add_transaction(tx("airdrop", "JUNK", "100", price="0"))
        summary = valuation(engine, {"JUNK": "0"}).get_portfolio_summary()
        assert summary.total_value == 0
        assert summary.assets[0].allocation == 0
        assert summary.assets[0].unrealized_pct is None
        assert summary.unrealized_pct is None

    def test_repeatable(self, holdings, engine):
        engine_ = valuation(engine, {"BTC": "43210.123456789", "ETH": "2345.6789"})
        first = engine_.get_portfolio_summary()
        second = engine_.get_portfolio_summary()
        assert first == second
        assert str(first.total_value) == str(second.total_value)

    def test_portfolio_scope(self, holdings, registry, engine, store):
        cold = registry.save_portfolio({"name": "Cold"})
        store.add_transaction(buy("DOT", "5", "6", portfolioId=cold.id))
        summary = valuation(engine, {"DOT": "8"}).get_portfolio_summary(cold.id)
        assert [a.asset for a in summary.assets] == ["DOT"]
        assert summary.total_unrealized == Decimal("10")

    def test_transport_errors_retried(self, holdings, engine):
        flaky = FlakyPriceProvider({"BTC": "40000", "ETH": "1500"}, failures=2)
        engine_ = ValuationEngine(
            engine,
            RetryingPriceProvider(flaky, max_attempts=3, min_wait=0, max_wait=0),
            max_workers=1,
        )
        summary = engine_.get_portfolio_summary()
        assert summary.complete
        assert summary.total_value == Decimal("75000")

    def test_transport_errors_propagate_after_retries(self, holdings, engine):
        flaky = FlakyPriceProvider({"BTC": "40000"}, failures=10, error=TimeoutError("slow"))
        engine_ = ValuationEngine(
            engine,
            RetryingPriceProvider(flaky, max_attempts=2, min_wait=0, max_wait=0),
            max_workers=1,
        )
        with pytest.raises(TimeoutError):
            engine_.get_portfolio_summary()

    def test_to_dataframe(self, holdings, engine):
        df = valuation(engine, {"BTC": "40000", "ETH": "1500"}).get_portfolio_summary().to_dataframe()
        assert list(df["asset"]) == ["BTC", "ETH"]


class TestHistoricalValue:
    """历史估值测试"""

    def test_historical_value(self, holdings, engine):
        prices = StaticPriceProvider()
        prices.add_history("BTC", "2024-01-01T00:00:00Z", "11000")
        prices.add_history("BTC", "2024-01-03T00:00:00Z", "31000")

        summary = ValuationEngine(engine, prices).get_historical_value("2024-01-03T12:00:00Z")

        assert summary.as_of.day == 3
        assert summary.total_value == Decimal("93000")
        assert summary.total_cost == Decimal("60000")

    def test_missing_history_marked(self, holdings, engine):
        summary = ValuationEngine(engine, StaticPriceProvider()).get_historical_value("2024-02-01")
        assert set(summary.unavailable) == {"BTC", "ETH"}
        assert summary.total_value == 0
