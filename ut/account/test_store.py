"""交易存储测试"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from coinledger.account.errors import NotFoundError, ValidationError
from coinledger.account.store import TransactionFilter
from coinledger.utils.events import TransactionAdded, TransactionsImported
from tests.mocks.factories import buy, sell, tx


class TestAddTransaction:
    """新增交易测试"""

    def test_defaults_filled(self, store, ledger):
        t = store.add_transaction(buy("eth", "2", "1500"))
        assert t.id
        assert t.asset == "ETH"
        assert t.portfolio_id == "default"
        assert t.fiat_currency == "USD"
        assert t.created_at == t.updated_at
        assert ledger.transaction(t.id) == t

    def test_persisted(self, store, persistence):
        t = store.add_transaction(buy())
        stored = persistence.get("coinledger.data")
        assert [item["id"] for item in stored] == [t.id]
        assert stored[0]["amount"] == "1"

    def test_convert_without_destination_not_persisted(self, store, persistence, ledger):
        store.add_transaction(buy())
        before = persistence.get("coinledger.data")
        revision = ledger.revision

        with pytest.raises(ValidationError) as exc:
            store.add_transaction(tx("convert", amount="0.5", destAmount="10"))

        assert exc.value.field == "destAsset"
        assert persistence.get("coinledger.data") == before
        assert len(store.get_transactions()) == 1
        assert ledger.revision == revision

    def test_duplicate_id(self, store):
        store.add_transaction(buy(id="same"))
        with pytest.raises(ValidationError) as exc:
            store.add_transaction(buy(id="same"))
        assert exc.value.field == "id"

    def test_unknown_portfolio(self, store):
        with pytest.raises(ValidationError) as exc:
            store.add_transaction(buy(portfolioId="missing"))
        assert exc.value.field == "portfolioId"

    def test_keep_metadata(self, store):
        t = store.add_transaction(
            buy(createdAt="2023-01-01T00:00:00Z", updatedAt="2023-01-02T00:00:00Z"),
            keep_metadata=True,
        )
        assert t.created_at == datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert t.updated_at == datetime(2023, 1, 2, tzinfo=timezone.utc)

    def test_metadata_ignored_by_default(self, store, clock):
        t = store.add_transaction(buy(createdAt="2023-01-01T00:00:00Z"))
        assert t.created_at.year == 2024

    def test_event_published_after_persist(self, store, ledger):
        received = []
        ledger.event_bus.subscribe(TransactionAdded, received.append)
        t = store.add_transaction(buy())
        assert len(received) == 1
        assert received[0].transaction == t
        assert received[0].revision == ledger.revision

    def test_batch_collects_errors(self, store, ledger):
        events = []
        ledger.event_bus.subscribe(TransactionsImported, events.append)

        added, errors = store.add_transactions([
            buy(),
            buy(amount="-1"),
            sell(price=None),
            buy("ETH"),
        ])

        assert [t.asset for t in added] == ["BTC", "ETH"]
        assert [(i, e.field) for i, e in errors] == [(1, "amount"), (2, "price")]
        assert events[0].added == 2
        assert events[0].invalid == 2

    def test_numeric_currency_rejected(self, store):
        with pytest.raises(ValidationError) as exc:
            store.add_transaction(buy(fiatCurrency=840))
        assert exc.value.field == "fiatCurrency"
        assert store.get_transactions() == []

    def test_batch_rejects_malformed_items(self, store):
        added, errors = store.add_transactions([
            buy(exchange=5),
            ["not", "a", "mapping"],
            buy(id=7),
            buy(portfolioId=["default"]),
            buy("ETH"),
        ])
        assert [t.asset for t in added] == ["ETH"]
        assert [(i, e.field) for i, e in errors] == [
            (0, "exchange"), (1, "transaction"), (2, "id"), (3, "portfolioId"),
        ]


class TestUpdateDelete:
    """修改与删除测试"""

    def test_update_revalidates(self, store):
        t = store.add_transaction(buy())
        with pytest.raises(ValidationError):
            store.update_transaction(t.id, {"amount": "0"})
        assert store.get_transaction(t.id).amount == Decimal("1")

    def test_update_changes_type(self, store):
        t = store.add_transaction(buy())
        updated = store.update_transaction(t.id, {"type": "convert", "destAsset": "eth", "destAmount": "15"})
        assert updated.type.value == "convert"
        assert updated.dest_asset == "ETH"
        assert updated.created_at == t.created_at
        assert updated.updated_at > t.updated_at

    def test_update_drops_destination_when_leaving_convert(self, store):
        t = store.add_transaction(tx("convert", destAsset="ETH", destAmount="15"))
        updated = store.update_transaction(t.id, {"type": "transfer_out"})
        assert updated.type.value == "transfer_out"
        assert "destAsset" not in updated.to_dict()

    def test_id_is_immutable(self, store):
        t = store.add_transaction(buy())
        with pytest.raises(ValidationError) as exc:
            store.update_transaction(t.id, {"id": "other"})
        assert exc.value.field == "id"

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_transaction("nope", {"amount": "1"})

    def test_delete(self, store):
        t = store.add_transaction(buy())
        removed = store.delete_transaction(t.id)
        assert removed.id == t.id
        with pytest.raises(NotFoundError):
            store.get_transaction(t.id)
        with pytest.raises(NotFoundError):
            store.delete_transaction(t.id)

    def test_clear_all(self, store, registry):
        store.add_transaction(buy())
        registry.save_portfolio({"name": "Cold"})
        store.clear_all()
        assert store.get_transactions() == []
        assert registry.get_portfolios() == []


class TestQueries:
    """查询测试"""

    @pytest.fixture
    def populated(self, store, registry):
        cold = registry.save_portfolio({"id": "cold", "name": "Cold"})
        store.add_transaction(buy("BTC", "1", "100", "2024-01-01T00:00:00Z", exchange="Binance", tags=["dca"]))
        store.add_transaction(buy("ETH", "3", "10", "2024-01-05T00:00:00Z", exchange="Kraken"))
        store.add_transaction(sell("BTC", "0.5", "200", "2024-02-01T00:00:00Z", exchange="binance"))
        store.add_transaction(tx(
            "convert", "ETH", "1", "2024-02-10T00:00:00Z",
            destAsset="SOL", destAmount="5", portfolioId=cold.id,
        ))
        return store

    def test_default_sort_newest_first(self, populated):
        result = populated.get_transactions()
        assert [t.timestamp.day for t in result] == [10, 1, 5, 1]
        assert [t.timestamp.month for t in result] == [2, 2, 1, 1]

    def test_filter_asset_includes_destination(self, populated):
        assert {t.type.value for t in populated.get_transactions(asset="sol")} == {"convert"}
        assert len(populated.get_transactions(asset="ETH")) == 2

    def test_filter_type(self, populated):
        result = populated.get_transactions(type=["buy", "sell"])
        assert len(result) == 3

    def test_filter_exchange_case_insensitive(self, populated):
        assert len(populated.get_transactions(exchange="BINANCE")) == 2

    def test_filter_tags(self, populated):
        assert [t.asset for t in populated.get_transactions(tags=["dca"])] == ["BTC"]

    def test_filter_portfolio(self, populated):
        assert len(populated.get_transactions(portfolio_id="cold")) == 1
        assert len(populated.get_transactions(portfolio_id="default")) == 3

    def test_date_to_includes_whole_day(self, populated):
        result = populated.get_transactions(date_from="2024-01-01", date_to=date(2024, 1, 5))
        assert len(result) == 2

    def test_sort_ascending_by_amount(self, populated):
        result = populated.get_transactions(sort_by="amount", descending=False)
        assert [t.amount for t in result] == [Decimal("0.5"), Decimal("1"), Decimal("1"), Decimal("3")]

    def test_limit(self, populated):
        assert len(populated.get_transactions(limit=2)) == 2

    def test_filter_object(self, populated):
        result = populated.get_transactions(TransactionFilter(asset="BTC", descending=False))
        assert [t.type.value for t in result] == ["buy", "sell"]

    def test_filter_and_kwargs_conflict(self, populated):
        with pytest.raises(TypeError):
            populated.get_transactions(TransactionFilter(), asset="BTC")

    def test_invalid_sort_field(self, populated):
        with pytest.raises(ValidationError):
            populated.get_transactions(sort_by="colour")

    def test_to_dataframe(self, populated):
        df = populated.to_dataframe(asset="BTC")
        assert len(df) == 2
        assert isinstance(df["amount"].iloc[0], Decimal)
        assert str(df["timestamp"].dt.tz) == "UTC"

    def test_to_dataframe_empty(self, store):
        assert store.to_dataframe().empty


class TestStats:
    """统计测试"""

    def test_stats(self, store):
        store.add_transaction(buy("BTC", "1", "100", "2024-05-01T00:00:00Z", exchange="Binance", tags=["dca"]))
        store.add_transaction(buy("BTC", "2", "150", "2024-05-20T00:00:00Z", exchange="Binance"))
        store.add_transaction(sell("BTC", "1", "200", "2024-05-21T00:00:00Z"))
        store.add_transaction(tx("transfer_in", "ETH", "4", "2023-01-01T00:00:00Z"))

        stats = store.get_transaction_stats()
        assert stats["total_transactions"] == 4
        assert stats["by_type"] == {"buy": 2, "sell": 1, "transfer_in": 1}
        assert stats["volume_by_type"]["buy"] == Decimal("400")
        assert stats["volume_by_asset"]["ETH"] == Decimal("0")
        assert stats["exchanges"]["Binance"] == 2
        assert stats["tags"] == {"dca": 1}
        assert stats["largest_transaction"]["value"] == Decimal("300")
        assert len(stats["recent_transactions"]) == 4
        assert stats["timeline"]["monthly"]["2024-05"]["count"] == 3

    def test_stats_period(self, store):
        store.add_transaction(buy(timestamp="2024-05-20T00:00:00Z"))
        store.add_transaction(buy(timestamp="2024-01-01T00:00:00Z"))
        store.add_transaction(buy(timestamp="2022-01-01T00:00:00Z"))

        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert store.get_transaction_stats(period="month", now=now)["total_transactions"] == 1
        assert store.get_transaction_stats(period="year", now=now)["total_transactions"] == 2

    def test_stats_empty(self, store):
        stats = store.get_transaction_stats()
        assert stats["total_transactions"] == 0
        assert stats["largest_transaction"] is None

    def test_stats_invalid_period(self, store):
        with pytest.raises(ValidationError):
            store.get_transaction_stats(period="week")
