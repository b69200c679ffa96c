"""账本端到端场景测试

经由 build_services 装配的完整服务验证先进先出、组合删除、兑换校验、估值稳定性，
以及回放确定性、余额符号求和、批次守恒和导出导入往返。
"""

import io
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pandas as pd
import pytest

from config.base import AppSettings
from coinledger.account.cost_basis import CostBasisEngine
from coinledger.account.errors import InvalidOperationError, ValidationError
from coinledger.account.services import build_services
from coinledger.account.storage import MemoryPersistence
from coinledger.data.prices import MarketPriceProvider
from tests.mocks.factories import TickingClock


def fresh_services():
    """独立的内存账本"""
    settings = AppSettings(storage={"backend": "memory"}, prices={"min_wait": 0, "max_wait": 0})
    return build_services(settings, persistence=MemoryPersistence(), clock=TickingClock())


def lot_view(position):
    return [(lot.remaining, lot.unit_cost, lot.acquired_at) for lot in position.lots]


class TestFifoScenario:
    """三次买入后卖出 1.5 BTC"""

    def test_realized_gain(self, fifo_services):
        pl = fifo_services.valuation.get_profit_loss("BTC")
        sale = pl.sales[0]
        assert sale.cost_basis == Decimal("20000")
        assert sale.proceeds == Decimal("60000")
        assert pl.realized == Decimal("40000")

    def test_remaining_lots(self, fifo_services):
        position = fifo_services.cost_basis.get_position("BTC")
        assert position.balance == Decimal("1.5")
        assert [(lot.remaining, lot.unit_cost) for lot in position.lots] == [
            (Decimal("0.5"), Decimal("20000")),
            (Decimal("1"), Decimal("30000")),
        ]

    def test_unrealized_uses_remaining_lots(self, fifo_services):
        pl = fifo_services.valuation.get_profit_loss("BTC")
        assert pl.current_price == Decimal("50000")
        assert pl.cost_basis == Decimal("40000")
        assert pl.unrealized == Decimal("35000")

    def test_tax_report(self, fifo_services):
        report = fifo_services.tax.generate_tax_report(2024)
        numbers = report.summary()
        assert numbers["sales"] == 1
        assert numbers["proceeds"] == Decimal("60000")
        assert numbers["cost_basis"] == Decimal("20000")
        assert numbers["long_term_gain"] == Decimal("40000")
        assert numbers["short_term_gain"] == Decimal("0")
        assert report.warnings == []

    def test_tax_report_other_year_empty(self, fifo_services):
        assert fifo_services.tax.generate_tax_report(2023).summary()["sales"] == 0


class TestDefaultPortfolioDeletion:
    """删除默认组合失败且不改变任何状态"""

    def test_rejected_without_side_effects(self, services):
        services.portfolios.save_portfolio({"id": "alt", "name": "备用"})
        services.store.add_transaction({
            "type": "buy", "asset": "ETH", "amount": "2", "price": "1500",
            "timestamp": "2024-01-01T00:00:00Z",
        })
        default = services.ledger.default_portfolio()
        persistence = services.ledger.persistence
        before = (
            services.ledger.revision,
            persistence.get(services.ledger.transactions_key),
            persistence.get(services.ledger.portfolios_key),
        )

        for kwargs in ({}, {"move_transactions": True, "target_portfolio_id": "alt"}):
            with pytest.raises(InvalidOperationError):
                services.portfolios.delete_portfolio(default.id, **kwargs)

        after = (
            services.ledger.revision,
            persistence.get(services.ledger.transactions_key),
            persistence.get(services.ledger.portfolios_key),
        )
        assert after == before
        assert services.cost_basis.get_balance("ETH", default.id) == Decimal("2")


class TestConvertValidation:
    """缺少目标资产的兑换不会写入"""

    def test_not_persisted(self, services):
        revision = services.ledger.revision
        with pytest.raises(ValidationError) as exc:
            services.store.add_transaction({
                "type": "convert", "asset": "ETH", "amount": "1", "destAmount": "0.05",
                "timestamp": "2024-01-01T00:00:00Z",
            })
        assert exc.value.field == "destAsset"
        assert services.ledger.revision == revision
        assert services.store.get_transactions() == []


class TestSummaryStability:
    """相同账本与价格下汇总结果完全一致"""

    def test_repeated_summary_identical(self, fifo_services):
        fifo_services.store.add_transaction({
            "type": "buy", "asset": "ETH", "amount": "3.3333", "price": "1234.5678",
            "timestamp": "2024-02-01T00:00:00Z",
        })
        first = fifo_services.valuation.get_portfolio_summary()
        second = fifo_services.valuation.get_portfolio_summary()

        assert first == second
        assert str(first.total_value) == str(second.total_value)
        assert [a.asset for a in first.assets] == ["BTC", "ETH"]


class TestLedgerProperties:
    """回放确定性、符号求和与批次守恒"""

    @staticmethod
    def random_transactions(seed: int, count: int):
        rng = random.Random(seed)
        start = datetime(2023, 1, 1, tzinfo=timezone.utc)
        kinds = ["buy", "buy", "sell", "transfer_in", "transfer_out", "staking_reward", "convert"]
        items = []
        for i in range(count):
            kind = rng.choice(kinds)
            data = {
                "type": kind,
                "asset": rng.choice(["BTC", "ETH"]),
                "amount": str(Decimal(rng.randint(1, 500)) / 100),
                "timestamp": (start + timedelta(hours=i)).isoformat(),
            }
            if kind in ("buy", "sell", "staking_reward"):
                data["price"] = str(Decimal(rng.randint(100, 90000)) / 10)
            if kind == "convert":
                data["destAsset"] = "SOL"
                data["destAmount"] = str(Decimal(rng.randint(1, 9000)) / 100)
            items.append(data)
        return items

    def test_rebuild_independent_of_mutation_order(self):
        items = self.random_transactions(seed=7, count=60)
        results = []

        for order_seed in (1, 2):
            services = fresh_services()
            order = items[:]
            random.Random(order_seed).shuffle(order)

            # 先写入一批随后删除的干扰交易，再逐条写入
            noise = services.store.add_transactions(self.random_transactions(seed=order_seed + 100, count=10))[0]
            for data in order:
                services.store.add_transaction(data)
                services.cost_basis.get_balance("BTC")
            for t in noise:
                services.store.delete_transaction(t.id)

            incremental = {a: (p.balance, lot_view(p)) for a, p in services.cost_basis.positions().items()}
            rebuilt = {a: (p.balance, lot_view(p)) for a, p in CostBasisEngine(services.ledger).rebuild().items()}
            assert incremental == rebuilt
            results.append(rebuilt)
            services.close()

        assert results[0] == results[1]

    def test_signed_sum_exact(self, services):
        batch = []
        for i in range(1500):
            batch.append({
                "type": "buy" if i % 3 else "sell",
                "asset": "ETH",
                "amount": "0.1",
                "price": "1",
                "timestamp": (datetime(2023, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=i)).isoformat(),
            })
        added, errors = services.store.add_transactions(batch)
        assert errors == []
        assert len(added) == 1500

        # 1000 笔买入、500 笔卖出
        assert services.cost_basis.get_balance("ETH") == Decimal("50.0")
        assert services.cost_basis.get_balance("ETH") == Decimal("0.1") * 1000 - Decimal("0.1") * 500

    def test_lot_conservation(self):
        services = fresh_services()
        items = [d for d in self.random_transactions(seed=11, count=80) if d["type"] in ("buy", "sell")]
        added, _ = services.store.add_transactions(items)
        originals = {t.id: t.amount for t in added if t.type.value == "buy"}

        consumed = {}
        for disposal in services.cost_basis.disposals():
            for piece in disposal.slices:
                if piece.source_id is not None:
                    consumed[piece.source_id] = consumed.get(piece.source_id, Decimal("0")) + piece.amount

        assert consumed
        for source_id, amount in consumed.items():
            assert amount <= originals[source_id]
        services.close()



class TestConcurrentAccess:
    """多线程写入与读取"""

    def test_writers_and_readers(self):
        services = fresh_services()
        services.ledger.ensure_default_portfolio()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        writers, per_writer = 8, 50
        done = threading.Event()

        def write(worker: int):
            for i in range(per_writer):
                services.store.add_transaction({
                    "type": "buy", "asset": "BTC", "amount": "0.01", "price": str(100 + i),
                    "timestamp": (start + timedelta(minutes=worker * per_writer + i)).isoformat(),
                })

        def read():
            seen = 0
            while not done.is_set():
                balance = services.cost_basis.get_balance("BTC")
                assert balance >= 0
                services.cost_basis.positions()
                seen += 1
            return seen

        with ThreadPoolExecutor(max_workers=writers + 2) as executor:
            readers = [executor.submit(read) for _ in range(2)]
            futures = [executor.submit(write, w) for w in range(writers)]
            for f in futures:
                f.result()
            done.set()
            for f in readers:
                f.result()

        incremental = {a: (p.balance, lot_view(p)) for a, p in services.cost_basis.positions().items()}
        rebuilt = {a: (p.balance, lot_view(p)) for a, p in CostBasisEngine(services.ledger).rebuild().items()}
        assert incremental == rebuilt

        position = services.cost_basis.get_position("BTC")
        assert len(position.lots) == writers * per_writer
        assert position.balance == Decimal("4.00")
        assert [lot.acquired_at for lot in position.lots] == sorted(lot.acquired_at for lot in position.lots)
        services.close()


class MutatingPriceProvider(MarketPriceProvider):
    """查询价格时向账本追加一笔买入"""

    def __init__(self, price: str):
        self.price = Decimal(price)
        self.store = None

    def get_current_price(self, asset: str) -> Decimal:
        self.store.add_transaction({
            "type": "buy", "asset": asset, "amount": "1", "price": "1",
            "timestamp": "2024-06-01T00:00:00Z",
        })
        return self.price

    def get_historical_price(self, asset: str, timestamp: datetime):
        return self.get_current_price(asset)


class TestSnapshotConsistency:
    """估值期间账本被修改，结果仍对应查询开始时的快照"""

    @pytest.fixture
    def mutating(self, settings):
        provider = MutatingPriceProvider("20")
        services = build_services(
            settings, persistence=MemoryPersistence(), price_provider=provider, clock=TickingClock()
        )
        provider.store = services.store
        services.store.add_transaction({
            "type": "buy", "asset": "BTC", "amount": "1", "price": "10",
            "timestamp": "2024-01-01T00:00:00Z",
        })
        yield services
        services.close()

    def test_summary(self, mutating):
        revision = mutating.ledger.revision
        summary = mutating.valuation.get_portfolio_summary()

        assert summary.revision == revision
        assert summary.total_value == Decimal("20")
        assert summary.total_cost == Decimal("10")
        assert summary.assets[0].balance == Decimal("1")
        # 查询期间的写入已生效，只是不出现在本次结果中
        assert mutating.ledger.revision == revision + 1
        assert mutating.cost_basis.get_balance("BTC") == Decimal("2")

    def test_profit_loss(self, mutating):
        pl = mutating.valuation.get_profit_loss("BTC")

        assert pl.balance == Decimal("1")
        assert pl.current_value == Decimal("20")
        assert pl.cost_basis == Decimal("10")
        assert pl.unrealized == Decimal("10")

    def test_historical_value(self, mutating):
        summary = mutating.valuation.get_historical_value("2024-03-01T00:00:00Z")

        assert summary.total_value == Decimal("20")
        assert mutating.cost_basis.get_balance("BTC") == Decimal("2")

class TestExportImportRoundTrip:
    """导出再导入保留全部字段"""

    def test_csv(self, fifo_services):
        fifo_services.store.add_transaction({
            "type": "convert", "asset": "BTC", "amount": "0.25", "destAsset": "ETH", "destAmount": "4.125",
            "fee": "0.0001", "exchange": "Kraken", "tags": ["swap", "q1"], "description": "换仓",
            "timestamp": "2024-03-02T08:30:00Z",
        })
        content = fifo_services.importer.export_csv()
        df = pd.read_csv(io.StringIO(content), dtype=str, keep_default_na=False)

        target = fresh_services()
        target.ledger.ensure_default_portfolio()
        result = target.importer.import_dataframe(df, source="canonical")
        assert result.invalid_rows == []
        assert result.added == 5

        original = [t.to_dict() for t in fifo_services.store.get_transactions(descending=False)]
        restored = [t.to_dict() for t in target.store.get_transactions(descending=False)]
        assert restored == original
        assert target.cost_basis.get_balance("ETH") == Decimal("4.125")
        target.close()

    def test_json(self, fifo_services):
        content = fifo_services.importer.export_json()

        target = fresh_services()
        target.ledger.ensure_default_portfolio()
        result = target.importer.import_json(content)
        assert result.added == 4

        original = [t.to_dict() for t in fifo_services.store.get_transactions(descending=False)]
        restored = [t.to_dict() for t in target.store.get_transactions(descending=False)]
        assert restored == original
        target.close()
