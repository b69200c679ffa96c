"""集成测试

测试各模块协同工作：
- 配置 -> SQLite 存储 -> 账本重新加载
- 命令行 -> 服务装配 -> 交易 / 组合 / 导入导出 / 估值 / 税务
"""

import logging
from decimal import Decimal
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from config.base import AppSettings
from coinledger.account.services import build_services
from coinledger.cli.app import app


# ============================================================
# Fixtures
# ============================================================


@pytest.fixture(autouse=True)
def restore_root_logger():
    """命令行会重置 root logger，测试后恢复"""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def write_config(directory: Path, name: str = "ledger") -> Path:
    """写一份使用 SQLite 存储的配置文件"""
    path = directory / f"{name}.yaml"
    data = {
        "storage": {"backend": "sqlite", "sqlite_path": str(directory / f"{name}.db")},
        "prices": {"max_attempts": 1, "min_wait": 0, "max_wait": 0},
        "logging": {"console": False},
    }
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def config_file(tmp_path) -> Path:
    return write_config(tmp_path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli(runner, config_file):
    """带 --config 调用命令行"""
    def invoke(*args):
        return runner.invoke(app, ["--config", str(config_file), *args])
    return invoke


def open_ledger(config_file: Path):
    return build_services(AppSettings.from_yaml(config_file))


# ============================================================
# 存储集成
# ============================================================


class TestSqliteReload:
    """SQLite 账本跨实例持久化"""

    def test_reload(self, config_file):
        first = open_ledger(config_file)
        first.portfolios.save_portfolio({"id": "cold", "name": "冷钱包"})
        first.store.add_transaction({
            "type": "buy", "asset": "BTC", "amount": "0.12345678", "price": "43210.99",
            "timestamp": "2024-01-01T00:00:00Z", "portfolioId": "cold", "tags": ["dca"],
        })
        saved = first.store.get_transactions()
        first.close()

        second = open_ledger(config_file)
        assert second.store.get_transactions() == saved
        assert [(p.id, p.is_default) for p in second.portfolios.get_portfolios()] == [("cold", True)]
        assert second.cost_basis.get_balance("BTC", "cold") == Decimal("0.12345678")
        assert second.ledger.revision == 0
        second.close()

    def test_deletion_persisted(self, config_file):
        services = open_ledger(config_file)
        tx = services.store.add_transaction({
            "type": "airdrop", "asset": "UNI", "amount": "400", "price": "3",
            "timestamp": "2024-01-01T00:00:00Z",
        })
        services.store.delete_transaction(tx.id)
        services.close()

        reopened = open_ledger(config_file)
        assert reopened.store.get_transactions() == []
        assert reopened.cost_basis.get_balance("UNI") == Decimal("0")
        reopened.close()


# ============================================================
# 命令行集成
# ============================================================


class TestCli:
    """命令行端到端"""

    def add_fifo_history(self, cli):
        for day, price in ((1, "10000"), (2, "20000"), (3, "30000")):
            result = cli("tx", "add", "--type", "buy", "--asset", "btc", "--amount", "1",
                         "--price", price, "--date", f"2023-01-0{day}T00:00:00Z")
            assert result.exit_code == 0, result.output
            assert "已新增交易" in result.output
        result = cli("tx", "add", "-t", "sell", "-a", "BTC", "-n", "1.5", "-p", "40000",
                     "-d", "2024-03-01T00:00:00Z", "--tag", "exit")
        assert result.exit_code == 0, result.output

    def test_version(self, cli):
        result = cli("version")
        assert result.exit_code == 0
        assert "CoinLedger" in result.output

    def test_transactions_and_balance(self, cli, config_file):
        self.add_fifo_history(cli)

        result = cli("tx", "list", "--asset", "BTC")
        assert result.exit_code == 0
        assert "4 笔" in result.output

        result = cli("tx", "list", "--type", "sell", "--tag", "exit")
        assert result.exit_code == 0
        assert "1 笔" in result.output

        result = cli("balance")
        assert result.exit_code == 0
        assert "BTC" in result.output

        services = open_ledger(config_file)
        position = services.cost_basis.get_position("BTC")
        assert position.balance == Decimal("1.5")
        assert position.open_cost == Decimal("40000")
        services.close()

    def test_update_and_delete(self, cli, config_file):
        self.add_fifo_history(cli)
        services = open_ledger(config_file)
        sell = services.store.get_transactions(type="sell")[0]
        services.close()

        result = cli("tx", "update", sell.id, "--set", "amount=1", "--set", "tags=a;b")
        assert result.exit_code == 0, result.output

        services = open_ledger(config_file)
        updated = services.store.get_transaction(sell.id)
        assert updated.amount == Decimal("1")
        assert list(updated.tags) == ["a", "b"]
        services.close()

        assert cli("tx", "update", sell.id, "--set", "amount").exit_code == 2
        assert cli("tx", "delete", sell.id, "--yes").exit_code == 0
        assert cli("tx", "delete", sell.id, "--yes").exit_code == 1

    def test_validation_error_reported(self, cli, config_file):
        result = cli("tx", "add", "--type", "convert", "--asset", "ETH", "--amount", "1", "--to-amount", "0.05")
        assert result.exit_code == 1
        assert "ValidationError" in result.output

        services = open_ledger(config_file)
        assert services.store.get_transactions() == []
        services.close()

    def test_portfolio_commands(self, cli, config_file):
        self.add_fifo_history(cli)
        assert cli("portfolio", "save", "--name", "冷钱包", "--id", "cold").exit_code == 0
        result = cli("tx", "add", "-t", "transfer_in", "-a", "ETH", "-n", "2", "--portfolio", "cold",
                     "-d", "2024-01-01T00:00:00Z")
        assert result.exit_code == 0, result.output

        result = cli("portfolio", "list")
        assert result.exit_code == 0
        assert "cold" in result.output

        # 必须二选一
        assert cli("portfolio", "delete", "cold").exit_code == 2
        assert cli("portfolio", "delete", "cold", "--move-to", "default", "--purge").exit_code == 2

        # 默认组合不能删除
        assert cli("portfolio", "delete", "default", "--purge").exit_code == 1

        result = cli("portfolio", "delete", "cold", "--move-to", "default")
        assert result.exit_code == 0, result.output

        services = open_ledger(config_file)
        assert [p.id for p in services.portfolios.get_portfolios()] == ["default"]
        assert services.cost_basis.get_balance("ETH", "default") == Decimal("2")
        services.close()

    def test_export_import(self, cli, runner, tmp_path, config_file):
        self.add_fifo_history(cli)
        output = tmp_path / "export.csv"
        result = cli("export", "--output", str(output))
        assert result.exit_code == 0, result.output
        assert output.read_text(encoding="utf-8").startswith("Date,Type,Coin")

        other = tmp_path / "other"
        other.mkdir()
        other_config = write_config(other, "other")
        result = runner.invoke(app, ["--config", str(other_config), "portfolio", "save", "--id", "default", "--name", "Main Portfolio"])
        assert result.exit_code == 0, result.output
        result = runner.invoke(app, ["--config", str(other_config), "import", str(output), "--source", "canonical"])
        assert result.exit_code == 0, result.output

        source = open_ledger(config_file)
        target = open_ledger(other_config)
        assert target.store.get_transactions() == source.store.get_transactions()
        source.close()
        target.close()

        assert cli("export", "--format", "xml").exit_code == 2

    def test_import_exchange_rows(self, cli, tmp_path, config_file):
        path = tmp_path / "binance.csv"
        path.write_text(
            "Date(UTC),Operation,Coin,Amount,Price,Fee\n"
            "2024-01-05 10:00:00,Buy,BTC,0.5,40000,0.0005\n"
            "2024-01-06 10:00:00,Hold,BTC,0.5,40000,0\n",
            encoding="utf-8",
        )
        result = cli("import", str(path), "--source", "binance")
        assert result.exit_code == 0, result.output
        assert "失败行" in result.output

        services = open_ledger(config_file)
        transactions = services.store.get_transactions()
        assert len(transactions) == 1
        assert transactions[0].exchange == "Binance"
        services.close()

    def test_summary_and_reports(self, cli, tmp_path):
        self.add_fifo_history(cli)
        cli("tx", "add", "-t", "staking_reward", "-a", "SOL", "-n", "10", "-p", "100", "-d", "2024-05-01T00:00:00Z")

        prices = tmp_path / "prices.csv"
        prices.write_text("asset,price\nBTC,50000\n", encoding="utf-8")
        result = cli("summary", "--prices", str(prices))
        assert result.exit_code == 0, result.output
        assert "总市值" in result.output
        assert "SOL" in result.output

        result = cli("tax-report", "2024", "--details")
        assert result.exit_code == 0, result.output
        assert "税务报告" in result.output

        result = cli("stats", "--period", "all")
        assert result.exit_code == 0, result.output
        assert "交易总数" in result.output

    def test_config_command(self, cli):
        result = cli("config")
        assert result.exit_code == 0
        assert "sqlite" in result.output
