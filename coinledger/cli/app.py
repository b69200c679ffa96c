"""CoinLedger CLI 主入口

使用 Typer 构建命令行接口
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from coinledger.account.amount import format_decimal, quantize_money
from coinledger.account.errors import LedgerError

# 创建 Typer 应用
app = typer.Typer(
    name="coinledger",
    help="CoinLedger - 加密资产交易账本与成本核算",
    add_completion=False,
)

console = Console()
logger = logging.getLogger(__name__)

__version__ = "0.1.0"

_state: Dict[str, Any] = {"config": None, "command": None}


def _settings():
    from config.base import AppSettings, get_settings

    path = _state["config"]
    if path is None:
        return get_settings()
    if path.suffix.lower() == ".json":
        return AppSettings.from_json(path)
    return AppSettings.from_yaml(path)


@contextmanager
def _open_services(price_provider=None):
    """打开账本服务，业务异常转为友好提示并以状态码 1 退出"""
    from coinledger.account.services import build_services
    from coinledger.utils.logging import log_context, log_duration

    try:
        services = build_services(_settings(), price_provider=price_provider)
    except LedgerError as e:
        console.print(f"[red]加载账本失败: {e}[/red]")
        raise typer.Exit(1)

    try:
        with log_context(command=_state["command"]), log_duration("command", logger=logger, level="debug"):
            yield services
    except LedgerError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1)
    finally:
        services.close()


def _money(value) -> str:
    if value is None:
        return "-"
    return format_decimal(quantize_money(value))


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="配置文件 (YAML/JSON)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
    json_logs: bool = typer.Option(False, "--json-logs", help="结构化 JSON 日志"),
):
    """CoinLedger - 加密资产交易账本与成本核算"""
    from coinledger.utils.logging import setup_logging_from_config

    _state["config"] = config
    _state["command"] = ctx.invoked_subcommand
    logging_config = _settings().logging
    if json_logs:
        logging_config = logging_config.model_copy(update={"structured": True})
    setup_logging_from_config(logging_config)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        for handler in logging.getLogger().handlers:
            handler.setLevel(logging.DEBUG)


# ============================================================
# 交易命令组
# ============================================================

tx_app = typer.Typer(help="交易管理命令")
app.add_typer(tx_app, name="tx")


def _transaction_table(transactions, title: str) -> Table:
    table = Table(title=title)
    table.add_column("日期", style="cyan")
    table.add_column("类型")
    table.add_column("资产", style="bold")
    table.add_column("数量", justify="right")
    table.add_column("单价", justify="right")
    table.add_column("手续费", justify="right")
    table.add_column("组合")
    table.add_column("ID", style="dim")

    for t in transactions:
        amount = format_decimal(t.amount)
        if t.type.value == "convert":
            amount = f"{amount} → {format_decimal(t.dest_amount)} {t.dest_asset}"
        table.add_row(
            t.timestamp.strftime("%Y-%m-%d %H:%M"),
            t.type.value,
            t.asset,
            amount,
            _money(t.price),
            _money(t.fee),
            t.portfolio_id,
            t.id,
        )
    return table


@tx_app.command("add")
def tx_add(
    tx_type: str = typer.Option(..., "--type", "-t", help="交易类型，如 buy / sell / convert"),
    asset: str = typer.Option(..., "--asset", "-a", help="资产代码"),
    amount: str = typer.Option(..., "--amount", "-n", help="数量"),
    price: Optional[str] = typer.Option(None, "--price", "-p", help="单价"),
    fee: Optional[str] = typer.Option(None, "--fee", help="手续费"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="时间 (ISO-8601)，默认当前"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合 id，默认组合"),
    exchange: str = typer.Option("", "--exchange", "-e", help="交易所"),
    description: str = typer.Option("", "--description", help="备注"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="标签，可重复"),
    dest_asset: Optional[str] = typer.Option(None, "--to-asset", help="兑换目标资产"),
    dest_amount: Optional[str] = typer.Option(None, "--to-amount", help="兑换目标数量"),
):
    """新增交易"""
    data = {
        "type": tx_type,
        "asset": asset,
        "amount": amount,
        "price": price,
        "fee": fee,
        "timestamp": date,
        "portfolioId": portfolio,
        "exchange": exchange,
        "description": description,
        "tags": tags or [],
        "destAsset": dest_asset,
        "destAmount": dest_amount,
    }
    with _open_services() as services:
        tx = services.store.add_transaction({k: v for k, v in data.items() if v is not None})
    console.print(f"[green]已新增交易[/green] {tx.id}: {tx.type.value} {format_decimal(tx.amount)} {tx.asset}")


@tx_app.command("list")
def tx_list(
    asset: Optional[str] = typer.Option(None, "--asset", "-a", help="资产"),
    tx_type: Optional[List[str]] = typer.Option(None, "--type", "-t", help="交易类型，可重复"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合 id"),
    exchange: Optional[str] = typer.Option(None, "--exchange", "-e", help="交易所"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="标签，命中任意一个即可"),
    date_from: Optional[str] = typer.Option(None, "--from", help="开始日期"),
    date_to: Optional[str] = typer.Option(None, "--to", help="结束日期（含当天）"),
    sort_by: str = typer.Option("timestamp", "--sort", help="排序字段"),
    ascending: bool = typer.Option(False, "--asc", help="升序"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="最多显示条数"),
):
    """查询交易"""
    from datetime import date as date_cls

    from coinledger.account.store import TransactionFilter

    def as_date(value: Optional[str]):
        if value and len(value) == 10:
            return date_cls.fromisoformat(value)
        return value

    filters = TransactionFilter(
        asset=asset,
        type=tx_type or None,
        portfolio_id=portfolio,
        exchange=exchange,
        tags=tags or None,
        date_from=as_date(date_from),
        date_to=as_date(date_to),
        sort_by=sort_by,
        descending=not ascending,
        limit=limit,
    )
    with _open_services() as services:
        transactions = services.store.get_transactions(filters)

    if not transactions:
        console.print("[yellow]没有符合条件的交易[/yellow]")
        return
    console.print(_transaction_table(transactions, f"交易 ({len(transactions)} 笔)"))


@tx_app.command("update")
def tx_update(
    tx_id: str = typer.Argument(..., help="交易 id"),
    changes: List[str] = typer.Option(..., "--set", "-s", help="修改字段 key=value，可重复"),
):
    """修改交易"""
    patch = {}
    for item in changes:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]格式错误: {item!r}，应为 key=value[/red]")
            raise typer.Exit(2)
        patch[key.strip()] = value
    if "tags" in patch:
        patch["tags"] = [t for t in patch["tags"].split(";") if t]

    with _open_services() as services:
        tx = services.store.update_transaction(tx_id, patch)
    console.print(f"[green]已修改交易[/green] {tx.id}")


@tx_app.command("delete")
def tx_delete(
    tx_id: str = typer.Argument(..., help="交易 id"),
    confirm: bool = typer.Option(False, "--yes", "-y", help="确认删除"),
):
    """删除交易"""
    if not confirm:
        if not typer.confirm(f"确定要删除交易 {tx_id} 吗？"):
            raise typer.Abort()

    with _open_services() as services:
        services.store.delete_transaction(tx_id)
    console.print(f"[green]已删除交易[/green] {tx_id}")


# ============================================================
# 组合命令组
# ============================================================

portfolio_app = typer.Typer(help="组合管理命令")
app.add_typer(portfolio_app, name="portfolio")


@portfolio_app.command("list")
def portfolio_list():
    """列出组合"""
    with _open_services() as services:
        portfolios = services.portfolios.get_portfolios()
        counts = {}
        for t in services.ledger.transactions():
            counts[t.portfolio_id] = counts.get(t.portfolio_id, 0) + 1

    table = Table(title="组合")
    table.add_column("ID", style="cyan")
    table.add_column("名称", style="bold")
    table.add_column("默认")
    table.add_column("交易数", justify="right")
    table.add_column("描述")

    for p in portfolios:
        table.add_row(p.id, p.name, "✓" if p.is_default else "", str(counts.get(p.id, 0)), p.description)
    console.print(table)


@portfolio_app.command("save")
def portfolio_save(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="名称（新建时必填）"),
    portfolio_id: Optional[str] = typer.Option(None, "--id", help="组合 id，已存在则更新"),
    description: Optional[str] = typer.Option(None, "--description", help="描述"),
    make_default: bool = typer.Option(False, "--default", help="设为默认组合"),
):
    """创建或更新组合"""
    data = {
        "id": portfolio_id,
        "name": name,
        "description": description,
        "isDefault": True if make_default else None,
    }
    with _open_services() as services:
        portfolio = services.portfolios.save_portfolio(data)
    suffix = " (默认)" if portfolio.is_default else ""
    console.print(f"[green]已保存组合[/green] {portfolio.id}: {portfolio.name}{suffix}")


@portfolio_app.command("delete")
def portfolio_delete(
    portfolio_id: str = typer.Argument(..., help="组合 id"),
    move_to: Optional[str] = typer.Option(None, "--move-to", help="把交易迁移到该组合"),
    purge: bool = typer.Option(False, "--purge", help="同时删除组合下全部交易"),
):
    """删除组合，必须显式选择 --move-to 或 --purge"""
    if (move_to is None) == (not purge):
        console.print("[red]请选择 --move-to <组合> 迁移交易，或 --purge 删除交易（二选一）[/red]")
        raise typer.Exit(2)

    with _open_services() as services:
        result = services.portfolios.delete_portfolio(
            portfolio_id,
            move_transactions=move_to is not None,
            target_portfolio_id=move_to,
        )

    if result.moved:
        console.print(f"[green]已删除组合[/green] {portfolio_id}，{result.moved} 笔交易迁移到 {result.target_portfolio_id}")
    elif result.purged:
        console.print(f"[yellow]已删除组合 {portfolio_id}，同时删除 {result.purged} 笔交易[/yellow]")
    else:
        console.print(f"[green]已删除组合[/green] {portfolio_id}")


# ============================================================
# 导入导出
# ============================================================


@app.command("import")
def import_file(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV 或 JSON 文件"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="来源: binance/coinbase/kraken/canonical/generic"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="导入到的组合"),
    date_format: Optional[str] = typer.Option(None, "--date-format", help="YYYY-MM-DD / MM/DD/YYYY / DD/MM/YYYY"),
):
    """导入交易"""
    with _open_services() as services:
        if path.suffix.lower() == ".json":
            result = services.importer.import_json(path.read_text(encoding="utf-8"), portfolio_id=portfolio)
        else:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
            result = services.importer.import_dataframe(df, source, portfolio, date_format)

    table = Table(title="导入结果")
    table.add_column("指标", style="cyan")
    table.add_column("值", style="green")
    table.add_row("总行数", str(result.total))
    table.add_row("成功", str(result.added))
    table.add_row("失败", str(result.invalid))
    console.print(table)

    if result.invalid_rows:
        errors = Table(title="失败行")
        errors.add_column("行", justify="right")
        errors.add_column("字段", style="cyan")
        errors.add_column("原因", style="red")
        for bad in result.invalid_rows:
            errors.add_row(str(bad.row), bad.field or "-", bad.reason)
        console.print(errors)


@app.command("export")
def export_file(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出文件，不传输出到终端"),
    fmt: str = typer.Option("csv", "--format", "-f", help="csv / json"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合，默认全部"),
):
    """导出交易"""
    if fmt not in ("csv", "json"):
        console.print(f"[red]不支持的格式: {fmt}，可选: csv, json[/red]")
        raise typer.Exit(2)

    with _open_services() as services:
        if fmt == "csv":
            content = services.importer.export_csv(portfolio_id=portfolio)
        else:
            content = services.importer.export_json(portfolio_id=portfolio)

    if output is None:
        typer.echo(content, nl=False)
    else:
        output.write_text(content, encoding="utf-8")
        console.print(f"[green]已导出到[/green] {output}")


# ============================================================
# 持仓与估值
# ============================================================


@app.command("balance")
def balance(
    asset: Optional[str] = typer.Argument(None, help="资产，不传列出全部持仓"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合，默认全部"),
):
    """查看余额与成本"""
    with _open_services() as services:
        if asset:
            positions = {asset.upper(): services.cost_basis.get_position(asset, portfolio)}
        else:
            positions = services.cost_basis.positions(portfolio)

    table = Table(title=f"持仓 ({portfolio or '全部组合'})")
    table.add_column("资产", style="cyan")
    table.add_column("余额", justify="right")
    table.add_column("买入均价", justify="right")
    table.add_column("持仓成本", justify="right")
    table.add_column("批次", justify="right")
    table.add_column("未覆盖", justify="right")

    for symbol, pos in sorted(positions.items()):
        if not asset and pos.balance == 0:
            continue
        table.add_row(
            symbol,
            format_decimal(pos.balance),
            _money(pos.average_cost),
            _money(pos.open_cost),
            str(len(pos.lots)),
            format_decimal(pos.uncovered) if pos.uncovered else "",
        )
    console.print(table)


@app.command("summary")
def summary(
    prices: Path = typer.Option(..., "--prices", exists=True, dir_okay=False, help="价格表 CSV (asset, price)"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合，默认全部"),
):
    """组合估值汇总"""
    from coinledger.data.prices import StaticPriceProvider

    provider = StaticPriceProvider.from_csv(prices)
    with _open_services(price_provider=provider) as services:
        result = services.valuation.get_portfolio_summary(portfolio)

    table = Table(title=f"组合汇总 ({portfolio or '全部组合'})")
    table.add_column("资产", style="cyan")
    table.add_column("余额", justify="right")
    table.add_column("买入均价", justify="right")
    table.add_column("价格", justify="right")
    table.add_column("市值", justify="right")
    table.add_column("成本", justify="right")
    table.add_column("浮动盈亏", justify="right")
    table.add_column("占比", justify="right")

    for a in result.assets:
        if not a.price_available:
            table.add_row(
                a.asset, format_decimal(a.balance), _money(a.average_cost),
                "[yellow]无报价[/yellow]", "-", _money(a.cost), "-", "-",
            )
            continue
        color = "green" if a.unrealized >= 0 else "red"
        table.add_row(
            a.asset,
            format_decimal(a.balance),
            _money(a.average_cost),
            _money(a.price),
            _money(a.value),
            _money(a.cost),
            f"[{color}]{_money(a.unrealized)}[/{color}]",
            f"{quantize_money(a.allocation, 2)}%",
        )
    console.print(table)
    console.print(
        f"总市值 {_money(result.total_value)}  总成本 {_money(result.total_cost)}  "
        f"浮动盈亏 {_money(result.total_unrealized)}  已实现 {_money(result.total_realized)}  "
        f"总盈亏 {_money(result.total_profit_loss)}"
    )
    if result.unavailable:
        console.print(f"[yellow]以下资产无报价，未计入合计: {', '.join(result.unavailable)}[/yellow]")


@app.command("tax-report")
def tax_report(
    year: int = typer.Argument(..., help="年份"),
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合，默认全部"),
    details: bool = typer.Option(False, "--details", help="显示卖出明细"),
):
    """年度税务报告"""
    with _open_services() as services:
        report = services.tax.generate_tax_report(year, portfolio)

    table = Table(title=f"{year} 年税务报告")
    table.add_column("指标", style="cyan")
    table.add_column("值", justify="right", style="green")
    labels = {
        "proceeds": "卖出收入",
        "cost_basis": "成本",
        "short_term_gain": "短期损益",
        "long_term_gain": "长期损益",
        "total_gain": "已实现损益",
        "income": "收入",
        "expenses": "费用",
        "net": "净额",
    }
    numbers = report.summary()
    table.add_row("卖出笔数", str(numbers["sales"]))
    for key, label in labels.items():
        table.add_row(label, _money(numbers[key]))
    console.print(table)

    if report.by_asset:
        assets = Table(title="按资产")
        for column in ("资产", "卖出收入", "成本", "短期", "长期", "收入", "费用"):
            assets.add_column(column, justify="left" if column == "资产" else "right")
        for s in report.by_asset.values():
            assets.add_row(
                s.asset, _money(s.proceeds), _money(s.cost_basis), _money(s.short_term_gain),
                _money(s.long_term_gain), _money(s.income), _money(s.expenses),
            )
        console.print(assets)

    if details and report.sales:
        sales = Table(title="卖出明细")
        for column in ("卖出日期", "资产", "数量", "买入日期", "持有天数", "期限", "损益"):
            sales.add_column(column)
        for s in report.sales:
            sales.add_row(
                s.sold_at.strftime("%Y-%m-%d"),
                s.asset,
                format_decimal(s.amount),
                s.acquired_at.strftime("%Y-%m-%d") if s.acquired_at else "-",
                str(s.holding_days) if s.holding_days is not None else "-",
                s.term.value,
                _money(s.gain),
            )
        console.print(sales)

    for warning in report.warnings:
        console.print(f"[yellow]{warning}[/yellow]")


@app.command("stats")
def stats(
    portfolio: Optional[str] = typer.Option(None, "--portfolio", help="组合，默认全部"),
    period: str = typer.Option("all", "--period", help="all / month / year"),
):
    """交易统计"""
    with _open_services() as services:
        result = services.store.get_transaction_stats(portfolio, period)

    console.print(f"[bold]交易总数:[/bold] {result['total_transactions']}")
    if not result["total_transactions"]:
        return

    table = Table(title="按类型")
    table.add_column("类型", style="cyan")
    table.add_column("笔数", justify="right")
    table.add_column("成交额", justify="right")
    for tx_type, count in sorted(result["by_type"].items()):
        table.add_row(tx_type, str(count), _money(result["volume_by_type"].get(tx_type)))
    console.print(table)

    table = Table(title="按资产成交额")
    table.add_column("资产", style="cyan")
    table.add_column("成交额", justify="right")
    for symbol, volume in sorted(result["volume_by_asset"].items()):
        table.add_row(symbol, _money(volume))
    console.print(table)


# ============================================================
# 系统命令
# ============================================================


@app.command("version")
def version():
    """显示版本信息"""
    console.print(f"[bold]CoinLedger[/bold] v{__version__}")
    console.print("加密资产交易账本与成本核算")


@app.command("config")
def show_config():
    """显示当前配置"""
    try:
        settings = _settings()
    except (OSError, ValueError) as e:
        console.print(f"[red]加载配置失败: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="当前配置")
    table.add_column("配置项", style="cyan")
    table.add_column("值", style="green")

    table.add_row("存储后端", settings.storage.backend.value)
    table.add_row("SQLite 路径", str(settings.storage.sqlite_path))
    table.add_row("JSON 目录", str(settings.storage.json_dir))
    table.add_row("命名空间", settings.ledger.namespace)
    table.add_row("默认法币", settings.ledger.default_fiat)
    table.add_row("长期持有天数", str(settings.ledger.long_term_days))
    table.add_row("导入来源", settings.importer.default_source)
    table.add_row("日期格式", settings.importer.date_format)
    table.add_row("日志级别", settings.logging.level.value)

    console.print(table)


# ============================================================
# 入口点
# ============================================================


def main():
    """CLI 入口点"""
    app()


if __name__ == "__main__":
    main()
