"""数值精度策略

账本内所有数量与金额统一使用 Decimal：
- 计算上下文：34 位有效数字 (decimal128)，银行家舍入
- 非法运算、除零、溢出直接抛异常，不产生 NaN/Infinity
- 拒绝 float 输入，避免二进制浮点误差混入账本
- 报表输出统一量化到 MONEY_PLACES 位小数，存储值从不舍入
"""

from contextlib import contextmanager
from decimal import (
    ROUND_HALF_EVEN,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import Any, Iterable, Iterator

from coinledger.account.errors import ValidationError

LEDGER_PRECISION = 34
MONEY_PLACES = 8

ZERO = Decimal("0")
HUNDRED = Decimal("100")

LEDGER_CONTEXT = Context(
    prec=LEDGER_PRECISION,
    rounding=ROUND_HALF_EVEN,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)


@contextmanager
def ledger_context() -> Iterator[Context]:
    """在账本精度上下文中执行计算"""
    with localcontext(LEDGER_CONTEXT) as ctx:
        yield ctx


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    转换为 Decimal

    Args:
        value: Decimal / int / 数字字符串
        field: 出错时报告的字段名

    Raises:
        ValidationError: float、bool、空值或非有限数
    """
    if isinstance(value, bool):
        raise ValidationError(field, "不接受布尔值")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise ValidationError(field, "数值为空")
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValidationError(field, f"无法解析数值: {value!r}") from None
    elif isinstance(value, float):
        raise ValidationError(field, "不接受浮点数，请使用字符串或 Decimal")
    else:
        raise ValidationError(field, f"不支持的数值类型: {type(value).__name__}")

    if not result.is_finite():
        raise ValidationError(field, f"数值必须为有限数: {value!r}")
    return result


def quantize_money(value: Decimal, places: int = MONEY_PLACES) -> Decimal:
    """量化为报表精度

    整数位较多时放宽有效位数，保证量化结果仍保留 places 位小数
    """
    quantum = _MONEY_QUANTUM if places == MONEY_PLACES else Decimal(1).scaleb(-places)
    with ledger_context() as ctx:
        ctx.prec = max(LEDGER_PRECISION, value.adjusted() + places + 2)
        return value.quantize(quantum)


def dsum(values: Iterable[Decimal]) -> Decimal:
    """在账本上下文中精确求和"""
    total = ZERO
    with ledger_context():
        for v in values:
            total += v
    return total


def format_decimal(value: Decimal) -> str:
    """规范化为不带指数的字符串"""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
