"""日志配置模块

- 标准库 logging 输出到 stderr，不混入命令输出
- 文件持久化，按大小或按天轮转
- 结构化 JSON 日志 (structlog)，标准库日志同样经过 structlog 渲染
- 上下文绑定与操作耗时记录
"""

import logging
import sys
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional

import structlog
from structlog.types import Processor

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================
# 处理器
# ============================================================


def _file_handler(
    path: Path,
    rotation: str = "size",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Handler:
    """按轮转方式创建文件处理器，rotation 为 size / time，其他值不轮转"""
    path.parent.mkdir(parents=True, exist_ok=True)
    if rotation == "size":
        return RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    if rotation == "time":
        handler = TimedRotatingFileHandler(
            path, when="midnight", interval=1, backupCount=backup_count, encoding="utf-8"
        )
        handler.suffix = "%Y-%m-%d"
        return handler
    return logging.FileHandler(path, encoding="utf-8")


def _install(handlers: List[logging.Handler], level: int, formatter: logging.Formatter) -> logging.Logger:
    """替换 root logger 的处理器"""
    root_logger = logging.getLogger()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    root_logger.handlers = handlers
    root_logger.setLevel(level)
    return root_logger


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_file: str = "coinledger.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    rotation: str = "size",
    console: bool = True,
    format_string: str = DEFAULT_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> logging.Logger:
    """
    配置全局日志（文本格式）

    Args:
        level: 日志级别
        log_dir: 日志目录，None 则不写文件
        log_file: 日志文件名
        max_bytes: 单文件最大大小（按大小轮转时）
        backup_count: 保留的备份文件数
        rotation: 轮转方式 "size" 或 "time"
        console: 是否输出到 stderr
        format_string: 日志格式
        date_format: 日期格式

    Returns:
        root logger
    """
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_dir:
        handlers.append(_file_handler(Path(log_dir) / log_file, rotation, max_bytes, backup_count))
    return _install(handlers, level, logging.Formatter(format_string, date_format))


def setup_logging_from_config(config) -> logging.Logger:
    """按 LoggingConfig 配置日志，structured 为真时输出 JSON"""
    log_dir = config.log_dir if config.log_to_file else None
    if config.structured:
        return configure_structlog(
            level=config.level.value,
            json_format=True,
            log_file=str(Path(log_dir) / config.log_file) if log_dir else None,
            console=config.console,
            rotation=config.rotation,
            max_bytes=config.max_bytes,
            backup_count=config.backup_count,
        )
    return setup_logging(
        level=getattr(logging, config.level.value),
        log_dir=str(log_dir) if log_dir else None,
        log_file=config.log_file,
        max_bytes=config.max_bytes,
        backup_count=config.backup_count,
        rotation=config.rotation,
        console=config.console,
    )


# ============================================================
# 结构化日志 (structlog)
# ============================================================


def configure_structlog(
    level: str = "INFO",
    json_format: bool = False,
    add_timestamp: bool = True,
    log_file: Optional[str] = None,
    console: bool = True,
    rotation: str = "size",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    配置结构化日志

    structlog 日志器与标准库 logger 共用同一组处理器，
    log_context 绑定的字段会出现在两者的每条记录里。

    Args:
        level: 日志级别
        json_format: JSON 输出，否则为便于阅读的键值格式
        add_timestamp: 是否添加 ISO 时间戳
        log_file: 日志文件路径
        console: 是否输出到 stderr
    """
    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=False)
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        handlers.append(_file_handler(Path(log_file), rotation, max_bytes, backup_count))
    return _install(handlers, getattr(logging, level.upper()), formatter)


def get_structlog(name: Optional[str] = None):
    """获取结构化日志器"""
    return structlog.get_logger(name)


@contextmanager
def log_context(**kwargs):
    """
    临时绑定上下文字段

    Example:
        with log_context(command="tax-report", year=2024):
            generate()
    """
    structlog.contextvars.bind_contextvars(**kwargs)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*kwargs)


# ============================================================
# 耗时记录
# ============================================================


def _emit(logger: Any, level: str, event: str, **fields) -> None:
    if isinstance(logger, logging.Logger):
        # 标准库 logger 不接受关键字字段，拼进消息
        detail = ", ".join(f"{k}={v}" for k, v in fields.items())
        logger.log(getattr(logging, level.upper()), f"{event} {detail}".strip())
    else:
        getattr(logger, level)(event, **fields)


@contextmanager
def log_duration(operation: str, logger: Optional[Any] = None, level: str = "info", **extra):
    """
    记录操作耗时，成功记为 <operation>_completed，异常记为 <operation>_failed 并继续抛出

    logger 可以是标准库 Logger 或 structlog 日志器，不传使用 structlog

    Example:
        with log_duration("ledger_replay", logger=logger, level="debug", portfolio=portfolio_id):
            state = replay(transactions)
    """
    if logger is None:
        logger = get_structlog()

    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        elapsed = round((time.perf_counter() - start) * 1000, 2)
        _emit(logger, "error", f"{operation}_failed", duration_ms=elapsed,
              error=str(e), error_type=type(e).__name__, **extra)
        raise
    elapsed = round((time.perf_counter() - start) * 1000, 2)
    _emit(logger, level, f"{operation}_completed", duration_ms=elapsed, **extra)
