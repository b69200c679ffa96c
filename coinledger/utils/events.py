"""事件总线模块

账本写入成功后按顺序发布变更事件：
- 交易增删改、批量导入、组合保存与删除、账本清空
- 派生状态缓存（成本核算）据此失效或增量更新
- 订阅父类事件即收到全部子类事件

投递是同步且有序的：同一次写入产生的事件按登记顺序发布，
订阅方可以用 revision 判断是否漏收。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from itertools import count
from threading import RLock
from typing import Any, Callable, List, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# 事件定义
# ============================================================


@dataclass
class Event:
    """事件基类"""
    timestamp: datetime = field(default_factory=_now)
    source: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


@dataclass
class LedgerEvent(Event):
    """账本变更事件

    revision 为本次写入后的账本版本号，由账本在发布前填写
    """
    revision: int = 0


@dataclass
class TransactionAdded(LedgerEvent):
    """交易新增"""
    transaction: Any = None


@dataclass
class TransactionUpdated(LedgerEvent):
    """交易修改"""
    transaction: Any = None
    previous: Any = None


@dataclass
class TransactionDeleted(LedgerEvent):
    """交易删除"""
    transaction: Any = None


@dataclass
class TransactionsImported(LedgerEvent):
    """批量导入完成"""
    portfolio_id: str = ""
    added: int = 0
    invalid: int = 0


@dataclass
class PortfolioSaved(LedgerEvent):
    """组合保存"""
    portfolio: Any = None
    created: bool = False


@dataclass
class PortfolioDeleted(LedgerEvent):
    """组合删除"""
    portfolio: Any = None
    moved: int = 0
    purged: int = 0
    target_portfolio_id: Optional[str] = None


@dataclass
class LedgerCleared(LedgerEvent):
    """账本清空"""
    transactions: int = 0
    portfolios: int = 0


# ============================================================
# 订阅
# ============================================================


class Priority(IntEnum):
    """订阅优先级，数值小的先执行"""
    HIGHEST = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3
    LOWEST = 4


@dataclass
class EventHandler:
    """一条订阅"""
    event_type: Type[Event]
    callback: Callable[[Event], None]
    priority: Priority = Priority.NORMAL
    filter_fn: Optional[Callable[[Event], bool]] = None
    once: bool = False
    seq: int = 0

    def matches(self, event: Event) -> bool:
        if not isinstance(event, self.event_type):
            return False
        return self.filter_fn is None or bool(self.filter_fn(event))

    @property
    def name(self) -> str:
        return getattr(self.callback, "__qualname__", repr(self.callback))


# ============================================================
# 事件总线
# ============================================================


class EventBus:
    """同步事件总线

    处理器异常只记录日志，不影响其他处理器，也不回传给发布方
    （发布时账本写入已经完成）。
    """

    def __init__(self):
        self._handlers: List[EventHandler] = []
        self._seq = count()
        self._lock = RLock()

    def subscribe(
        self,
        event_type: Type[E],
        callback: Callable[[E], None],
        priority: Priority = Priority.NORMAL,
        filter_fn: Optional[Callable[[E], bool]] = None,
        once: bool = False,
    ) -> "EventBus":
        """
        订阅事件

        同优先级按订阅顺序执行。

        Example:
            bus.subscribe(TransactionAdded, on_added)
            bus.subscribe(LedgerEvent, on_change, priority=Priority.HIGHEST)
        """
        with self._lock:
            self._handlers.append(EventHandler(
                event_type=event_type,
                callback=callback,
                priority=priority,
                filter_fn=filter_fn,
                once=once,
                seq=next(self._seq),
            ))
            self._handlers.sort(key=lambda h: (h.priority, h.seq))
        return self

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Event], None]) -> bool:
        """取消一条订阅，找不到返回 False"""
        with self._lock:
            for i, h in enumerate(self._handlers):
                if h.event_type is event_type and h.callback == callback:
                    del self._handlers[i]
                    return True
        return False

    def publish(self, event: Event) -> int:
        """
        发布事件

        Returns:
            实际执行的处理器数
        """
        with self._lock:
            handlers = [h for h in self._handlers if h.matches(event)]
            for h in handlers:
                if h.once:
                    self._handlers.remove(h)

        if not handlers:
            logger.debug(f"事件 {event.event_type} 无处理器")
            return 0

        for handler in handlers:
            try:
                handler.callback(event)
            except Exception:
                logger.error(f"事件处理器 {handler.name} 处理 {event.event_type} 失败", exc_info=True)
        return len(handlers)
