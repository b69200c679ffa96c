"""组合管理

- 组合可以任意创建，名称不要求唯一
- 始终恰好有一个默认组合；默认组合不可删除
- 删除组合时由调用方显式选择：迁移交易到目标组合，或连同交易一起清除
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from coinledger.account.errors import InvalidOperationError, NotFoundError, ValidationError
from coinledger.account.transaction import format_timestamp, parse_timestamp
from coinledger.utils.events import PortfolioDeleted, PortfolioSaved

if TYPE_CHECKING:
    from coinledger.account.ledger import Ledger

logger = logging.getLogger(__name__)

DEFAULT_PORTFOLIO_ID = "default"

_PORTFOLIO_KEYS = {
    "id": "id",
    "name": "name",
    "description": "description",
    "icon": "icon",
    "color": "color",
    "isDefault": "is_default",
    "is_default": "is_default",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}


@dataclass(frozen=True)
class Portfolio:
    """投资组合"""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    icon: str = ""
    color: str = ""
    is_default: bool = False

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("id", "组合 id 不能为空")
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("name", "组合名称不能为空")
        if not isinstance(self.is_default, bool):
            raise ValidationError("isDefault", "isDefault 必须是布尔值")
        for attr in ("description", "icon", "color"):
            if not isinstance(getattr(self, attr), str):
                raise ValidationError(attr, f"必须是字符串: {getattr(self, attr)!r}")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "created_at", parse_timestamp(self.created_at, "createdAt"))
        object.__setattr__(self, "updated_at", parse_timestamp(self.updated_at, "updatedAt"))

    def to_dict(self) -> Dict[str, Any]:
        """转换为规范字典"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "color": self.color,
            "isDefault": self.is_default,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }


def normalize_portfolio_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """规范键与 snake_case 键统一为字段名"""
    result: Dict[str, Any] = {}
    for key, value in data.items():
        attr = _PORTFOLIO_KEYS.get(key)
        if attr is not None:
            result[attr] = value
    return result


def portfolio_from_dict(data: Mapping[str, Any]) -> Portfolio:
    """由字典构造组合"""
    kwargs = normalize_portfolio_keys(data)
    for attr in ("id", "name", "created_at", "updated_at"):
        if kwargs.get(attr) in (None, ""):
            raise ValidationError(attr, "缺少必填字段")
    for attr in ("description", "icon", "color"):
        if kwargs.get(attr) is None:
            kwargs.pop(attr, None)
    return Portfolio(**kwargs)


@dataclass(frozen=True)
class PortfolioDeletion:
    """组合删除结果"""

    portfolio: Portfolio
    moved: int = 0
    purged: int = 0
    target_portfolio_id: Optional[str] = None


class PortfolioRegistry:
    """组合注册表"""

    def __init__(self, ledger: "Ledger"):
        self.ledger = ledger

    # ============================================================
    # 查询
    # ============================================================

    def get_portfolios(self) -> List[Portfolio]:
        """所有组合（创建顺序）"""
        return list(self.ledger.snapshot().portfolios)

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        """
        获取组合

        Raises:
            NotFoundError: 组合不存在
        """
        portfolio = self.ledger.snapshot().portfolio(portfolio_id)
        if portfolio is None:
            raise NotFoundError("portfolio", portfolio_id)
        return portfolio

    def get_default_portfolio(self) -> Portfolio:
        """获取默认组合，没有组合时自动创建"""
        return self.ledger.ensure_default_portfolio()

    # ============================================================
    # 保存
    # ============================================================

    def save_portfolio(self, data: Mapping[str, Any]) -> Portfolio:
        """
        创建或更新组合

        Args:
            data: 组合字段；带已存在的 id 为更新，否则为创建

        Returns:
            保存后的组合

        Raises:
            ValidationError: 字段非法
            InvalidOperationError: 试图取消当前默认组合的默认标记
        """
        fields = {k: v for k, v in normalize_portfolio_keys(data).items() if v is not None}
        fields.pop("created_at", None)
        fields.pop("updated_at", None)

        with self.ledger.mutation() as ledger:
            now = ledger.now()
            portfolio_id = fields.pop("id", None) or None
            existing = ledger.portfolio(portfolio_id) if portfolio_id else None
            wants_default = fields.get("is_default")

            if wants_default is not None and not isinstance(wants_default, bool):
                raise ValidationError("isDefault", "isDefault 必须是布尔值")

            if existing is not None:
                if existing.is_default and wants_default is False:
                    raise InvalidOperationError(
                        f"不能直接取消默认组合 {existing.id} 的默认标记，请将其他组合设为默认"
                    )
                portfolio = replace(existing, updated_at=now, **fields)
                created = False
            else:
                if not fields.get("name"):
                    raise ValidationError("name", "组合名称不能为空")
                is_first = not ledger.portfolios()
                fields["is_default"] = bool(wants_default) or is_first
                portfolio = Portfolio(
                    id=portfolio_id or uuid.uuid4().hex,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
                created = True

            if portfolio.is_default:
                for other in ledger.portfolios():
                    if other.id != portfolio.id and other.is_default:
                        ledger.put_portfolio(replace(other, is_default=False, updated_at=now))
                        logger.info(f"组合 {other.id} 取消默认，新默认组合: {portfolio.id}")

            ledger.put_portfolio(portfolio)
            ledger.emit(PortfolioSaved(portfolio=portfolio, created=created))

        logger.info(f"{'创建' if created else '更新'}组合: {portfolio.id} ({portfolio.name})")
        return portfolio

    # ============================================================
    # 删除
    # ============================================================

    def delete_portfolio(
        self,
        portfolio_id: str,
        move_transactions: bool = False,
        target_portfolio_id: Optional[str] = None,
    ) -> PortfolioDeletion:
        """
        删除组合

        注意：move_transactions 默认为 False，此时组合下的全部交易会被一并清除。

        Args:
            portfolio_id: 要删除的组合
            move_transactions: True 迁移交易，False 清除交易
            target_portfolio_id: 迁移目标，默认迁移到默认组合

        Raises:
            NotFoundError: 组合或目标组合不存在
            InvalidOperationError: 删除默认组合，或目标与被删组合相同
        """
        with self.ledger.mutation() as ledger:
            portfolio = ledger.portfolio(portfolio_id)
            if portfolio is None:
                raise NotFoundError("portfolio", portfolio_id)
            if portfolio.is_default:
                raise InvalidOperationError(f"不能删除默认组合: {portfolio_id}")

            dependents = [t for t in ledger.transactions() if t.portfolio_id == portfolio_id]
            moved = purged = 0
            target_id = None

            if move_transactions:
                target_id = target_portfolio_id or ledger.default_portfolio().id
                if target_id == portfolio_id:
                    raise InvalidOperationError("迁移目标不能是被删除的组合")
                if ledger.portfolio(target_id) is None:
                    raise NotFoundError("portfolio", target_id)

                now = ledger.now()
                for tx in dependents:
                    ledger.put_transaction(tx.evolve(portfolio_id=target_id, updated_at=now))
                moved = len(dependents)
            else:
                for tx in dependents:
                    ledger.remove_transaction(tx.id)
                purged = len(dependents)
                if purged:
                    logger.warning(f"删除组合 {portfolio_id} 未选择迁移，已清除 {purged} 笔交易")

            ledger.remove_portfolio(portfolio_id)
            ledger.emit(PortfolioDeleted(
                portfolio=portfolio,
                moved=moved,
                purged=purged,
                target_portfolio_id=target_id,
            ))

        logger.info(f"删除组合: {portfolio_id}, 迁移 {moved} 笔, 清除 {purged} 笔")
        return PortfolioDeletion(
            portfolio=portfolio,
            moved=moved,
            purged=purged,
            target_portfolio_id=target_id,
        )
