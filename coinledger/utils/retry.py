"""重试机制

基于 tenacity 为外部协作方（行情、存储）提供统一的重试能力：
- 指数退避
- 只重试传输类异常，业务异常（如价格不可用）直接抛出
"""

import logging
from typing import Tuple, Type

from sqlalchemy.exc import OperationalError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

logger = logging.getLogger(__name__)

# 可重试的传输异常
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError, OSError)

# 可重试的存储异常
STORAGE_ERRORS: Tuple[Type[BaseException], ...] = (OSError, OperationalError)


# ============================================================
# 预定义重试策略
# ============================================================


def price_retrying(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 30,
) -> Retrying:
    """
    行情查询重试策略

    Args:
        max_attempts: 最大尝试次数
        min_wait: 最小等待时间(秒)
        max_wait: 最大等待时间(秒)
    """
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait or 1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def retry_storage(
    max_attempts: int = 3,
    wait_seconds: float = 0.2,
):
    """
    存储读写重试装饰器

    Args:
        max_attempts: 最大尝试次数
        wait_seconds: 固定等待时间(秒)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(wait_seconds),
        retry=retry_if_exception_type(STORAGE_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

