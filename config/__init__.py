"""配置模块"""

from .base import (
    # 枚举
    StorageBackend,
    LogLevel,
    # 配置类
    LedgerConfig,
    StorageConfig,
    ImportConfig,
    PriceConfig,
    LoggingConfig,
    AppSettings,
    # 全局函数
    get_settings,
    reload_settings,
)

__all__ = [
    "StorageBackend",
    "LogLevel",
    "LedgerConfig",
    "StorageConfig",
    "ImportConfig",
    "PriceConfig",
    "LoggingConfig",
    "AppSettings",
    "get_settings",
    "reload_settings",
]
