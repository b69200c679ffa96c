"""Pydantic 配置基类

使用 Pydantic 进行配置校验，支持：
- 类型自动转换
- 值范围校验
- 环境变量加载 (COINLEDGER_ 前缀，嵌套用 __ 分隔)
- 配置文件加载 (YAML/JSON)
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================
# 枚举类型
# ============================================================


class StorageBackend(str, Enum):
    """存储后端"""
    MEMORY = "memory"
    JSON = "json"
    SQLITE = "sqlite"


class LogLevel(str, Enum):
    """日志级别"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================
# 配置模型
# ============================================================


class LedgerConfig(BaseModel):
    """账本配置"""

    namespace: str = Field(default="coinledger", min_length=1)
    default_fiat: str = Field(default="USD", min_length=3, max_length=5)
    default_portfolio_name: str = Field(default="Main Portfolio", min_length=1)

    # 长期持有阈值（天），税务报告使用
    long_term_days: int = Field(default=365, ge=1)

    @field_validator("default_fiat")
    @classmethod
    def upper_fiat(cls, v: str) -> str:
        return v.strip().upper()


class StorageConfig(BaseModel):
    """存储配置"""

    backend: StorageBackend = Field(default=StorageBackend.SQLITE)
    json_dir: Path = Field(default=Path("data/ledger"))
    sqlite_path: Path = Field(default=Path("data/coinledger.db"))

    @property
    def sqlite_url(self) -> str:
        return f"sqlite:///{self.sqlite_path}"


class ImportConfig(BaseModel):
    """导入配置"""

    default_source: str = Field(default="generic")
    date_format: str = Field(default="YYYY-MM-DD")

    @field_validator("date_format")
    @classmethod
    def validate_date_format(cls, v: str) -> str:
        valid = {"YYYY-MM-DD", "MM/DD/YYYY", "DD/MM/YYYY"}
        if v not in valid:
            raise ValueError(f"不支持的日期格式: {v}, 可选: {valid}")
        return v


class PriceConfig(BaseModel):
    """行情查询配置"""

    # 价格表 CSV (asset, price[, timestamp])
    price_file: Optional[Path] = Field(default=None)

    # 重试
    max_attempts: int = Field(default=3, ge=1, le=10)
    min_wait: float = Field(default=1.0, ge=0)
    max_wait: float = Field(default=30.0, ge=0)

    # 并发查询线程数
    lookup_workers: int = Field(default=4, ge=1, le=32)

    @model_validator(mode="after")
    def validate_waits(self) -> "PriceConfig":
        if self.min_wait > self.max_wait:
            raise ValueError("最小等待时间不能大于最大等待时间")
        return self


class LoggingConfig(BaseModel):
    """日志配置"""

    level: LogLevel = Field(default=LogLevel.INFO)
    log_to_file: bool = Field(default=False)
    log_dir: Path = Field(default=Path("logs"))
    log_file: str = Field(default="coinledger.log")
    max_bytes: int = Field(default=50 * 1024 * 1024, ge=1024)  # 50MB
    backup_count: int = Field(default=10, ge=0)
    rotation: str = Field(default="size")  # size, time
    console: bool = Field(default=True)
    structured: bool = Field(default=False)  # structlog JSON 输出

    @field_validator("rotation")
    @classmethod
    def validate_rotation(cls, v: str) -> str:
        if v not in {"size", "time"}:
            raise ValueError(f"不支持的轮转方式: {v}, 可选: size, time")
        return v


# ============================================================
# 主配置类
# ============================================================


class AppSettings(BaseSettings):
    """应用主配置

    支持从环境变量和 .env 文件加载，例如 COINLEDGER_STORAGE__BACKEND=json
    """

    model_config = SettingsConfigDict(
        env_prefix="COINLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # 子配置
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    importer: ImportConfig = Field(default_factory=ImportConfig)
    prices: PriceConfig = Field(default_factory=PriceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def ensure_dirs(self) -> "AppSettings":
        """确保必要目录存在"""
        if self.storage.backend is StorageBackend.JSON:
            self.storage.json_dir.mkdir(parents=True, exist_ok=True)
        elif self.storage.backend is StorageBackend.SQLITE:
            self.storage.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        if self.logging.log_to_file:
            self.logging.log_dir.mkdir(parents=True, exist_ok=True)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """导出为字典"""
        return self.model_dump()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AppSettings":
        """从 YAML 文件加载"""
        import yaml

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "AppSettings":
        """从 JSON 文件加载"""
        import json

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls(**data)

    def save_yaml(self, path: Union[str, Path]) -> None:
        """保存为 YAML 文件"""
        import yaml

        data = self.model_dump(mode="json")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, allow_unicode=True, default_flow_style=False)

    def save_json(self, path: Union[str, Path]) -> None:
        """保存为 JSON 文件"""
        import json

        data = self.model_dump(mode="json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)


# ============================================================
# 全局配置实例
# ============================================================

_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reload_settings() -> AppSettings:
    """重新加载配置"""
    global _settings
    _settings = AppSettings()
    return _settings
