"""CoinLedger CLI 模块

提供统一的命令行接口：
- 交易与组合管理命令
- 导入导出命令
- 持仓、估值与税务报告命令
"""

from coinledger.cli.app import app, main

__all__ = ["app", "main"]
