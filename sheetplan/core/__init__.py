"""核心配置"""

from sheetplan.core.config import Settings, settings

__all__ = ["Settings", "settings"]
