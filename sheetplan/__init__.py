"""sheetplan - 表格任务规划编译与重新规划"""

__version__ = "0.1.0"
