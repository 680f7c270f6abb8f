"""处理阶段实现"""

from .base import Stage, StageError
from .compile import CompileStage
from .check import CheckStage
from .assess import AssessStage

__all__ = [
    "Stage",
    "StageError",
    "CompileStage",
    "CheckStage",
    "AssessStage",
]
