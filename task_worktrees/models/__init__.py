"""データモデルモジュール。"""

from .diff import DiffEntry, FileStatus, WorkingTreeStatus
from .progress import ProgressStatus, WorktreeProgress
from .task import (
    RepositorySpec,
    RepositoryStatus,
    Task,
    TaskRepository,
    TaskStatus,
    can_transition,
)
from .workspace import RepositoryCacheEntry, WorktreeInfo

__all__ = [
    "DiffEntry",
    "FileStatus",
    "ProgressStatus",
    "RepositoryCacheEntry",
    "RepositorySpec",
    "RepositoryStatus",
    "Task",
    "TaskRepository",
    "TaskStatus",
    "WorkingTreeStatus",
    "WorktreeInfo",
    "WorktreeProgress",
    "can_transition",
]
