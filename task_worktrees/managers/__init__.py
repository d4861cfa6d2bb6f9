"""マネージャーモジュール。"""

from .branch_resolver import BranchResolution, explain_base_branch, resolve_base_branch
from .credential_provider import (
    CredentialProvider,
    FileCredentialProvider,
    StaticCredentialProvider,
)
from .diff_manager import DiffManager
from .git_gateway import GitGateway
from .progress_manager import ProgressManager
from .repository_cache import RepositoryCache
from .task_manager import TaskManager
from .task_store import TaskStore
from .worktree_manager import WorktreeManager

__all__ = [
    "BranchResolution",
    "CredentialProvider",
    "DiffManager",
    "FileCredentialProvider",
    "GitGateway",
    "ProgressManager",
    "RepositoryCache",
    "StaticCredentialProvider",
    "TaskManager",
    "TaskStore",
    "WorktreeManager",
    "explain_base_branch",
    "resolve_base_branch",
]
