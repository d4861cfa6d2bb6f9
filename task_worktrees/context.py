"""アプリケーションコンテキストの定義。

サービスはすべて build_app_context() で明示的に組み立てて注入する。
テストでは個々のマネージャーを差し替えた AppContext を直接生成できる。
"""

import asyncio
from dataclasses import dataclass, field

from task_worktrees.config.settings import Settings
from task_worktrees.managers.credential_provider import (
    CredentialProvider,
    FileCredentialProvider,
    StaticCredentialProvider,
)
from task_worktrees.managers.diff_manager import DiffManager
from task_worktrees.managers.git_gateway import GitGateway
from task_worktrees.managers.progress_manager import ProgressManager
from task_worktrees.managers.repository_cache import RepositoryCache
from task_worktrees.managers.task_manager import TaskManager
from task_worktrees.managers.task_store import TaskStore
from task_worktrees.managers.worktree_manager import WorktreeManager


@dataclass
class AppContext:
    """アプリケーションコンテキスト。"""

    # --- 設定・外部連携 ---
    settings: Settings
    gateway: GitGateway
    credentials: CredentialProvider

    # --- マネージャー ---
    repository_cache: RepositoryCache
    worktree_manager: WorktreeManager
    diff_manager: DiffManager
    progress_manager: ProgressManager
    task_store: TaskStore
    task_manager: TaskManager

    # --- 内部状態 ---
    setup_jobs: dict[str, asyncio.Task] = field(default_factory=dict)
    """タスクID → バックグラウンドで実行中の setup_worktrees"""


def build_app_context(
    settings: Settings,
    credentials: CredentialProvider | None = None,
    gateway: GitGateway | None = None,
) -> AppContext:
    """設定からサービス一式を組み立てる。

    Args:
        settings: 設定
        credentials: トークン提供者（省略時は credentials_file から読む）
        gateway: git ゲートウェイ（省略時は設定のタイムアウトで生成）

    Returns:
        AppContext
    """
    if credentials is None:
        if settings.credentials_file:
            credentials = FileCredentialProvider(settings.credentials_file)
        else:
            credentials = StaticCredentialProvider()
    if gateway is None:
        gateway = GitGateway(
            command_timeout=settings.git_command_timeout_seconds,
            network_timeout=settings.network_timeout_seconds,
        )

    repository_cache = RepositoryCache(settings, gateway, credentials)
    worktree_manager = WorktreeManager(settings, gateway, repository_cache)
    diff_manager = DiffManager(settings, gateway, credentials)
    progress_manager = ProgressManager(
        queue_size=settings.progress_queue_size,
        history_size=settings.progress_history_size,
    )
    task_store = TaskStore(settings.get_state_file())
    task_manager = TaskManager(
        settings, task_store, worktree_manager, diff_manager, progress_manager
    )

    return AppContext(
        settings=settings,
        gateway=gateway,
        credentials=credentials,
        repository_cache=repository_cache,
        worktree_manager=worktree_manager,
        diff_manager=diff_manager,
        progress_manager=progress_manager,
        task_store=task_store,
        task_manager=task_manager,
    )
