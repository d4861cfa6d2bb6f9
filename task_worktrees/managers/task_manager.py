"""タスクとタスクリポジトリのライフサイクル管理モジュール。

タスク作成時にリポジトリごとのブランチ名・worktree パスを決め、
setup_worktrees で各リポジトリを initializing → ready | error へ遷移させる。
1タスク内のリポジトリは順番に準備し、タスク同士は並行して準備できる。
"""

import asyncio
import logging
import shutil
import uuid
from datetime import datetime
from pathlib import Path

from task_worktrees.config.settings import Settings
from task_worktrees.errors import RepositoryNotFoundError, WorktreeError
from task_worktrees.managers.diff_manager import DiffManager
from task_worktrees.managers.progress_manager import ProgressManager
from task_worktrees.managers.task_store import TaskStore
from task_worktrees.managers.worktree_manager import WorktreeManager
from task_worktrees.models.diff import WorkingTreeStatus
from task_worktrees.models.task import (
    RepositorySpec,
    RepositoryStatus,
    Task,
    TaskRepository,
    TaskStatus,
)

logger = logging.getLogger(__name__)


def generate_task_name(repo_names: list[str], now: datetime | None = None) -> str:
    """リポジトリ名と時刻からタスク名を作る。

    例: api-0930, api-web-0930, api-and-2-more-0930, task-0930
    """
    suffix = (now or datetime.now()).strftime("%H%M")
    if not repo_names:
        return f"task-{suffix}"
    if len(repo_names) == 1:
        return f"{repo_names[0]}-{suffix}"
    if len(repo_names) == 2:
        return f"{repo_names[0]}-{repo_names[1]}-{suffix}"
    return f"{repo_names[0]}-and-{len(repo_names) - 1}-more-{suffix}"


class TaskManager:
    """タスクの作成・worktree 準備・削除を管理するクラス。"""

    def __init__(
        self,
        settings: Settings,
        store: TaskStore,
        worktree_manager: WorktreeManager,
        diff_manager: DiffManager,
        progress: ProgressManager,
    ) -> None:
        """TaskManagerを初期化する。

        Args:
            settings: 設定
            store: タスクの永続化先
            worktree_manager: worktree の割り当て担当
            diff_manager: 状態取得担当
            progress: 進捗通知
        """
        self.settings = settings
        self.store = store
        self.worktree_manager = worktree_manager
        self.diff_manager = diff_manager
        self.progress = progress
        self._task_locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, task_id: str) -> asyncio.Lock:
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._task_locks[task_id] = lock
        return lock

    def build_task_branch(self, task_id: str, repo_name: str) -> str:
        """タスクブランチ名（<prefix>/<短縮ID>/<リポジトリ名>）を作る。"""
        short_id = task_id.replace("-", "")[: self.settings.short_id_length]
        return f"{self.settings.task_branch_prefix}/{short_id}/{repo_name}"

    # ========== 作成・参照 ==========

    def create_task(
        self, repositories: list[RepositorySpec], name: str | None = None
    ) -> Task:
        """タスクを作成する（worktree はまだ作らない）。

        Args:
            repositories: 対象リポジトリ
            name: タスク名（省略時は自動生成）

        Returns:
            作成したタスク（全リポジトリが initializing）
        """
        names = [spec.name for spec in repositories]
        if len(set(names)) != len(names):
            raise ValueError(f"リポジトリ名が重複しています: {', '.join(names)}")

        task_id = str(uuid.uuid4())
        now = datetime.now()
        base_path = self.settings.get_tasks_base_dir() / f"task-{task_id}"
        base_path.mkdir(parents=True, exist_ok=True)

        task = Task(
            id=task_id,
            name=name or generate_task_name(names, now),
            repositories=[
                TaskRepository(
                    id=spec.id,
                    installation_id=spec.installation_id,
                    name=spec.name,
                    full_name=spec.full_name,
                    original_branch=spec.default_branch or "main",
                    task_branch=self.build_task_branch(task_id, spec.name),
                    worktree_path=str(base_path / spec.name),
                )
                for spec in repositories
            ],
            worktree_base_path=str(base_path),
            created_at=now,
            updated_at=now,
        )
        self.store.create(task)
        self.store.write_sidecar(task)
        logger.info(f"タスクを作成しました: {task.name} ({task_id})")
        return task

    def list_tasks(self) -> list[Task]:
        """全タスクを返す。"""
        return self.store.list_tasks()

    def get_task(self, task_id: str) -> Task | None:
        """タスクを取得する。"""
        return self.store.get(task_id)

    def get_active_task(self) -> Task | None:
        """アクティブなタスクを返す。"""
        task_id = self.store.get_active_task_id()
        return self.store.get(task_id) if task_id else None

    def set_active_task(self, task_id: str) -> Task:
        """アクティブなタスクを切り替える。"""
        return self.store.set_active(task_id)

    def update_task(
        self, task_id: str, name: str | None = None, status: TaskStatus | None = None
    ) -> Task:
        """タスク名・タスクの状態を更新し、.task.json も書き直す。

        Raises:
            ValueError: 空のタスク名が指定された場合
            TaskNotFoundError: タスクが存在しない場合
        """
        task = self.store.require(task_id)
        if name is not None:
            if not name.strip():
                raise ValueError("タスク名が空です")
            task.name = name.strip()
        if status is not None:
            task.status = TaskStatus(status)
        task = self.store.update(task)
        if Path(task.worktree_base_path).is_dir():
            self.store.write_sidecar(task)
        logger.info(f"タスクを更新しました: {task.name} ({task_id}, {TaskStatus(task.status).value})")
        return task

    # ========== worktree 準備 ==========

    async def setup_worktrees(self, task_id: str) -> Task:
        """タスクの全リポジトリに worktree を準備する。

        失敗したリポジトリは error になり、残りのリポジトリの準備は続ける。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
        """
        async with self._get_lock(task_id):
            task = self.store.require(task_id)
            for repo in task.repositories:
                await self._setup_repository(task_id, repo)
            return self.store.require(task_id)

    async def retry_repository(self, task_id: str, repository_id: int) -> Task:
        """1リポジトリ分の worktree 準備をやり直す。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
            RepositoryNotFoundError: リポジトリが存在しない場合
        """
        async with self._get_lock(task_id):
            task = self.store.require(task_id)
            repo = task.get_repository(repository_id)
            if repo is None:
                raise RepositoryNotFoundError(
                    f"タスク {task_id} にリポジトリ {repository_id} がありません"
                )
            await self._setup_repository(task_id, repo)
            return self.store.require(task_id)

    async def _setup_repository(self, task_id: str, repo: TaskRepository) -> None:
        if repo.status != RepositoryStatus.INITIALIZING:
            self.store.update_repository_status(
                task_id, repo.id, RepositoryStatus.INITIALIZING
            )
            repo.transition(RepositoryStatus.INITIALIZING)

        try:
            await self.worktree_manager.allocate(task_id, repo, self.progress.publish)
        except WorktreeError as e:
            message = str(e) or e.__class__.__name__
            self.store.update_repository_status(
                task_id, repo.id, RepositoryStatus.ERROR, message
            )
            return
        except Exception as e:
            logger.exception(f"worktree の準備中に予期しないエラー ({repo.full_name})")
            self.store.update_repository_status(
                task_id, repo.id, RepositoryStatus.ERROR, str(e) or e.__class__.__name__
            )
            return

        self.store.update_repository_status(task_id, repo.id, RepositoryStatus.READY)

    # ========== 削除 ==========

    async def delete_task(self, task_id: str) -> bool:
        """タスクを削除する。

        準備中の場合は完了を待ってから、全 worktree・タスクブランチ・タスクディレクトリを削除する。

        Returns:
            削除した場合 True、タスクが存在しなかった場合 False
        """
        async with self._get_lock(task_id):
            task = self.store.get(task_id)
            if task is None:
                return False

            for repo in task.repositories:
                await self.worktree_manager.release(repo)

            base_path = Path(task.worktree_base_path)
            if base_path.exists():
                await asyncio.to_thread(shutil.rmtree, base_path, ignore_errors=True)

            self.store.delete(task_id)
            self.progress.clear(task_id)

        self._task_locks.pop(task_id, None)
        logger.info(f"タスクを削除しました: {task.name} ({task_id})")
        return True

    # ========== 状態 ==========

    async def get_task_git_status(self, task_id: str) -> dict[str, WorkingTreeStatus | None]:
        """ready なリポジトリの状態をリポジトリ名ごとに返す。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
        """
        task = self.store.require(task_id)
        result: dict[str, WorkingTreeStatus | None] = {}
        for repo in task.repositories:
            if repo.status != RepositoryStatus.READY:
                continue
            result[repo.name] = await self.diff_manager.status(repo.worktree_path)
        return result
