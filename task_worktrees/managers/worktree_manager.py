"""タスク用 git worktree の割り当て管理モジュール。

(タスク, リポジトリ) ごとに、共有クローンから専用ブランチ付きの worktree を作成する。
途中で失敗した前回の試行やブランチ名の衝突からは自動で復旧する。
"""

import asyncio
import logging
import os
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from task_worktrees.config.settings import Settings
from task_worktrees.errors import (
    BranchCollisionError,
    GitTimeoutError,
    VcsCommandError,
    WorktreeError,
)
from task_worktrees.managers.branch_resolver import explain_base_branch
from task_worktrees.managers.git_gateway import (
    GitGateway,
    find_worktree_for_branch,
    same_path,
)
from task_worktrees.managers.repository_cache import RepositoryCache
from task_worktrees.models.progress import ProgressStatus, WorktreeProgress
from task_worktrees.models.task import TaskRepository
from task_worktrees.models.workspace import WorktreeInfo

logger = logging.getLogger(__name__)

ProgressEmitter = Callable[[WorktreeProgress], Awaitable[None]]

_CHECKED_OUT_MARKERS = ("already used by worktree", "already checked out")


def classify_add_error(error: VcsCommandError, branch: str) -> BranchCollisionError | None:
    """`git worktree add` の失敗がブランチ衝突かどうかを判定する。

    Returns:
        ブランチ衝突なら BranchCollisionError、それ以外は None
    """
    text = error.stderr
    if any(marker in text for marker in _CHECKED_OUT_MARKERS):
        return BranchCollisionError(branch, checked_out=True, cause=error)
    if "a branch named" in text and "already exists" in text:
        return BranchCollisionError(branch, checked_out=False, cause=error)
    return None


class WorktreeManager:
    """タスクリポジトリへの worktree 割り当てを管理するクラス。"""

    def __init__(
        self,
        settings: Settings,
        gateway: GitGateway,
        cache: RepositoryCache,
    ) -> None:
        """WorktreeManagerを初期化する。

        Args:
            settings: 設定
            gateway: git ゲートウェイ
            cache: 共有リポジトリキャッシュ
        """
        self.settings = settings
        self.gateway = gateway
        self.cache = cache
        self.step_timeout = settings.allocation_step_timeout_seconds
        self.max_collision_retries = settings.branch_collision_max_retries

    async def _with_deadline(self, step: str, awaitable: Awaitable[Any]) -> Any:
        """ステップに期限を設けて実行する。"""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.step_timeout)
        except GitTimeoutError:
            raise
        except asyncio.TimeoutError:
            raise GitTimeoutError(
                f"{step}が期限 ({self.step_timeout:g}秒) を超過しました"
            ) from None

    async def allocate(
        self,
        task_id: str,
        repo: TaskRepository,
        on_progress: ProgressEmitter | None = None,
    ) -> None:
        """タスクリポジトリに worktree を割り当てる。

        既に割り当て済みの場合はブランチをチェックアウトし直すだけで、破壊的な操作は行わない。
        進捗は cloning → creating-worktree → ready|error の順に通知する。

        Args:
            task_id: タスクID
            repo: タスクリポジトリ
            on_progress: 進捗イベントの送信先

        Raises:
            WorktreeError: 割り当てに失敗した場合（error イベント送信後に再送出）
        """

        async def emit(
            status: ProgressStatus, message: str | None = None, progress: int | None = None
        ) -> None:
            if on_progress is None:
                return
            await on_progress(
                WorktreeProgress(
                    task_id=task_id,
                    repository_id=repo.id,
                    status=status,
                    progress=progress,
                    message=message,
                )
            )

        async def on_cache_progress(percent: int | None, message: str) -> None:
            await emit(ProgressStatus.CLONING, message, percent)

        try:
            await emit(ProgressStatus.CLONING, "リポジトリを準備しています...")
            repo_path = await self._with_deadline(
                "リポジトリの準備",
                self.cache.ensure_cloned(repo.full_name, repo.installation_id, on_cache_progress),
            )

            await emit(ProgressStatus.CREATING_WORKTREE, "worktreeを作成しています...")
            base_branch = await self._with_deadline(
                "worktreeの作成", self._prepare_worktree(repo_path, repo, emit)
            )
        except (WorktreeError, OSError) as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"worktreeの準備に失敗しました ({repo.full_name}): {message}")
            await emit(ProgressStatus.ERROR, message)
            raise

        await self._track_upstream(repo_path, repo, base_branch)

        logger.info(f"worktreeを準備しました: {repo.worktree_path} ({repo.task_branch})")
        await emit(ProgressStatus.READY, "worktreeの準備ができました")

    async def _find_worktree_at(self, repo_path: str, path: str) -> WorktreeInfo | None:
        for wt in await self.gateway.list_worktrees(repo_path):
            if same_path(wt.path, path):
                return wt
        return None

    async def _prepare_worktree(
        self,
        repo_path: str,
        repo: TaskRepository,
        emit: Callable[..., Awaitable[None]],
    ) -> str | None:
        """worktree を再利用または作成する。

        Returns:
            新規作成時は分岐元ブランチ、再利用時は None
        """
        existing = await self._find_worktree_at(repo_path, repo.worktree_path)
        if existing is not None:
            if os.path.isdir(repo.worktree_path) and not existing.prunable:
                # 前回の試行で作成済み
                logger.info(f"既存のworktreeを再利用します: {repo.worktree_path}")
                await emit(
                    ProgressStatus.CHECKING_OUT,
                    f"{repo.task_branch} をチェックアウトしています...",
                )
                await self.gateway.checkout(repo.worktree_path, repo.task_branch)
                return None
            logger.warning(f"登録だけ残っているworktreeを整理します: {repo.worktree_path}")
            await self.gateway.prune_worktrees(repo_path)

        if os.path.exists(repo.worktree_path):
            logger.warning(f"worktreeではないディレクトリを削除します: {repo.worktree_path}")
            await asyncio.to_thread(shutil.rmtree, repo.worktree_path, ignore_errors=True)

        branches = await self.gateway.list_remote_branches(repo_path)
        resolution = explain_base_branch(repo.original_branch, branches)
        if resolution.warning:
            logger.warning(f"{repo.full_name}: {resolution.warning}")
            await emit(ProgressStatus.CREATING_WORKTREE, resolution.warning)

        Path(repo.worktree_path).parent.mkdir(parents=True, exist_ok=True)
        await self._create_worktree(repo_path, repo, resolution.branch)
        return resolution.branch

    async def _add_worktree(
        self, repo_path: str, repo: TaskRepository, start_point: str | None = None
    ) -> None:
        """worktree を追加する。ブランチ衝突は BranchCollisionError に変換する。"""
        try:
            await self.gateway.add_worktree(
                repo_path,
                repo.worktree_path,
                repo.task_branch,
                start_point=start_point,
                create_branch=start_point is not None,
            )
        except VcsCommandError as e:
            collision = classify_add_error(e, repo.task_branch)
            if collision is None:
                raise
            raise collision from e

    async def _create_worktree(
        self, repo_path: str, repo: TaskRepository, base_branch: str
    ) -> None:
        """origin/<base_branch> からタスクブランチ付きの worktree を作成する。

        1. 新しいブランチで作成
        2. ブランチが既にあれば、そのブランチで作成
        3. ブランチが別の worktree で使用中なら、その worktree を削除して再試行
           （max_collision_retries 回まで）
        """
        try:
            await self._add_worktree(repo_path, repo, start_point=f"origin/{base_branch}")
            logger.info(
                f"worktreeを作成しました: {repo.worktree_path} "
                f"({repo.task_branch} from origin/{base_branch})"
            )
            return
        except BranchCollisionError:
            logger.info(f"ブランチ {repo.task_branch} は既に存在するため再利用します")

        retries = 0
        while True:
            try:
                await self._add_worktree(repo_path, repo)
                logger.info(f"既存ブランチでworktreeを作成しました: {repo.worktree_path}")
                return
            except BranchCollisionError as e:
                if not e.checked_out or retries >= self.max_collision_retries:
                    raise e.cause from None
            retries += 1
            await self._release_branch(repo_path, repo)

    async def _release_branch(self, repo_path: str, repo: TaskRepository) -> None:
        """タスクブランチを使用中の古い worktree を取り除く。

        タスクブランチ名はタスクごとに一意なので、使用中の worktree は同じタスクの残骸である。
        """
        worktrees = await self.gateway.list_worktrees(repo_path)
        stale = find_worktree_for_branch(worktrees, repo.task_branch)
        if stale is not None and not same_path(stale.path, repo.worktree_path):
            logger.warning(
                f"ブランチ {repo.task_branch} を使用中の古いworktreeを削除します: {stale.path}"
            )
            await self.gateway.remove_worktree(repo_path, stale.path, force=True)
        else:
            await self.gateway.prune_worktrees(repo_path)

    async def _track_upstream(
        self, repo_path: str, repo: TaskRepository, base_branch: str | None
    ) -> None:
        """分岐元のリモートブランチを upstream に設定する（失敗しても続行）。"""
        try:
            if base_branch is None:
                branches = await self.gateway.list_remote_branches(repo_path)
                base_branch = explain_base_branch(repo.original_branch, branches).branch
            await self.gateway.set_upstream(
                repo.worktree_path, repo.task_branch, f"origin/{base_branch}"
            )
        except WorktreeError as e:
            logger.warning(f"upstream を設定できませんでした ({repo.task_branch}): {e}")

    def is_task_path(self, path: str) -> bool:
        """パスがタスクディレクトリ配下（ベース自体を除く）にあるか判定する。"""
        base = self.settings.get_tasks_base_dir().resolve()
        target = Path(path).expanduser().resolve()
        return target != base and target.is_relative_to(base)

    async def remove_worktree(self, worktree_path: str) -> bool:
        """worktreeを削除する。存在しない場合は何もしない。

        git の操作に失敗した場合はディレクトリを直接削除する。
        タスクディレクトリの外のパスは削除しない。

        Returns:
            削除した場合 True、存在しなかった場合 False

        Raises:
            ValueError: タスクディレクトリの外のパスが指定された場合
        """
        if not self.is_task_path(worktree_path):
            raise ValueError(f"タスクディレクトリの外のパスは削除できません: {worktree_path}")
        if not os.path.exists(worktree_path):
            return False

        repo_path: str | None = None
        try:
            common_dir = await self.gateway.git_common_dir(worktree_path)
            repo_path = os.path.dirname(common_dir)
            await self.gateway.remove_worktree(repo_path, worktree_path, force=True)
            logger.info(f"worktreeを削除しました: {worktree_path}")
        except (VcsCommandError, GitTimeoutError) as e:
            logger.warning(f"git でworktreeを削除できないため直接削除します ({worktree_path}): {e}")
            await asyncio.to_thread(shutil.rmtree, worktree_path, ignore_errors=True)
            if repo_path is not None:
                try:
                    await self.gateway.prune_worktrees(repo_path)
                except WorktreeError as prune_error:
                    logger.warning(f"worktree prune に失敗: {prune_error}")
        return True

    async def release(self, repo: TaskRepository) -> None:
        """タスクリポジトリの worktree とタスクブランチを削除する。"""
        await self.remove_worktree(repo.worktree_path)

        repo_path = self.cache.get_local_path(repo.full_name)
        if not self.cache.has_repo_marker(repo_path):
            return
        try:
            await self.gateway.prune_worktrees(str(repo_path))
            await self.gateway.delete_branch(str(repo_path), repo.task_branch)
            logger.info(f"ブランチを削除しました: {repo.task_branch}")
        except WorktreeError as e:
            logger.warning(f"ブランチ削除に失敗: {repo.task_branch} - {e}")
