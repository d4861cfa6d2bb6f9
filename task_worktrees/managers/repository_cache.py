"""共有リポジトリキャッシュ管理モジュール。

リモートリポジトリごとに1つのローカルクローンを保持し、タスク間で共有する。
既存クローンは fetch で最新化し、壊れている場合は削除して再クローンする。

保存先: {git_repos_dir}/{owner}-{name}/
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

from task_worktrees.config.settings import Settings
from task_worktrees.errors import (
    CorruptionError,
    CredentialError,
    GitTimeoutError,
    NetworkError,
    VcsCommandError,
    WorktreeError,
)
from task_worktrees.managers.credential_provider import CredentialProvider
from task_worktrees.managers.git_gateway import GitGateway
from task_worktrees.models.workspace import RepositoryCacheEntry

logger = logging.getLogger(__name__)

ALL_BRANCHES_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"

CacheProgressCallback = Callable[[int | None, str], Awaitable[None]]
"""(進捗率, メッセージ) を受け取るコールバック"""


class RepositoryCache:
    """リモートリポジトリごとの共有クローンを管理するクラス。

    同じ full_name に対する ensure_cloned は full_name 単位のロックで直列化される。
    """

    def __init__(
        self,
        settings: Settings,
        gateway: GitGateway,
        credentials: CredentialProvider,
    ) -> None:
        """RepositoryCacheを初期化する。

        Args:
            settings: 設定
            gateway: git ゲートウェイ
            credentials: installation トークンの提供者
        """
        self.settings = settings
        self.gateway = gateway
        self.credentials = credentials
        self.base_dir = settings.get_git_repos_dir()
        self.entries: dict[str, RepositoryCacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_local_path(self, full_name: str) -> Path:
        """full_name から決定的にローカルパスを求める（owner/name → owner-name）。"""
        return self.base_dir / full_name.replace("/", "-")

    def get_entry(self, full_name: str) -> RepositoryCacheEntry | None:
        """キャッシュエントリを取得する。

        このプロセスで fetch していないクローンは last_fetched_at が None になる。
        """
        entry = self.entries.get(full_name)
        if entry is not None:
            return entry
        local_path = self.get_local_path(full_name)
        if not self.has_repo_marker(local_path):
            return None
        return RepositoryCacheEntry(full_name=full_name, local_path=str(local_path))

    def _get_lock(self, full_name: str) -> asyncio.Lock:
        lock = self._locks.get(full_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[full_name] = lock
        return lock

    @staticmethod
    def has_repo_marker(path: Path) -> bool:
        """git リポジトリの目印（.git/config または bare の config）があるか。"""
        return (path / ".git" / "config").exists() or (path / "config").exists()

    async def ensure_cloned(
        self,
        full_name: str,
        installation_id: int,
        on_progress: CacheProgressCallback | None = None,
    ) -> str:
        """最新化済みのローカルクローンを用意してパスを返す。

        Args:
            full_name: owner/name 形式のリポジトリ名
            installation_id: トークン取得に使う installation ID
            on_progress: 進捗コールバック

        Returns:
            ローカルクローンのパス

        Raises:
            CredentialError: トークンを取得できない場合
            NetworkError: clone / fetch に失敗した場合
            GitTimeoutError: clone / fetch がタイムアウトした場合
        """
        async with self._get_lock(full_name):
            token = await self.credentials.get_installation_token(installation_id)
            if not token:
                raise CredentialError(
                    f"installation トークンを取得できませんでした (installation_id={installation_id})"
                )

            repo_path = self.get_local_path(full_name)

            if self.has_repo_marker(repo_path):
                try:
                    await self._refresh(repo_path, full_name, token, on_progress)
                    self._touch(full_name, repo_path)
                    logger.info(f"既存のクローンを使用します: {full_name} ({repo_path})")
                    return str(repo_path)
                except CorruptionError as e:
                    logger.warning(f"クローンを作り直します ({full_name}): {e}")
                    await self._discard(repo_path)
            elif repo_path.exists():
                logger.warning(f"gitリポジトリではないディレクトリを削除します: {repo_path}")
                await self._discard(repo_path)

            await self._clone(repo_path, full_name, token, on_progress)
            self._touch(full_name, repo_path)
            return str(repo_path)

    async def _refresh(
        self,
        repo_path: Path,
        full_name: str,
        token: str,
        on_progress: CacheProgressCallback | None,
    ) -> None:
        """既存クローンの認証 URL を更新して fetch する。

        Raises:
            CorruptionError: fetch に失敗した、またはリモートブランチが無い場合
        """
        if on_progress is not None:
            await on_progress(None, "最新の変更を取得しています...")

        path = str(repo_path)
        try:
            await self.gateway.set_remote_url(path, self.settings.build_remote_url(full_name, token))
            await self.gateway.fetch(path)
            branches = await self.gateway.list_remote_branches(path)
        except VcsCommandError as e:
            raise CorruptionError(f"fetch に失敗しました: {e}") from e
        finally:
            await self._reset_remote_url(path, full_name)

        if not branches:
            raise CorruptionError("リモートブランチが見つかりません")

    async def _clone(
        self,
        repo_path: Path,
        full_name: str,
        token: str,
        on_progress: CacheProgressCallback | None,
    ) -> None:
        """トークン付き URL でクローンし、全ブランチを追跡するよう設定する。"""
        if on_progress is not None:
            await on_progress(0, "リポジトリをクローンしています...")

        async def _on_clone_progress(percent: int) -> None:
            if on_progress is not None:
                await on_progress(percent, f"クローン中: {percent}%")

        repo_path.parent.mkdir(parents=True, exist_ok=True)
        path = str(repo_path)
        try:
            await self.gateway.clone(
                self.settings.build_remote_url(full_name, token),
                path,
                on_progress=_on_clone_progress,
            )
            # デフォルトブランチ以外も分岐元にできるよう全ブランチを追跡する
            await self.gateway.set_config(path, "remote.origin.fetch", ALL_BRANCHES_REFSPEC)
            await self.gateway.fetch(path)
        except VcsCommandError as e:
            await self._discard(repo_path)
            raise NetworkError(f"{full_name} のクローンに失敗しました: {e}") from e
        except GitTimeoutError:
            await self._discard(repo_path)
            raise
        finally:
            # 失敗時は削除済みのためスキップされる
            await self._reset_remote_url(path, full_name)

        logger.info(f"リポジトリをクローンしました: {full_name} ({repo_path})")

    async def _reset_remote_url(self, path: str, full_name: str) -> None:
        """origin をトークンを含まない URL に戻す。"""
        if not Path(path).is_dir():
            return
        try:
            await self.gateway.set_remote_url(path, self.settings.build_remote_url(full_name))
        except WorktreeError as e:
            logger.error(f"リモート URL を元に戻せませんでした ({path}): {e}")

    def _touch(self, full_name: str, repo_path: Path) -> None:
        self.entries[full_name] = RepositoryCacheEntry(
            full_name=full_name,
            local_path=str(repo_path),
            last_fetched_at=datetime.now(),
        )

    @staticmethod
    async def _discard(repo_path: Path) -> None:
        await asyncio.to_thread(shutil.rmtree, repo_path, ignore_errors=True)
