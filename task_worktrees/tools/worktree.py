"""Git worktree 状態管理ツール。"""

import logging
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from task_worktrees.errors import WorktreeError
from task_worktrees.tools.helpers import error_result, get_app_ctx

logger = logging.getLogger(__name__)


def register_tools(mcp: FastMCP) -> None:
    """Git worktree 状態管理ツールを登録する。"""

    @mcp.tool()
    async def get_worktree_status(worktree_path: str, ctx: Context = None) -> dict[str, Any]:
        """worktree の git status を取得する。

        Args:
            worktree_path: worktree のパス

        Returns:
            状態（success, status。worktree が存在しない場合 status は None）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            status = await app_ctx.diff_manager.status(worktree_path)
        except WorktreeError as e:
            return error_result(str(e))

        return {
            "success": True,
            "worktree_path": worktree_path,
            "status": status.to_dict() if status is not None else None,
        }

    @mcp.tool()
    async def get_task_git_status(task_id: str, ctx: Context = None) -> dict[str, Any]:
        """タスクの ready なリポジトリの git status をまとめて取得する。

        Args:
            task_id: タスクID

        Returns:
            状態（success, statuses: リポジトリ名 → status）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            statuses = await app_ctx.task_manager.get_task_git_status(task_id)
        except WorktreeError as e:
            return error_result(str(e))

        return {
            "success": True,
            "statuses": {
                name: status.to_dict() if status is not None else None
                for name, status in statuses.items()
            },
        }

    @mcp.tool()
    async def remove_worktree(worktree_path: str, ctx: Context = None) -> dict[str, Any]:
        """worktree を削除する。既に存在しない場合も成功として扱う。

        Args:
            worktree_path: 削除する worktree のパス

        Returns:
            削除結果（success, removed, message）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            removed = await app_ctx.worktree_manager.remove_worktree(worktree_path)
        except ValueError as e:
            return error_result(str(e))
        except OSError as e:
            logger.error(f"worktreeの削除に失敗: {worktree_path} - {e}")
            return error_result(f"worktreeの削除に失敗しました: {e}")

        message = (
            f"worktreeを削除しました: {worktree_path}"
            if removed
            else f"worktreeは既に存在しません: {worktree_path}"
        )
        return {"success": True, "removed": removed, "message": message}

    @mcp.tool()
    async def get_repository_cache(full_name: str, ctx: Context = None) -> dict[str, Any]:
        """共有リポジトリキャッシュの状態を取得する。

        Args:
            full_name: owner/name 形式のリポジトリ名

        Returns:
            キャッシュ情報（success, entry または error）
        """
        app_ctx = get_app_ctx(ctx)
        entry = app_ctx.repository_cache.get_entry(full_name)
        if entry is None:
            return error_result(f"{full_name} はまだクローンされていません")
        return {"success": True, "entry": entry.model_dump(mode="json")}
