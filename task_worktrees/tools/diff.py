"""差分・コミット操作ツール。"""

import logging
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from task_worktrees.errors import WorktreeError
from task_worktrees.tools.helpers import error_result, get_app_ctx

logger = logging.getLogger(__name__)


def register_tools(mcp: FastMCP) -> None:
    """差分・コミット操作ツールを登録する。"""

    @mcp.tool()
    async def get_diff_stats(worktree_path: str, ctx: Context = None) -> dict[str, Any]:
        """ファイルごとの変更行数を取得する。

        未追跡ファイルは全行を追加として数える。

        Args:
            worktree_path: worktree のパス

        Returns:
            差分統計（success, files: パス → {additions, deletions, binary}, totals）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            stats = await app_ctx.diff_manager.diff_stats(worktree_path)
        except WorktreeError as e:
            return error_result(str(e))

        return {
            "success": True,
            "files": {path: entry.model_dump() for path, entry in stats.items()},
            "totals": {
                "files": len(stats),
                "additions": sum(e.additions for e in stats.values()),
                "deletions": sum(e.deletions for e in stats.values()),
            },
        }

    @mcp.tool()
    async def get_file_diff(
        worktree_path: str, file_path: str, ctx: Context = None
    ) -> dict[str, Any]:
        """1ファイル分の unified diff を取得する。

        Args:
            worktree_path: worktree のパス
            file_path: worktree からの相対パス

        Returns:
            差分（success, diff または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            diff = await app_ctx.diff_manager.get_file_diff(worktree_path, file_path)
        except (WorktreeError, ValueError, OSError) as e:
            return error_result(str(e))
        return {"success": True, "file_path": file_path, "diff": diff}

    @mcp.tool()
    async def get_full_file_diff(
        worktree_path: str,
        file_path: str,
        context_lines: int = 3,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """コンテキスト行数を指定して1ファイル分の unified diff を取得する。

        Args:
            worktree_path: worktree のパス
            file_path: worktree からの相対パス
            context_lines: 変更行の前後に含める行数

        Returns:
            差分（success, diff または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            diff = await app_ctx.diff_manager.get_full_file_diff(
                worktree_path, file_path, context_lines
            )
        except (WorktreeError, ValueError, OSError) as e:
            return error_result(str(e))
        return {
            "success": True,
            "file_path": file_path,
            "context_lines": context_lines,
            "diff": diff,
        }

    @mcp.tool()
    async def get_file_context(
        worktree_path: str,
        file_path: str,
        start_line: int,
        end_line: int,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """ファイルの指定範囲の行を取得する。

        Args:
            worktree_path: worktree のパス
            file_path: worktree からの相対パス
            start_line: 開始行（1始まり）
            end_line: 終了行（含む）

        Returns:
            行（success, lines, start_line または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            lines = await app_ctx.diff_manager.get_file_context(
                worktree_path, file_path, start_line, end_line
            )
        except (ValueError, OSError) as e:
            return error_result(str(e))
        return {
            "success": True,
            "file_path": file_path,
            "start_line": max(1, start_line),
            "lines": lines,
        }

    @mcp.tool()
    async def stage_files(
        worktree_path: str,
        files: list[str],
        unstage: bool = False,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """ファイルをステージ（または解除）する。

        Args:
            worktree_path: worktree のパス
            files: 対象ファイル
            unstage: True の場合はステージを解除する

        Returns:
            結果（success, files または error）
        """
        app_ctx = get_app_ctx(ctx)
        if not files:
            return error_result("ファイルが指定されていません")
        try:
            if unstage:
                await app_ctx.diff_manager.unstage_files(worktree_path, files)
            else:
                await app_ctx.diff_manager.stage_files(worktree_path, files)
        except (WorktreeError, ValueError) as e:
            return error_result(str(e))
        return {"success": True, "files": files, "staged": not unstage}

    @mcp.tool()
    async def commit_changes(
        worktree_path: str, message: str, ctx: Context = None
    ) -> dict[str, Any]:
        """全変更をステージしてコミットする。

        Args:
            worktree_path: worktree のパス
            message: コミットメッセージ

        Returns:
            結果（success, message または error）
        """
        app_ctx = get_app_ctx(ctx)
        if not message.strip():
            return error_result("コミットメッセージが空です")
        try:
            await app_ctx.diff_manager.commit_changes(worktree_path, message)
        except WorktreeError as e:
            logger.error(f"コミットに失敗: {worktree_path} - {e}")
            return error_result(f"コミットに失敗しました: {e}")
        return {"success": True, "message": "コミットしました"}

    @mcp.tool()
    async def push_changes(
        worktree_path: str,
        installation_id: int,
        full_name: str,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """現在のブランチを origin へ push する。

        Args:
            worktree_path: worktree のパス
            installation_id: トークン取得に使う installation ID
            full_name: owner/name 形式のリポジトリ名

        Returns:
            結果（success, branch または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            branch = await app_ctx.diff_manager.push_changes(
                worktree_path, installation_id, full_name
            )
        except WorktreeError as e:
            logger.error(f"push に失敗: {worktree_path} - {e}")
            return error_result(f"push に失敗しました: {e}")
        return {"success": True, "branch": branch, "message": f"{branch} を push しました"}
