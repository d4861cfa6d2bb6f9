"""MCP Tools モジュール。"""

from mcp.server.fastmcp import FastMCP

from task_worktrees.tools import diff, task, worktree


def register_all_tools(mcp: FastMCP) -> None:
    """全ツールをMCPサーバーに登録する。

    Args:
        mcp: FastMCPインスタンス
    """
    # タスク管理
    task.register_tools(mcp)

    # Git worktree状態管理
    worktree.register_tools(mcp)

    # 差分・コミット
    diff.register_tools(mcp)
