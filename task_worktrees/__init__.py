"""Task Worktree MCP: タスクごとに隔離された git worktree を管理する MCP サーバー。"""

__version__ = "0.1.0"
