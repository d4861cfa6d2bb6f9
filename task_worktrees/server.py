"""Task Worktree MCP Server エントリーポイント。"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from task_worktrees.config.settings import load_settings
from task_worktrees.context import AppContext, build_app_context
from task_worktrees.tools import register_all_tools

# ログ設定（stderrに出力）
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """サーバーライフサイクルを管理する。

    Args:
        server: FastMCPサーバーインスタンス

    Yields:
        アプリケーションコンテキスト
    """
    logger.info("Task Worktree MCP Server を起動しています...")

    settings = load_settings(os.getenv("MCP_DATA_DIR"))
    settings.get_git_repos_dir().mkdir(parents=True, exist_ok=True)
    settings.get_tasks_base_dir().mkdir(parents=True, exist_ok=True)
    app_ctx = build_app_context(settings)

    try:
        yield app_ctx
    finally:
        logger.info("サーバーをシャットダウンしています...")
        # 割り当て途中では中断しない
        jobs = [job for job in app_ctx.setup_jobs.values() if not job.done()]
        if jobs:
            logger.info(f"実行中の worktree 準備 {len(jobs)} 件の完了を待っています")
            await asyncio.gather(*jobs, return_exceptions=True)


# FastMCPサーバーを作成
mcp = FastMCP("Task Worktree MCP", lifespan=app_lifespan)
register_all_tools(mcp)


def main() -> None:
    """MCPサーバーを起動する。"""
    mcp.run()


if __name__ == "__main__":
    main()
