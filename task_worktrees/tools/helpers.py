"""MCP ツール共通のヘルパー関数。"""

from typing import Any

from task_worktrees.context import AppContext
from task_worktrees.models.task import Task


def get_app_ctx(ctx: Any) -> AppContext:
    """MCP Context から AppContext を取得する。"""
    return ctx.request_context.lifespan_context


def task_to_dict(task: Task) -> dict[str, Any]:
    """タスクをツールの戻り値用の辞書に変換する。"""
    return task.model_dump(mode="json")


def error_result(message: str, **extra: Any) -> dict[str, Any]:
    """失敗時の戻り値を作る。"""
    return {"success": False, "error": message, **extra}
