"""タスク管理ツール。"""

import asyncio
import functools
import logging
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from pydantic import ValidationError

from task_worktrees.context import AppContext
from task_worktrees.errors import WorktreeError
from task_worktrees.models.task import RepositorySpec, RepositoryStatus, TaskStatus
from task_worktrees.tools.helpers import error_result, get_app_ctx, task_to_dict

logger = logging.getLogger(__name__)


def _finish_setup_job(app_ctx: AppContext, task_id: str, job: asyncio.Task) -> None:
    """バックグラウンドの準備ジョブを登録から外し、失敗していれば記録する。"""
    if app_ctx.setup_jobs.get(task_id) is job:
        del app_ctx.setup_jobs[task_id]
    if job.cancelled():
        logger.warning(f"バックグラウンドの worktree 準備が中断されました: {task_id}")
        return
    error = job.exception()
    if error is not None:
        logger.error(
            f"バックグラウンドの worktree 準備に失敗: {task_id} - {error}", exc_info=error
        )


def register_tools(mcp: FastMCP) -> None:
    """タスク管理ツールを登録する。"""

    @mcp.tool()
    async def create_task(
        repositories: list[dict[str, Any]],
        name: str | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """タスクを作成する。

        worktree はまだ作成しない。setup_worktrees で準備する。

        Args:
            repositories: 対象リポジトリ
                （id, installation_id, name, full_name, default_branch）
            name: タスク名（省略時は自動生成）

        Returns:
            作成結果（success, task または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            specs = [RepositorySpec.model_validate(repo) for repo in repositories]
            task = app_ctx.task_manager.create_task(specs, name=name)
        except (ValidationError, ValueError, OSError) as e:
            return error_result(f"タスクの作成に失敗しました: {e}")

        return {
            "success": True,
            "task": task_to_dict(task),
            "message": f"タスク {task.name} を作成しました",
        }

    @mcp.tool()
    async def list_tasks(ctx: Context = None) -> dict[str, Any]:
        """タスク一覧を取得する。

        Returns:
            タスク一覧（success, tasks, count, active_task_id）
        """
        app_ctx = get_app_ctx(ctx)
        tasks = app_ctx.task_manager.list_tasks()
        return {
            "success": True,
            "tasks": [task_to_dict(t) for t in tasks],
            "count": len(tasks),
            "active_task_id": app_ctx.task_store.get_active_task_id(),
        }

    @mcp.tool()
    async def get_task(task_id: str | None = None, ctx: Context = None) -> dict[str, Any]:
        """タスクを取得する。

        Args:
            task_id: タスクID（省略時はアクティブなタスク）

        Returns:
            タスク情報（success, task または error）
        """
        app_ctx = get_app_ctx(ctx)
        if task_id:
            task = app_ctx.task_manager.get_task(task_id)
        else:
            task = app_ctx.task_manager.get_active_task()
        if task is None:
            return error_result(f"タスク {task_id or '(active)'} が見つかりません")
        return {"success": True, "task": task_to_dict(task)}

    @mcp.tool()
    async def set_active_task(task_id: str, ctx: Context = None) -> dict[str, Any]:
        """アクティブなタスクを切り替える。

        Args:
            task_id: タスクID

        Returns:
            切り替え結果（success, task または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            task = app_ctx.task_manager.set_active_task(task_id)
        except WorktreeError as e:
            return error_result(str(e))
        return {"success": True, "task": task_to_dict(task)}

    @mcp.tool()
    async def update_task(
        task_id: str,
        name: str | None = None,
        status: str | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """タスク名またはタスクの状態を更新する。

        Args:
            task_id: タスクID
            name: 新しいタスク名
            status: 新しい状態（active / completed / archived）

        Returns:
            更新結果（success, task または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            new_status = TaskStatus(status) if status is not None else None
            task = app_ctx.task_manager.update_task(task_id, name=name, status=new_status)
        except (ValueError, WorktreeError) as e:
            return error_result(str(e))
        return {"success": True, "task": task_to_dict(task)}

    @mcp.tool()
    async def delete_task(task_id: str, ctx: Context = None) -> dict[str, Any]:
        """タスクを削除する。

        worktree・タスクブランチ・タスクディレクトリを削除する。
        準備中の場合は完了を待ってから削除する。

        Args:
            task_id: タスクID

        Returns:
            削除結果（success, message または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            deleted = await app_ctx.task_manager.delete_task(task_id)
        except (WorktreeError, OSError) as e:
            logger.error(f"タスクの削除に失敗: {task_id} - {e}")
            return error_result(f"タスクの削除に失敗しました: {e}")

        if not deleted:
            return error_result(f"タスク {task_id} が見つかりません")
        return {"success": True, "message": f"タスク {task_id} を削除しました"}

    @mcp.tool()
    async def setup_worktrees(
        task_id: str,
        background: bool = False,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """タスクの全リポジトリに worktree を準備する。

        失敗したリポジトリは error になり、残りのリポジトリは準備を続ける。

        Args:
            task_id: タスクID
            background: True の場合は開始だけして即座に返す
                （進捗は get_setup_progress で確認）

        Returns:
            準備結果（success, task, ready_count, error_count または error）
        """
        app_ctx = get_app_ctx(ctx)
        manager = app_ctx.task_manager
        if manager.get_task(task_id) is None:
            return error_result(f"タスク {task_id} が見つかりません")

        if background:
            running = app_ctx.setup_jobs.get(task_id)
            if running is not None and not running.done():
                return {
                    "success": True,
                    "started": False,
                    "message": "worktree の準備は既に実行中です",
                }
            job = asyncio.create_task(manager.setup_worktrees(task_id))
            app_ctx.setup_jobs[task_id] = job
            job.add_done_callback(functools.partial(_finish_setup_job, app_ctx, task_id))
            return {
                "success": True,
                "started": True,
                "message": "worktree の準備を開始しました",
            }

        try:
            task = await manager.setup_worktrees(task_id)
        except WorktreeError as e:
            return error_result(str(e))

        ready = [r for r in task.repositories if r.status == RepositoryStatus.READY]
        errors = [r for r in task.repositories if r.status == RepositoryStatus.ERROR]
        return {
            "success": True,
            "task": task_to_dict(task),
            "ready_count": len(ready),
            "error_count": len(errors),
        }

    @mcp.tool()
    async def retry_repository(
        task_id: str, repository_id: int, ctx: Context = None
    ) -> dict[str, Any]:
        """1リポジトリ分の worktree 準備をやり直す。

        Args:
            task_id: タスクID
            repository_id: リポジトリID

        Returns:
            再実行結果（success, repository または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            task = await app_ctx.task_manager.retry_repository(task_id, repository_id)
        except WorktreeError as e:
            return error_result(str(e))

        repo = task.get_repository(repository_id)
        return {"success": True, "repository": repo.model_dump(mode="json")}

    @mcp.tool()
    async def get_setup_progress(
        task_id: str,
        repository_id: int | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """worktree 準備の進捗イベント履歴を取得する。

        Args:
            task_id: タスクID
            repository_id: リポジトリID（省略時は全リポジトリ）

        Returns:
            進捗（success, events, running, repositories）
        """
        app_ctx = get_app_ctx(ctx)
        task = app_ctx.task_manager.get_task(task_id)
        if task is None:
            return error_result(f"タスク {task_id} が見つかりません")

        events = app_ctx.progress_manager.get_history(task_id, repository_id)
        job = app_ctx.setup_jobs.get(task_id)
        return {
            "success": True,
            "running": job is not None and not job.done(),
            "events": [e.model_dump(mode="json") for e in events],
            "repositories": [
                {
                    "id": r.id,
                    "name": r.name,
                    "status": r.status.value,
                    "error_message": r.error_message,
                }
                for r in task.repositories
            ],
        }

    @mcp.tool()
    async def watch_setup_progress(
        task_id: str,
        timeout_seconds: float = 30.0,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """バックグラウンドの worktree 準備を購読し、完了かタイムアウトまで進捗を受け取る。

        購読開始前のイベントは含まれない（get_setup_progress の履歴を使う）。

        Args:
            task_id: タスクID
            timeout_seconds: 待機する最大秒数

        Returns:
            受信したイベント（success, events, running）
        """
        app_ctx = get_app_ctx(ctx)
        if app_ctx.task_manager.get_task(task_id) is None:
            return error_result(f"タスク {task_id} が見つかりません")

        job = app_ctx.setup_jobs.get(task_id)
        events = []
        async with app_ctx.progress_manager.stream(task_id) as queue:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout_seconds
            while job is not None and not job.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=min(remaining, 0.5))
                except asyncio.TimeoutError:
                    continue
                events.append(event)
            while not queue.empty():
                events.append(queue.get_nowait())

        return {
            "success": True,
            "running": job is not None and not job.done(),
            "events": [e.model_dump(mode="json") for e in events],
        }
