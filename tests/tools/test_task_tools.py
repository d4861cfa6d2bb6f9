"""タスク管理ツールのテスト。"""

import asyncio
import logging
import os
from unittest.mock import patch

import pytest
from mcp.server.fastmcp import FastMCP

from tests.conftest import INSTALLATION_ID, get_tool_fn
from task_worktrees.errors import TaskNotFoundError
from task_worktrees.tools.task import register_tools


@pytest.fixture
def task_tools():
    """タスク管理ツールを登録した FastMCP。"""
    mcp = FastMCP("test")
    register_tools(mcp)
    return mcp


def _repo_payload(full_name: str, repo_id: int = 1, default_branch: str = "main") -> dict:
    return {
        "id": repo_id,
        "installation_id": INSTALLATION_ID,
        "name": full_name.split("/")[-1],
        "full_name": full_name,
        "default_branch": default_branch,
    }


class TestCreateTask:
    """create_task ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_create_task_success(self, task_tools, mock_mcp_context):
        """タスクを作成できることをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")

        result = await create_task(
            repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context
        )

        assert result["success"] is True
        task = result["task"]
        assert task["repositories"][0]["status"] == "initializing"
        assert os.path.isdir(task["worktree_base_path"])

    @pytest.mark.asyncio
    async def test_create_task_invalid_payload(self, task_tools, mock_mcp_context):
        """不正なリポジトリ指定でエラーを返すことをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")

        result = await create_task(repositories=[{"name": "api"}], ctx=mock_mcp_context)

        assert result["success"] is False
        assert "error" in result


class TestListAndGetTask:
    """list_tasks / get_task / set_active_task ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_list_and_switch_active(self, task_tools, mock_mcp_context):
        """タスク一覧とアクティブタスクの切り替えをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        list_tasks = get_tool_fn(task_tools, "list_tasks")
        get_task = get_tool_fn(task_tools, "get_task")
        set_active_task = get_tool_fn(task_tools, "set_active_task")

        first = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        second = await create_task(repositories=[_repo_payload("acme/web")], ctx=mock_mcp_context)

        listed = await list_tasks(ctx=mock_mcp_context)
        assert listed["count"] == 2
        assert listed["active_task_id"] == second["task"]["id"]

        switched = await set_active_task(task_id=first["task"]["id"], ctx=mock_mcp_context)
        assert switched["success"] is True

        active = await get_task(ctx=mock_mcp_context)
        assert active["task"]["id"] == first["task"]["id"]

    @pytest.mark.asyncio
    async def test_get_unknown_task(self, task_tools, mock_mcp_context):
        """存在しないタスクでエラーを返すことをテスト。"""
        get_task = get_tool_fn(task_tools, "get_task")
        set_active_task = get_tool_fn(task_tools, "set_active_task")

        assert (await get_task(task_id="nope", ctx=mock_mcp_context))["success"] is False
        assert (await set_active_task(task_id="nope", ctx=mock_mcp_context))["success"] is False


class TestSetupWorktrees:
    """setup_worktrees / retry_repository / get_setup_progress ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_setup_partial_failure(self, task_tools, mock_mcp_context, make_origin):
        """一部のリポジトリが失敗しても結果を返すことをテスト。"""
        make_origin("acme/api")
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")

        created = await create_task(
            repositories=[_repo_payload("acme/api"), _repo_payload("acme/missing", repo_id=2)],
            ctx=mock_mcp_context,
        )
        result = await setup_worktrees(task_id=created["task"]["id"], ctx=mock_mcp_context)

        assert result["success"] is True
        assert result["ready_count"] == 1
        assert result["error_count"] == 1
        statuses = {r["name"]: r["status"] for r in result["task"]["repositories"]}
        assert statuses == {"api": "ready", "missing": "error"}

    @pytest.mark.asyncio
    async def test_setup_in_background(self, task_tools, mock_mcp_context, app_ctx, make_origin):
        """バックグラウンドで準備し、進捗を取得できることをテスト。"""
        make_origin("acme/api")
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        get_setup_progress = get_tool_fn(task_tools, "get_setup_progress")

        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        task_id = created["task"]["id"]

        started = await setup_worktrees(task_id=task_id, background=True, ctx=mock_mcp_context)
        assert started["started"] is True
        job = app_ctx.setup_jobs[task_id]
        await asyncio.wait_for(job, timeout=60)
        await asyncio.sleep(0)

        progress = await get_setup_progress(task_id=task_id, ctx=mock_mcp_context)
        assert progress["success"] is True
        assert progress["running"] is False
        assert progress["events"][0]["status"] == "cloning"
        assert progress["events"][-1]["status"] == "ready"
        assert progress["repositories"][0]["status"] == "ready"

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(
        self, task_tools, mock_mcp_context, app_ctx, caplog
    ):
        """バックグラウンドの準備で発生した例外がログに記録されることをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        task_id = created["task"]["id"]

        with patch.object(
            app_ctx.task_manager,
            "setup_worktrees",
            side_effect=TaskNotFoundError(f"タスク {task_id} が見つかりません"),
        ), caplog.at_level(logging.ERROR, logger="task_worktrees.tools.task"):
            await setup_worktrees(task_id=task_id, background=True, ctx=mock_mcp_context)
            job = app_ctx.setup_jobs[task_id]
            await asyncio.wait([job])
            await asyncio.sleep(0)

        assert task_id not in app_ctx.setup_jobs
        assert any(task_id in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_setup_unknown_task(self, task_tools, mock_mcp_context):
        """存在しないタスクでエラーを返すことをテスト。"""
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        result = await setup_worktrees(task_id="nope", ctx=mock_mcp_context)
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_retry_repository(self, task_tools, mock_mcp_context, make_origin):
        """失敗したリポジトリを再実行できることをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        retry_repository = get_tool_fn(task_tools, "retry_repository")

        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        task_id = created["task"]["id"]
        first = await setup_worktrees(task_id=task_id, ctx=mock_mcp_context)
        assert first["error_count"] == 1

        make_origin("acme/api")
        result = await retry_repository(task_id=task_id, repository_id=1, ctx=mock_mcp_context)

        assert result["success"] is True
        assert result["repository"]["status"] == "ready"


class TestUpdateTask:
    """update_task ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_archive_task(self, task_tools, mock_mcp_context):
        """タスクをアーカイブできることをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        update_task = get_tool_fn(task_tools, "update_task")
        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)

        result = await update_task(
            task_id=created["task"]["id"], name="done", status="archived", ctx=mock_mcp_context
        )

        assert result["success"] is True
        assert result["task"]["name"] == "done"
        assert result["task"]["status"] == "archived"

    @pytest.mark.asyncio
    async def test_invalid_status(self, task_tools, mock_mcp_context):
        """不正な状態や存在しないタスクでエラーを返すことをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        update_task = get_tool_fn(task_tools, "update_task")
        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)

        invalid = await update_task(
            task_id=created["task"]["id"], status="finished", ctx=mock_mcp_context
        )
        unknown = await update_task(task_id="nope", status="completed", ctx=mock_mcp_context)

        assert invalid["success"] is False
        assert unknown["success"] is False


class TestDeleteTask:
    """delete_task ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_delete_task(self, task_tools, mock_mcp_context, make_origin):
        """タスクを削除できることをテスト。"""
        make_origin("acme/api")
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        delete_task = get_tool_fn(task_tools, "delete_task")

        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        task_id = created["task"]["id"]
        await setup_worktrees(task_id=task_id, ctx=mock_mcp_context)

        result = await delete_task(task_id=task_id, ctx=mock_mcp_context)

        assert result["success"] is True
        assert not os.path.exists(created["task"]["worktree_base_path"])

        again = await delete_task(task_id=task_id, ctx=mock_mcp_context)
        assert again["success"] is False


class TestWatchSetupProgress:
    """watch_setup_progress ツールのテスト。"""

    @pytest.mark.asyncio
    async def test_watch_until_done(self, task_tools, mock_mcp_context, make_origin):
        """準備完了までのイベントを受け取ることをテスト。"""
        make_origin("acme/api")
        create_task = get_tool_fn(task_tools, "create_task")
        setup_worktrees = get_tool_fn(task_tools, "setup_worktrees")
        watch_setup_progress = get_tool_fn(task_tools, "watch_setup_progress")

        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        task_id = created["task"]["id"]
        await setup_worktrees(task_id=task_id, background=True, ctx=mock_mcp_context)

        result = await watch_setup_progress(
            task_id=task_id, timeout_seconds=60, ctx=mock_mcp_context
        )

        assert result["success"] is True
        assert result["running"] is False
        statuses = [e["status"] for e in result["events"]]
        assert statuses[0] == "cloning"
        assert statuses[-1] == "ready"
        assert "creating-worktree" in statuses

    @pytest.mark.asyncio
    async def test_watch_without_job(self, task_tools, mock_mcp_context):
        """準備が実行中でない場合は即座に返ることをテスト。"""
        create_task = get_tool_fn(task_tools, "create_task")
        watch_setup_progress = get_tool_fn(task_tools, "watch_setup_progress")

        created = await create_task(repositories=[_repo_payload("acme/api")], ctx=mock_mcp_context)
        result = await watch_setup_progress(
            task_id=created["task"]["id"], timeout_seconds=1, ctx=mock_mcp_context
        )

        assert result == {"success": True, "running": False, "events": []}
