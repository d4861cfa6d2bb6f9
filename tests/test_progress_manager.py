"""ProgressManagerのテスト。"""

import asyncio

import pytest

from task_worktrees.managers.progress_manager import ProgressManager
from task_worktrees.models.progress import ProgressStatus, WorktreeProgress


def _event(task_id="task-1", repository_id=1, status=ProgressStatus.CLONING, message=None):
    return WorktreeProgress(
        task_id=task_id, repository_id=repository_id, status=status, message=message
    )


class TestProgressManager:
    """ProgressManager のテスト。"""

    @pytest.mark.asyncio
    async def test_subscriber_receives_events_in_order(self):
        """購読者がイベントを発生順に受け取ることをテスト。"""
        manager = ProgressManager()
        async with manager.stream("task-1") as queue:
            await manager.publish(_event(status=ProgressStatus.CLONING))
            await manager.publish(_event(status=ProgressStatus.CREATING_WORKTREE))
            await manager.publish(_event(status=ProgressStatus.READY))

            received = [queue.get_nowait().status for _ in range(3)]

        assert received == [
            ProgressStatus.CLONING,
            ProgressStatus.CREATING_WORKTREE,
            ProgressStatus.READY,
        ]

    @pytest.mark.asyncio
    async def test_events_are_scoped_to_task(self):
        """他のタスクのイベントは届かないことをテスト。"""
        manager = ProgressManager()
        queue = manager.subscribe("task-1")

        await manager.publish(_event(task_id="task-2"))

        assert queue.empty()

    @pytest.mark.asyncio
    async def test_each_subscriber_gets_a_copy(self):
        """複数の購読者がそれぞれイベントを受け取ることをテスト。"""
        manager = ProgressManager()
        first = manager.subscribe("task-1")
        second = manager.subscribe("task-1")

        await manager.publish(_event())

        assert first.qsize() == 1
        assert second.qsize() == 1

    @pytest.mark.asyncio
    async def test_backpressure_does_not_drop(self):
        """キューが満杯の場合 publish が待機し、イベントが失われないことをテスト。"""
        manager = ProgressManager(queue_size=1)
        queue = manager.subscribe("task-1")
        await manager.publish(_event(message="first"))

        pending = asyncio.create_task(manager.publish(_event(message="second")))
        await asyncio.sleep(0.05)
        assert not pending.done()

        assert queue.get_nowait().message == "first"
        await asyncio.wait_for(pending, timeout=1)
        assert queue.get_nowait().message == "second"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """購読解除後はイベントが届かないことをテスト。"""
        manager = ProgressManager()
        queue = manager.subscribe("task-1")
        manager.unsubscribe("task-1", queue)

        await manager.publish(_event())

        assert queue.empty()

    @pytest.mark.asyncio
    async def test_history(self):
        """履歴をリポジトリごとに絞り込めることをテスト。"""
        manager = ProgressManager()
        await manager.publish(_event(repository_id=1))
        await manager.publish(_event(repository_id=2))
        await manager.publish(_event(repository_id=1, status=ProgressStatus.READY))

        assert len(manager.get_history("task-1")) == 3
        only_first = manager.get_history("task-1", repository_id=1)
        assert [e.status for e in only_first] == [ProgressStatus.CLONING, ProgressStatus.READY]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        """履歴が上限件数を超えないことをテスト。"""
        manager = ProgressManager(history_size=3)
        for i in range(5):
            await manager.publish(_event(message=str(i)))

        assert [e.message for e in manager.get_history("task-1")] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_clear(self):
        """clear で履歴が消えることをテスト。"""
        manager = ProgressManager()
        await manager.publish(_event())
        manager.clear("task-1")
        assert manager.get_history("task-1") == []
