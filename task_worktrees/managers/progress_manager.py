"""worktree 準備の進捗通知モジュール。

タスクごとに購読者ごとの上限付きキューへイベントを配送する。
キューが満杯の場合 publish は空きが出るまで待つため、イベントは破棄されない。
ポーリング用に直近のイベント履歴も保持する。
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from task_worktrees.models.progress import WorktreeProgress

logger = logging.getLogger(__name__)


class ProgressManager:
    """進捗イベントの配送を管理するクラス。"""

    def __init__(self, queue_size: int = 100, history_size: int = 200) -> None:
        """ProgressManagerを初期化する。

        Args:
            queue_size: 購読者ごとのキュー上限
            history_size: タスクごとの履歴保持件数
        """
        self.queue_size = queue_size
        self.history_size = history_size
        self._subscribers: dict[str, list[asyncio.Queue[WorktreeProgress]]] = {}
        self._history: dict[str, deque[WorktreeProgress]] = {}

    def subscribe(self, task_id: str) -> asyncio.Queue[WorktreeProgress]:
        """タスクの進捗を購読するキューを作成する。"""
        queue: asyncio.Queue[WorktreeProgress] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(task_id, []).append(queue)
        return queue

    def unsubscribe(self, task_id: str, queue: asyncio.Queue[WorktreeProgress]) -> None:
        """購読を解除する。"""
        queues = self._subscribers.get(task_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[task_id]

    @asynccontextmanager
    async def stream(self, task_id: str) -> AsyncIterator[asyncio.Queue[WorktreeProgress]]:
        """購読と解除を行うコンテキストマネージャー。"""
        queue = self.subscribe(task_id)
        try:
            yield queue
        finally:
            self.unsubscribe(task_id, queue)

    async def publish(self, event: WorktreeProgress) -> None:
        """イベントを履歴に記録し、全購読者へ配送する。"""
        history = self._history.get(event.task_id)
        if history is None:
            history = deque(maxlen=self.history_size)
            self._history[event.task_id] = history
        history.append(event)

        logger.info(
            f"[{event.task_id[:8]}] repo={event.repository_id} "
            f"{event.status.value}: {event.message or ''}"
        )

        for queue in list(self._subscribers.get(event.task_id, [])):
            await queue.put(event)

    def get_history(
        self, task_id: str, repository_id: int | None = None
    ) -> list[WorktreeProgress]:
        """タスクの進捗履歴を古い順に返す。"""
        events = list(self._history.get(task_id, ()))
        if repository_id is None:
            return events
        return [e for e in events if e.repository_id == repository_id]

    def clear(self, task_id: str) -> None:
        """タスクの履歴と購読者を破棄する。"""
        self._history.pop(task_id, None)
        self._subscribers.pop(task_id, None)
