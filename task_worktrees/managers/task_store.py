"""タスク永続化モジュール。

タスクの正本は JSON ファイル1つに保存する。
各タスクディレクトリの .task.json は外部参照用の写しで、読み込みには使わない。

ファイル形式:
    {
      "tasks": {"<task_id>": {...}},
      "active_task_id": "<task_id>" | null,
      "last_updated": "<ISO8601>"
    }
"""

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from task_worktrees.errors import RepositoryNotFoundError, TaskNotFoundError
from task_worktrees.models.task import RepositoryStatus, Task

logger = logging.getLogger(__name__)

SIDECAR_FILENAME = ".task.json"


@contextmanager
def _state_file_lock(state_file: Path) -> Iterator[None]:
    """状態ファイルの更新時に排他ロックを取得する。"""
    lock_path = state_file.with_name(f"{state_file.stem}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "a+", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _atomic_write_json(file_path: Path, payload: dict[str, Any]) -> None:
    """JSON payload をアトミックに書き込む。"""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
    fd, tmp_path = tempfile.mkstemp(dir=str(file_path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, str(file_path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class TaskStore:
    """タスクを JSON ファイルに保存するクラス。"""

    def __init__(self, state_file: str | Path) -> None:
        """TaskStoreを初期化する。

        Args:
            state_file: 状態ファイルのパス
        """
        self.state_file = Path(state_file).expanduser()

    def _read(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {"tasks": {}, "active_task_id": None}
        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"タスク状態ファイルの読み込みに失敗: {self.state_file} - {e}")
            raise
        data.setdefault("tasks", {})
        data.setdefault("active_task_id", None)
        return data

    def _write(self, data: dict[str, Any]) -> None:
        data["last_updated"] = datetime.now().isoformat()
        _atomic_write_json(self.state_file, data)

    def _load_task(self, raw: dict[str, Any]) -> Task:
        return Task.model_validate(raw)

    # ========== 読み込み ==========

    def list_tasks(self) -> list[Task]:
        """全タスクを作成日時の古い順に返す。"""
        data = self._read()
        tasks = [self._load_task(raw) for raw in data["tasks"].values()]
        return sorted(tasks, key=lambda t: t.created_at)

    def get(self, task_id: str) -> Task | None:
        """タスクを取得する。"""
        raw = self._read()["tasks"].get(task_id)
        return self._load_task(raw) if raw is not None else None

    def require(self, task_id: str) -> Task:
        """タスクを取得する。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
        """
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"タスク {task_id} が見つかりません")
        return task

    def get_active_task_id(self) -> str | None:
        """アクティブなタスクIDを返す。"""
        return self._read().get("active_task_id")

    # ========== 書き込み ==========

    def create(self, task: Task, make_active: bool = True) -> Task:
        """タスクを追加する。"""
        with _state_file_lock(self.state_file):
            data = self._read()
            data["tasks"][task.id] = task.model_dump(mode="json")
            if make_active or not data.get("active_task_id"):
                data["active_task_id"] = task.id
            self._write(data)
        logger.info(f"タスクを保存しました: {task.id} ({task.name})")
        return task

    def update(self, task: Task) -> Task:
        """タスクを上書き保存する（updated_at を更新）。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
        """
        task.updated_at = datetime.now()
        with _state_file_lock(self.state_file):
            data = self._read()
            if task.id not in data["tasks"]:
                raise TaskNotFoundError(f"タスク {task.id} が見つかりません")
            data["tasks"][task.id] = task.model_dump(mode="json")
            self._write(data)
        return task

    def update_repository_status(
        self,
        task_id: str,
        repository_id: int,
        status: RepositoryStatus,
        error_message: str | None = None,
    ) -> Task:
        """タスクリポジトリの状態を遷移させて保存する。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
            RepositoryNotFoundError: リポジトリが存在しない場合
            ValueError: 許可されていない状態遷移の場合
        """
        with _state_file_lock(self.state_file):
            data = self._read()
            raw = data["tasks"].get(task_id)
            if raw is None:
                raise TaskNotFoundError(f"タスク {task_id} が見つかりません")
            task = self._load_task(raw)
            repo = task.get_repository(repository_id)
            if repo is None:
                raise RepositoryNotFoundError(
                    f"タスク {task_id} にリポジトリ {repository_id} がありません"
                )
            repo.transition(status, error_message)
            task.updated_at = datetime.now()
            data["tasks"][task_id] = task.model_dump(mode="json")
            self._write(data)
        return task

    def set_active(self, task_id: str) -> Task:
        """アクティブなタスクを切り替える。

        Raises:
            TaskNotFoundError: タスクが存在しない場合
        """
        with _state_file_lock(self.state_file):
            data = self._read()
            raw = data["tasks"].get(task_id)
            if raw is None:
                raise TaskNotFoundError(f"タスク {task_id} が見つかりません")
            data["active_task_id"] = task_id
            self._write(data)
        return self._load_task(raw)

    def delete(self, task_id: str) -> bool:
        """タスクを削除する。

        アクティブなタスクを削除した場合は、残りのうち最初のタスクをアクティブにする。

        Returns:
            削除した場合 True
        """
        with _state_file_lock(self.state_file):
            data = self._read()
            if task_id not in data["tasks"]:
                return False
            del data["tasks"][task_id]
            if data.get("active_task_id") == task_id:
                data["active_task_id"] = next(iter(data["tasks"]), None)
            self._write(data)
        logger.info(f"タスクを削除しました: {task_id}")
        return True

    # ========== 外部参照用メタデータ ==========

    @staticmethod
    def write_sidecar(task: Task) -> Path:
        """タスクディレクトリに .task.json を書き出す。"""
        path = Path(task.worktree_base_path) / SIDECAR_FILENAME
        _atomic_write_json(path, task.to_sidecar())
        return path
