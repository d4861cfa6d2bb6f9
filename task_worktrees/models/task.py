"""タスク・タスクリポジトリモデル定義。"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RepositoryStatus(str, Enum):
    """タスクリポジトリの状態。"""

    INITIALIZING = "initializing"
    """worktree を準備中"""

    READY = "ready"
    """worktree が利用可能"""

    ERROR = "error"
    """準備に失敗（error_message を保持）"""


class TaskStatus(str, Enum):
    """タスクの状態。"""

    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


# 終端状態から再実行すると initializing に戻る
_ALLOWED_TRANSITIONS: dict[RepositoryStatus, set[RepositoryStatus]] = {
    RepositoryStatus.INITIALIZING: {RepositoryStatus.READY, RepositoryStatus.ERROR},
    RepositoryStatus.READY: {RepositoryStatus.INITIALIZING},
    RepositoryStatus.ERROR: {RepositoryStatus.INITIALIZING},
}


def can_transition(current: RepositoryStatus, target: RepositoryStatus) -> bool:
    """状態遷移が許可されているか判定する。"""
    return target in _ALLOWED_TRANSITIONS[RepositoryStatus(current)]


class TaskRepository(BaseModel):
    """タスク内の1リポジトリ分の worktree 情報。"""

    id: int = Field(description="リポジトリID")
    installation_id: int = Field(description="トークン発行に使う installation ID")
    name: str = Field(description="リポジトリ名")
    full_name: str = Field(description="owner/name 形式のリポジトリ名")
    original_branch: str = Field(default="main", description="分岐元として要求されたブランチ")
    task_branch: str = Field(description="タスク専用ブランチ名")
    worktree_path: str = Field(description="worktree のパス")
    status: RepositoryStatus = Field(
        default=RepositoryStatus.INITIALIZING, description="worktree の状態"
    )
    error_message: str | None = Field(default=None, description="error 時のメッセージ")

    def transition(self, target: RepositoryStatus, error_message: str | None = None) -> None:
        """状態を遷移させる。

        Args:
            target: 遷移先の状態
            error_message: error へ遷移する場合のメッセージ

        Raises:
            ValueError: 許可されていない遷移の場合
        """
        if not can_transition(self.status, target):
            raise ValueError(
                f"不正な状態遷移です: {RepositoryStatus(self.status).value} -> {target.value}"
                f" ({self.full_name})"
            )
        self.status = target
        self.error_message = error_message if target == RepositoryStatus.ERROR else None


class RepositorySpec(BaseModel):
    """タスク作成時に指定するリポジトリ。"""

    id: int = Field(description="リポジトリID")
    installation_id: int = Field(description="installation ID")
    name: str = Field(description="リポジトリ名")
    full_name: str = Field(description="owner/name 形式のリポジトリ名")
    default_branch: str | None = Field(default=None, description="デフォルトブランチ")


class Task(BaseModel):
    """タスク情報。TaskRepository を排他的に所有する。"""

    id: str = Field(description="タスクID（uuid）")
    name: str = Field(description="表示用のタスク名")
    repositories: list[TaskRepository] = Field(
        default_factory=list, description="タスクリポジトリ一覧"
    )
    worktree_base_path: str = Field(description="タスクの worktree を置くディレクトリ")
    status: TaskStatus = Field(default=TaskStatus.ACTIVE, description="タスクの状態")
    created_at: datetime = Field(description="作成日時")
    updated_at: datetime = Field(description="更新日時")

    def get_repository(self, repository_id: int) -> TaskRepository | None:
        """ID からタスクリポジトリを取得する。"""
        for repo in self.repositories:
            if repo.id == repository_id:
                return repo
        return None

    def to_sidecar(self) -> dict:
        """外部参照用のメタデータ（.task.json）を組み立てる。"""
        return {
            "id": self.id,
            "name": self.name,
            "status": TaskStatus(self.status).value,
            "repositories": [
                {
                    "name": repo.name,
                    "full_name": repo.full_name,
                    "task_branch": repo.task_branch,
                }
                for repo in self.repositories
            ],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
