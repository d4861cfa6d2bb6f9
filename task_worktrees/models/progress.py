"""worktree 準備の進捗イベント定義。"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProgressStatus(str, Enum):
    """進捗フェーズ。"""

    CLONING = "cloning"
    CREATING_WORKTREE = "creating-worktree"
    CHECKING_OUT = "checking-out"
    READY = "ready"
    ERROR = "error"


class WorktreeProgress(BaseModel):
    """1リポジトリ分の進捗イベント。永続化しない。"""

    task_id: str = Field(description="タスクID")
    repository_id: int = Field(description="リポジトリID")
    status: ProgressStatus = Field(description="進捗フェーズ")
    progress: int | None = Field(default=None, description="進捗率（0-100、clone 時のみ）")
    message: str | None = Field(default=None, description="表示用メッセージ")
    created_at: datetime = Field(default_factory=datetime.now, description="発生日時")
