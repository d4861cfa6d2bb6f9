"""リポジトリキャッシュ・Worktreeモデル定義。"""

from datetime import datetime

from pydantic import BaseModel, Field


class WorktreeInfo(BaseModel):
    """git worktree 情報。"""

    path: str = Field(description="worktreeのパス")
    branch: str = Field(default="", description="ブランチ名")
    commit: str = Field(default="", description="現在のコミットハッシュ")
    is_bare: bool = Field(default=False, description="bareリポジトリかどうか")
    is_detached: bool = Field(default=False, description="detached HEADかどうか")
    locked: bool = Field(default=False, description="ロックされているかどうか")
    prunable: bool = Field(default=False, description="削除可能かどうか")


class RepositoryCacheEntry(BaseModel):
    """共有リポジトリキャッシュのエントリ（リモートリポジトリごとに1つ）。"""

    full_name: str = Field(description="owner/name 形式のリポジトリ名")
    local_path: str = Field(description="ローカルクローンのパス")
    last_fetched_at: datetime | None = Field(default=None, description="最終 fetch 日時")
