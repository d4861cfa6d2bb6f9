"""作業ツリーの状態・差分モデル定義。"""

from pydantic import BaseModel, Field


class DiffEntry(BaseModel):
    """ファイルごとの行数差分。"""

    path: str = Field(description="worktree からの相対パス")
    additions: int = Field(default=0, description="追加行数")
    deletions: int = Field(default=0, description="削除行数")
    binary: bool = Field(default=False, description="バイナリファイルかどうか")


class FileStatus(BaseModel):
    """porcelain status の1エントリ。"""

    path: str = Field(description="ファイルパス")
    index: str = Field(description="インデックス側のステータス文字（X）")
    working_dir: str = Field(description="作業ツリー側のステータス文字（Y）")
    original_path: str | None = Field(default=None, description="リネーム元のパス")


class WorkingTreeStatus(BaseModel):
    """worktree の porcelain status サマリー。"""

    current: str | None = Field(default=None, description="現在のブランチ")
    tracking: str | None = Field(default=None, description="追跡しているリモートブランチ")
    ahead: int = Field(default=0, description="リモートより進んでいるコミット数")
    behind: int = Field(default=0, description="リモートより遅れているコミット数")
    files: list[FileStatus] = Field(default_factory=list)
    staged: list[str] = Field(default_factory=list, description="ステージ済み")
    modified: list[str] = Field(default_factory=list, description="未ステージの変更")
    created: list[str] = Field(default_factory=list, description="新規追加（ステージ済み）")
    deleted: list[str] = Field(default_factory=list, description="削除")
    renamed: list[str] = Field(default_factory=list, description="リネーム")
    conflicted: list[str] = Field(default_factory=list, description="コンフリクト")
    not_added: list[str] = Field(default_factory=list, description="未追跡")

    @property
    def is_clean(self) -> bool:
        """変更がないかどうか。"""
        return not self.files

    def to_dict(self) -> dict:
        """シリアライズ可能な辞書に変換する（is_clean を含む）。"""
        data = self.model_dump()
        data["is_clean"] = self.is_clean
        return data
