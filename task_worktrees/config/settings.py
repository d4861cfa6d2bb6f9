"""設定管理モジュール。"""

import os
from pathlib import Path

from pydantic import ConfigDict, field_validator
from pydantic_settings import BaseSettings

DEFAULT_DATA_DIR = "~/.task-worktree-mcp"
"""データディレクトリのデフォルト値"""


def resolve_env_file(data_dir: str | os.PathLike[str] | None) -> str | None:
    """指定した data_dir から .env ファイルを解決する。

    Args:
        data_dir: データディレクトリのパス

    Returns:
        .env ファイルのパス（存在する場合）、または None
    """
    if not data_dir:
        return None

    env_file = Path(data_dir).expanduser() / ".env"
    if env_file.exists():
        return str(env_file)
    return None


def get_default_env_file() -> str | None:
    """データディレクトリ配下の .env ファイルのパスを取得する。

    MCP_DATA_DIR 環境変数が設定されていればそちらを優先する。
    """
    return resolve_env_file(os.getenv("MCP_DATA_DIR", DEFAULT_DATA_DIR))


class Settings(BaseSettings):
    """Task Worktree MCP サーバーの設定。

    環境変数で上書き可能。プレフィックスは MCP_。
    例: MCP_NETWORK_TIMEOUT_SECONDS=1200

    優先順位:
    1. 環境変数（最優先）
    2. データディレクトリの .env ファイル（{data_dir}/.env）
    3. デフォルト値
    """

    model_config = ConfigDict(
        env_prefix="MCP_",
        env_file=get_default_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ディレクトリ設定
    data_dir: str = DEFAULT_DATA_DIR
    """データディレクトリ（キャッシュ・状態ファイルの既定の置き場所）"""

    git_repos_dir: str | None = None
    """共有リポジトリキャッシュのディレクトリ（未設定なら {data_dir}/git-repos）"""

    tasks_base_dir: str | None = None
    """タスクごとの worktree を置くディレクトリ（未設定なら {data_dir}/tasks）"""

    state_file: str | None = None
    """タスク状態ファイル（未設定なら {data_dir}/tasks.json）"""

    credentials_file: str | None = None
    """installation_id → トークン の対応を記述した YAML ファイル"""

    # リモート設定
    git_host: str = "github.com"
    """リモートのホスト名"""

    remote_url_template: str = "https://x-access-token:{token}@{host}/{full_name}.git"
    """認証付きリモート URL のテンプレート"""

    clean_remote_url_template: str = "https://{host}/{full_name}.git"
    """トークンを含まないリモート URL のテンプレート（push 後に戻す先）"""

    # タイムアウト設定
    git_command_timeout_seconds: float = 120.0
    """ローカルで完結する git コマンドのタイムアウト（秒）"""

    network_timeout_seconds: float = 900.0
    """clone / fetch / push のタイムアウト（秒）"""

    allocation_step_timeout_seconds: float = 1800.0
    """worktree 割り当ての各ステップの期限（秒）。
    超過した場合はそのリポジトリを error として扱う。"""

    # ブランチ設定
    task_branch_prefix: str = "task"
    """タスクブランチのプレフィックス（task/<short_id>/<repo>）"""

    short_id_length: int = 8
    """ブランチ名に使うタスクIDの長さ"""

    branch_collision_max_retries: int = 1
    """ブランチが別の worktree で使用中だった場合に掃除して再試行する回数"""

    # 進捗通知設定
    progress_queue_size: int = 100
    """購読者ごとの進捗キューの上限"""

    progress_history_size: int = 200
    """タスクごとに保持する進捗イベント履歴の件数"""

    # diff 設定
    default_context_lines: int = 3
    """unified diff のデフォルトのコンテキスト行数"""

    @field_validator("remote_url_template", "clean_remote_url_template")
    @classmethod
    def validate_url_template(cls, value: str) -> str:
        """URL テンプレートに {full_name} が含まれることを確認する。"""
        candidate = value.strip()
        if "{full_name}" not in candidate:
            raise ValueError(
                f"URL テンプレートには {{full_name}} を含めてください: {candidate}"
            )
        return candidate

    @field_validator("short_id_length")
    @classmethod
    def validate_short_id_length(cls, value: int) -> int:
        """短縮IDの長さを uuid の範囲に制限する。"""
        if not (4 <= value <= 32):
            raise ValueError(f"short_id_length は 4..32 で指定してください: {value}")
        return value

    def _under_data_dir(self, value: str | None, default_name: str) -> Path:
        if value:
            return Path(value).expanduser()
        return Path(self.data_dir).expanduser() / default_name

    def get_git_repos_dir(self) -> Path:
        """共有リポジトリキャッシュのディレクトリを返す。"""
        return self._under_data_dir(self.git_repos_dir, "git-repos")

    def get_tasks_base_dir(self) -> Path:
        """タスクディレクトリのベースを返す。"""
        return self._under_data_dir(self.tasks_base_dir, "tasks")

    def get_state_file(self) -> Path:
        """タスク状態ファイルのパスを返す。"""
        return self._under_data_dir(self.state_file, "tasks.json")

    def build_remote_url(self, full_name: str, token: str | None = None) -> str:
        """リモート URL を組み立てる。

        token を渡した場合は認証付き URL、None の場合はトークンを含まない URL を返す。
        """
        if token is None:
            return self.clean_remote_url_template.format(
                host=self.git_host, full_name=full_name
            )
        return self.remote_url_template.format(
            token=token, host=self.git_host, full_name=full_name
        )


def load_settings(data_dir: str | os.PathLike[str] | None = None) -> Settings:
    """指定 data_dir の .env を優先して Settings を生成する。

    Args:
        data_dir: データディレクトリ（None の場合は環境変数 + デフォルト）

    Returns:
        読み込み済み Settings インスタンス
    """
    if data_dir is None:
        return Settings()

    env_file = resolve_env_file(data_dir)
    if env_file:
        return Settings(_env_file=env_file, data_dir=str(data_dir))
    return Settings(_env_file=None, data_dir=str(data_dir))
