"""pytest設定とフィクスチャ。"""

import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from task_worktrees.config.settings import Settings
from task_worktrees.context import build_app_context
from task_worktrees.managers.credential_provider import StaticCredentialProvider
from task_worktrees.managers.diff_manager import DiffManager
from task_worktrees.managers.git_gateway import GitGateway
from task_worktrees.managers.progress_manager import ProgressManager
from task_worktrees.managers.repository_cache import RepositoryCache
from task_worktrees.managers.task_manager import TaskManager
from task_worktrees.managers.task_store import TaskStore
from task_worktrees.managers.worktree_manager import WorktreeManager
from task_worktrees.models.task import RepositorySpec, TaskRepository

INSTALLATION_ID = 1001
TEST_TOKEN = "ghs_testtoken"


def get_tool_fn(mcp, name: str):
    """FastMCP に登録されたツール関数を名前で取得する。"""
    for tool in mcp._tool_manager._tools.values():
        if tool.name == name:
            return tool.fn
    raise KeyError(name)


def git(*args: str, cwd: Path | str | None = None) -> str:
    """テスト用に git を同期実行する。"""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """コミットに必要な git の作者情報を設定する。"""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


@pytest.fixture
def temp_dir():
    """一時ディレクトリを作成する。"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def remotes_dir(temp_dir):
    """bare リモートを置くディレクトリ。"""
    path = temp_dir / "remotes"
    path.mkdir()
    return path


@pytest.fixture
def make_origin(temp_dir, remotes_dir):
    """bare リモートリポジトリを作成するファクトリ。

    最初のブランチがデフォルトブランチになる。
    """

    def _make(full_name: str, branches: tuple[str, ...] = ("main", "dev")) -> Path:
        work = temp_dir / "work" / full_name
        work.mkdir(parents=True)
        git("init", "-q", cwd=work)
        (work / "README.md").write_text("hello\nworld\n", encoding="utf-8")
        git("add", "README.md", cwd=work)
        git("commit", "-q", "-m", "init", cwd=work)
        git("branch", "-M", branches[0], cwd=work)
        for branch in branches[1:]:
            git("branch", branch, cwd=work)

        bare = remotes_dir / f"{full_name}.git"
        bare.parent.mkdir(parents=True, exist_ok=True)
        git("clone", "-q", "--bare", str(work), str(bare))
        return bare

    return _make


@pytest.fixture
def settings(temp_dir, remotes_dir):
    """テスト用の設定を作成する（リモートはローカルの bare リポジトリ）。"""
    template = f"file://{remotes_dir}/{{full_name}}.git"
    return Settings(
        _env_file=None,
        data_dir=str(temp_dir / "data"),
        remote_url_template=template,
        clean_remote_url_template=template,
        git_command_timeout_seconds=30,
        network_timeout_seconds=60,
        allocation_step_timeout_seconds=120,
    )


@pytest.fixture
def credentials():
    """テスト用のトークン提供者。"""
    return StaticCredentialProvider({INSTALLATION_ID: TEST_TOKEN})


@pytest.fixture
def gateway(settings):
    """GitGatewayインスタンスを作成する。"""
    return GitGateway(
        command_timeout=settings.git_command_timeout_seconds,
        network_timeout=settings.network_timeout_seconds,
    )


@pytest.fixture
def repository_cache(settings, gateway, credentials):
    """RepositoryCacheインスタンスを作成する。"""
    return RepositoryCache(settings, gateway, credentials)


@pytest.fixture
def worktree_manager(settings, gateway, repository_cache):
    """WorktreeManagerインスタンスを作成する。"""
    return WorktreeManager(settings, gateway, repository_cache)


@pytest.fixture
def diff_manager(settings, gateway, credentials):
    """DiffManagerインスタンスを作成する。"""
    return DiffManager(settings, gateway, credentials)


@pytest.fixture
def progress_manager():
    """ProgressManagerインスタンスを作成する。"""
    return ProgressManager(queue_size=10, history_size=50)


@pytest.fixture
def task_store(settings):
    """TaskStoreインスタンスを作成する。"""
    return TaskStore(settings.get_state_file())


@pytest.fixture
def task_manager(settings, task_store, worktree_manager, diff_manager, progress_manager):
    """TaskManagerインスタンスを作成する。"""
    return TaskManager(settings, task_store, worktree_manager, diff_manager, progress_manager)


@pytest.fixture
def repo_spec():
    """RepositorySpec を作成するファクトリ。"""

    def _make(
        full_name: str, repo_id: int = 1, default_branch: str | None = "main"
    ) -> RepositorySpec:
        return RepositorySpec(
            id=repo_id,
            installation_id=INSTALLATION_ID,
            name=full_name.split("/")[-1],
            full_name=full_name,
            default_branch=default_branch,
        )

    return _make


@pytest.fixture
def task_repository(settings):
    """TaskRepository を作成するファクトリ。"""

    def _make(
        full_name: str,
        task_id: str = "abcdef12-0000-0000-0000-000000000000",
        original_branch: str = "main",
        repo_id: int = 1,
    ) -> TaskRepository:
        name = full_name.split("/")[-1]
        return TaskRepository(
            id=repo_id,
            installation_id=INSTALLATION_ID,
            name=name,
            full_name=full_name,
            original_branch=original_branch,
            task_branch=f"task/{task_id[:8]}/{name}",
            worktree_path=str(settings.get_tasks_base_dir() / f"task-{task_id}" / name),
        )

    return _make


@pytest.fixture
def work_repo(temp_dir):
    """差分テスト用のコミット済みリポジトリ。"""
    repo_path = temp_dir / "repo"
    repo_path.mkdir()
    git("init", "-q", cwd=repo_path)
    (repo_path / "tracked.txt").write_text("line1\nline2\nline3\n", encoding="utf-8")
    (repo_path / "image.bin").write_bytes(b"\x00\x01\x02\x03")
    git("add", ".", cwd=repo_path)
    git("commit", "-q", "-m", "init", cwd=repo_path)
    git("branch", "-M", "main", cwd=repo_path)
    return repo_path


@pytest.fixture
def app_ctx(settings, credentials, gateway):
    """テスト用の AppContext を作成する。"""
    return build_app_context(settings, credentials=credentials, gateway=gateway)


@pytest.fixture
def mock_mcp_context(app_ctx):
    """MCP Context のモック。"""
    mock = MagicMock()
    mock.request_context.lifespan_context = app_ctx
    return mock
