"""git コマンド実行ゲートウェイ。

clone / fetch / worktree / diff / status などの git サブコマンドを
asyncio のサブプロセスとして実行する薄いラッパー。
失敗したコマンドは VcsCommandError として送出する。
"""

import asyncio
import logging
import os
import re
import subprocess
from collections.abc import Awaitable, Callable

from task_worktrees.errors import GitTimeoutError, VcsCommandError, redact
from task_worktrees.models.workspace import WorktreeInfo

logger = logging.getLogger(__name__)

REMOTE_REF_PREFIX = "refs/remotes/origin/"

_CLONE_PROGRESS_PATTERN = re.compile(r"Receiving objects:\s+(\d+)%")

ProgressCallback = Callable[[int], Awaitable[None]]


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """`git worktree list --porcelain` の出力をパースする。

    Args:
        output: コマンドの標準出力

    Returns:
        WorktreeInfo のリスト
    """
    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}

    for line in output.split("\n"):
        line = line.strip()
        if not line:
            if current:
                worktrees.append(_to_worktree_info(current))
                current = {}
            continue

        if " " in line:
            key, value = line.split(" ", 1)
            current[key] = value
        else:
            current[line] = "true"

    if current:
        worktrees.append(_to_worktree_info(current))

    return worktrees


def _to_worktree_info(data: dict[str, str]) -> WorktreeInfo:
    branch = data.get("branch", "")
    if branch.startswith("refs/heads/"):
        branch = branch[len("refs/heads/"):]
    return WorktreeInfo(
        path=data.get("worktree", ""),
        branch=branch,
        commit=data.get("HEAD", ""),
        is_bare="bare" in data,
        is_detached="detached" in data,
        locked="locked" in data,
        prunable="prunable" in data,
    )


def find_worktree_for_branch(
    worktrees: list[WorktreeInfo], branch: str
) -> WorktreeInfo | None:
    """指定ブランチをチェックアウトしている worktree を返す。"""
    for wt in worktrees:
        if wt.branch == branch:
            return wt
    return None


def same_path(left: str, right: str) -> bool:
    """シンボリックリンクを解決して同一パスか判定する。"""
    return os.path.realpath(left) == os.path.realpath(right)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class GitGateway:
    """git サブコマンドを非同期に実行するクラス。"""

    def __init__(
        self,
        command_timeout: float = 120.0,
        network_timeout: float = 900.0,
        git_binary: str = "git",
    ) -> None:
        """GitGatewayを初期化する。

        Args:
            command_timeout: ローカルコマンドのタイムアウト（秒）
            network_timeout: clone / fetch / push のタイムアウト（秒）
            git_binary: git 実行ファイル
        """
        self.command_timeout = command_timeout
        self.network_timeout = network_timeout
        self.git_binary = git_binary

    @staticmethod
    def _env() -> dict[str, str]:
        # 認証プロンプトで固まらないようにする
        return {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    async def _run_command(
        self, *args: str, cwd: str | None = None, timeout: float | None = None
    ) -> tuple[int, str, str]:
        """コマンドを実行する。

        Args:
            *args: コマンドと引数
            cwd: 作業ディレクトリ
            timeout: タイムアウト（秒、省略時は command_timeout）

        Returns:
            (リターンコード, stdout, stderr) のタプル

        Raises:
            GitTimeoutError: タイムアウトした場合
        """
        if cwd is not None and not os.path.isdir(cwd):
            return 1, "", f"ディレクトリが存在しません: {cwd}"

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError:
            return 127, "", f"コマンドが見つかりません: {args[0]}"
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"コマンド実行エラー: {redact(str(e))}")
            return 1, "", str(e)

        limit = timeout or self.command_timeout
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            raise GitTimeoutError(
                f"git コマンドがタイムアウトしました ({limit:g}秒): {redact(' '.join(args))}"
            ) from None
        except asyncio.CancelledError:
            _kill(proc)
            raise

        return (
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def run_git(
        self, *args: str, cwd: str | None = None, timeout: float | None = None
    ) -> tuple[int, str, str]:
        """gitコマンドを実行する（失敗しても例外にしない）。"""
        logger.debug(f"git {redact(' '.join(args))} (cwd={cwd})")
        return await self._run_command(self.git_binary, *args, cwd=cwd, timeout=timeout)

    async def run(
        self, *args: str, cwd: str | None = None, timeout: float | None = None
    ) -> str:
        """gitコマンドを実行し、stdout を返す。

        Raises:
            VcsCommandError: リターンコードが 0 以外の場合
        """
        code, stdout, stderr = await self.run_git(*args, cwd=cwd, timeout=timeout)
        if code != 0:
            raise VcsCommandError((self.git_binary, *args), code, stderr)
        return stdout

    # ========== リポジトリ・リモート ==========

    async def clone(
        self, url: str, dest: str, on_progress: ProgressCallback | None = None
    ) -> None:
        """リポジトリをクローンする。

        stderr の "Receiving objects: NN%" を on_progress に通知する。
        """
        args = (self.git_binary, "clone", "--progress", url, dest)
        logger.debug(redact(" ".join(args)))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError:
            raise VcsCommandError(args, 127, f"コマンドが見つかりません: {args[0]}") from None

        async def _pump() -> str:
            chunks: list[str] = []
            pending = ""
            last_percent = -1
            while True:
                data = await proc.stderr.read(1024)
                if not data:
                    break
                text = data.decode(errors="replace")
                chunks.append(text)
                *lines, pending = re.split(r"[\r\n]", pending + text)
                for line in lines:
                    match = _CLONE_PROGRESS_PATTERN.search(line)
                    if match and on_progress is not None:
                        percent = int(match.group(1))
                        if percent != last_percent:
                            last_percent = percent
                            await on_progress(percent)
            await proc.wait()
            return "".join(chunks)

        try:
            stderr = await asyncio.wait_for(_pump(), timeout=self.network_timeout)
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            raise GitTimeoutError(
                f"clone がタイムアウトしました ({self.network_timeout:g}秒): {redact(url)}"
            ) from None
        except asyncio.CancelledError:
            _kill(proc)
            raise

        if proc.returncode:
            raise VcsCommandError(args, proc.returncode, stderr)

    async def fetch(self, repo_path: str) -> None:
        """全ブランチ・タグを fetch する。"""
        await self.run(
            "fetch", "--all", "--tags", "--prune",
            cwd=repo_path, timeout=self.network_timeout,
        )

    async def set_remote_url(self, repo_path: str, url: str, remote: str = "origin") -> None:
        """リモート URL を設定する。"""
        await self.run("remote", "set-url", remote, url, cwd=repo_path)

    async def set_config(self, repo_path: str, key: str, value: str) -> None:
        """リポジトリの設定値を書き込む。"""
        await self.run("config", key, value, cwd=repo_path)

    async def list_remote_branches(self, repo_path: str) -> set[str]:
        """origin のリモートブランチ名（origin/ を除いた名前）を取得する。"""
        stdout = await self.run(
            "for-each-ref", "--format=%(refname)", REMOTE_REF_PREFIX, cwd=repo_path
        )
        branches: set[str] = set()
        for line in stdout.splitlines():
            ref = line.strip()
            if not ref.startswith(REMOTE_REF_PREFIX):
                continue
            name = ref[len(REMOTE_REF_PREFIX):]
            if name and name != "HEAD":
                branches.add(name)
        return branches

    async def git_common_dir(self, path: str) -> str:
        """worktree が参照する共通 .git ディレクトリの絶対パスを返す。"""
        stdout = await self.run("rev-parse", "--git-common-dir", cwd=path)
        common_dir = stdout.strip()
        if not os.path.isabs(common_dir):
            common_dir = os.path.join(path, common_dir)
        return os.path.normpath(common_dir)

    async def current_branch(self, path: str) -> str:
        """現在のブランチ名を取得する。"""
        stdout = await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
        return stdout.strip()

    # ========== worktree ==========

    async def list_worktrees(self, repo_path: str) -> list[WorktreeInfo]:
        """worktree一覧を取得する。"""
        stdout = await self.run("worktree", "list", "--porcelain", cwd=repo_path)
        return parse_worktree_list(stdout)

    async def add_worktree(
        self,
        repo_path: str,
        path: str,
        branch: str,
        start_point: str | None = None,
        create_branch: bool = False,
    ) -> None:
        """worktreeを作成する。

        Args:
            repo_path: メインリポジトリのパス
            path: worktreeのパス
            branch: ブランチ名
            start_point: 新規ブランチの基点（create_branch=True の場合）
            create_branch: 新しいブランチを作成するか
        """
        args = ["worktree", "add"]
        if create_branch:
            args.extend(["-b", branch, path])
            if start_point:
                args.append(start_point)
        else:
            args.extend([path, branch])
        await self.run(*args, cwd=repo_path)

    async def remove_worktree(self, repo_path: str, path: str, force: bool = True) -> None:
        """worktreeを削除する。"""
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(path)
        await self.run(*args, cwd=repo_path)

    async def prune_worktrees(self, repo_path: str) -> None:
        """削除可能なworktree情報をクリーンアップする。"""
        await self.run("worktree", "prune", cwd=repo_path)

    async def delete_branch(self, repo_path: str, branch: str) -> None:
        """ローカルブランチを強制削除する。"""
        await self.run("branch", "-D", branch, cwd=repo_path)

    async def checkout(self, path: str, branch: str) -> None:
        """ブランチをチェックアウトする。"""
        await self.run("checkout", branch, cwd=path)

    async def set_upstream(self, path: str, branch: str, upstream: str) -> None:
        """ブランチの upstream を設定する。"""
        await self.run("branch", "--set-upstream-to", upstream, branch, cwd=path)

    # ========== 状態・差分 ==========

    async def status_porcelain(self, path: str) -> str:
        """porcelain v1 形式（NUL 区切り、ブランチ行付き）の status を取得する。"""
        return await self.run(
            "status", "--porcelain=v1", "-z", "--branch", "--untracked-files=all",
            cwd=path,
        )

    async def diff_numstat(self, path: str, cached: bool = False) -> str:
        """numstat 形式（NUL 区切り、リネーム検出なし）の diff を取得する。"""
        args = ["diff", "--numstat", "-z", "--no-renames"]
        if cached:
            args.append("--cached")
        return await self.run(*args, cwd=path)

    async def diff_file(self, path: str, file_path: str, context_lines: int = 3) -> str:
        """HEAD と作業ツリーの unified diff を1ファイル分取得する。"""
        return await self.run(
            "diff", f"-U{max(0, context_lines)}", "HEAD", "--", file_path, cwd=path
        )

    # ========== コミット・プッシュ ==========

    async def add(self, path: str, files: list[str]) -> None:
        """ファイルをステージする。"""
        await self.run("add", "--", *files, cwd=path)

    async def add_all(self, path: str) -> None:
        """全変更をステージする。"""
        await self.run("add", "--all", cwd=path)

    async def reset(self, path: str, files: list[str]) -> None:
        """ファイルのステージを解除する。"""
        await self.run("reset", "-q", "HEAD", "--", *files, cwd=path)

    async def commit(self, path: str, message: str) -> None:
        """コミットする。"""
        await self.run("commit", "-m", message, cwd=path)

    async def push(self, path: str, branch: str, remote: str = "origin") -> None:
        """ブランチを push する。"""
        await self.run("push", remote, branch, cwd=path, timeout=self.network_timeout)
