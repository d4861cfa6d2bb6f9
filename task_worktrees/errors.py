"""例外定義。

CorruptionError と BranchCollisionError は内部専用で、
RepositoryCache / WorktreeManager の外には送出されない（自動復旧される）。
"""

import re

_TOKEN_PATTERN = re.compile(r"(x-access-token:)[^@\s]+(@)")


def redact(text: str) -> str:
    """URL に埋め込まれたトークンを伏せ字にする。"""
    return _TOKEN_PATTERN.sub(r"\1***\2", text)


class WorktreeError(Exception):
    """worktree 管理に関するエラーの基底クラス。"""


class CredentialError(WorktreeError):
    """installation トークンを取得できない。"""


class NetworkError(WorktreeError):
    """clone / fetch / push に失敗した。"""


class CorruptionError(WorktreeError):
    """キャッシュ済みクローンが壊れている（再クローンで復旧する）。"""


class BranchCollisionError(WorktreeError):
    """タスクブランチが既に存在する、または別の worktree で使用中。"""

    def __init__(self, branch: str, checked_out: bool, cause: "VcsCommandError") -> None:
        super().__init__(str(cause))
        self.branch = branch
        self.checked_out = checked_out
        self.cause = cause


class NoBranchesError(WorktreeError):
    """リモートにブランチが1つも存在しない。"""


class VcsCommandError(WorktreeError):
    """git コマンドが失敗した。"""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        self.command = redact(" ".join(args))
        self.returncode = returncode
        self.stderr = redact(stderr.strip())
        super().__init__(self.stderr or f"git コマンドが失敗しました: {self.command}")


class GitTimeoutError(WorktreeError, TimeoutError):
    """git コマンドまたは割り当てステップが期限を超過した。"""


class TaskNotFoundError(WorktreeError):
    """タスクが見つからない。"""


class RepositoryNotFoundError(WorktreeError):
    """タスク内にリポジトリが見つからない。"""
