"""分岐元ブランチの解決。

優先順位:
1. 要求されたブランチ
2. master
3. main
4. 残りのブランチのうち辞書順で最初のもの
"""

from collections.abc import Iterable
from dataclasses import dataclass

from task_worktrees.errors import NoBranchesError

FALLBACK_BRANCHES = ("master", "main")


@dataclass(frozen=True)
class BranchResolution:
    """分岐元ブランチの解決結果。"""

    branch: str
    """分岐元として使うブランチ"""

    warning: str | None = None
    """要求と異なるブランチを選んだ場合の説明"""


def explain_base_branch(
    requested_branch: str | None, remote_branches: Iterable[str]
) -> BranchResolution:
    """分岐元ブランチを解決し、フォールバック時は理由を添える。

    Args:
        requested_branch: 要求されたブランチ
        remote_branches: リモートに存在するブランチ名

    Returns:
        BranchResolution

    Raises:
        NoBranchesError: リモートブランチが1つもない場合
    """
    available = set(remote_branches)
    if not available:
        raise NoBranchesError("リモートブランチが見つかりません")

    if requested_branch and requested_branch in available:
        return BranchResolution(branch=requested_branch)

    for candidate in FALLBACK_BRANCHES:
        if candidate in available:
            chosen = candidate
            break
    else:
        chosen = sorted(available)[0]

    return BranchResolution(
        branch=chosen,
        warning=f"ブランチ '{requested_branch}' が見つかりません。'{chosen}' を使用します。",
    )


def resolve_base_branch(requested_branch: str | None, remote_branches: Iterable[str]) -> str:
    """分岐元ブランチ名を返す。"""
    return explain_base_branch(requested_branch, remote_branches).branch
