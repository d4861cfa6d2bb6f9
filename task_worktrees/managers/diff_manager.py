"""worktree の状態・差分取得モジュール。

porcelain status と numstat を組み合わせて、ファイルごとの変更行数を求める。
未追跡ファイルは git の差分に現れないため、ファイルを直接読んで行数を数える。
ステージ・コミット・プッシュもここから行う。
"""

import asyncio
import logging
import os
from pathlib import Path

from task_worktrees.config.settings import Settings
from task_worktrees.errors import CredentialError, VcsCommandError
from task_worktrees.managers.credential_provider import CredentialProvider
from task_worktrees.managers.git_gateway import GitGateway
from task_worktrees.models.diff import DiffEntry, FileStatus, WorkingTreeStatus

logger = logging.getLogger(__name__)

CONFLICT_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})
"""porcelain status でコンフリクトを表す XY の組み合わせ"""


def parse_status_porcelain(output: str) -> WorkingTreeStatus:
    """`git status --porcelain=v1 -z --branch` の出力をパースする。

    Args:
        output: コマンドの標準出力（NUL 区切り）

    Returns:
        WorkingTreeStatus
    """
    status = WorkingTreeStatus()
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        entry = fields[i]
        i += 1
        if not entry:
            continue

        if entry.startswith("## "):
            _parse_branch_header(entry[3:], status)
            continue

        if len(entry) < 4:
            continue
        index, working_dir, path = entry[0], entry[1], entry[3:]

        original_path = None
        if index in "RC" or working_dir in "RC":
            # リネーム・コピーは次のフィールドが元のパス
            if i < len(fields):
                original_path = fields[i]
                i += 1

        if index == "!" and working_dir == "!":
            continue

        status.files.append(
            FileStatus(
                path=path,
                index=index,
                working_dir=working_dir,
                original_path=original_path,
            )
        )

        code = index + working_dir
        if code == "??":
            status.not_added.append(path)
            continue
        if code in CONFLICT_CODES:
            status.conflicted.append(path)
            continue
        if index not in " ?":
            status.staged.append(path)
        if working_dir not in " ?":
            status.modified.append(path)
        if index == "A":
            status.created.append(path)
        if index == "D" or working_dir == "D":
            status.deleted.append(path)
        if index == "R":
            status.renamed.append(path)

    return status


def _parse_branch_header(header: str, status: WorkingTreeStatus) -> None:
    """`## main...origin/main [ahead 1, behind 2]` 形式のブランチ行を読む。"""
    if header.startswith("No commits yet on "):
        status.current = header[len("No commits yet on "):].strip()
        return
    if header.startswith("HEAD (no branch)"):
        status.current = "HEAD"
        return

    counts = ""
    if " [" in header and header.endswith("]"):
        header, counts = header.split(" [", 1)
        counts = counts[:-1]

    if "..." in header:
        status.current, status.tracking = header.split("...", 1)
    else:
        status.current = header.strip()

    for part in counts.split(","):
        part = part.strip()
        if part.startswith("ahead "):
            status.ahead = int(part[len("ahead "):])
        elif part.startswith("behind "):
            status.behind = int(part[len("behind "):])


def parse_numstat(output: str) -> dict[str, DiffEntry]:
    """`git diff --numstat -z --no-renames` の出力をパースする。

    バイナリファイルは `-\\t-` で表され、0/0 の binary として扱う。
    """
    entries: dict[str, DiffEntry] = {}
    for record in output.split("\0"):
        if not record.strip():
            continue
        parts = record.split("\t", 2)
        if len(parts) != 3:
            continue
        added, deleted, path = parts
        path = path.strip("\n")
        if added == "-" and deleted == "-":
            entries[path] = DiffEntry(path=path, additions=0, deletions=0, binary=True)
        else:
            entries[path] = DiffEntry(path=path, additions=int(added), deletions=int(deleted))
    return entries


def _read_bytes(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def count_lines(data: bytes) -> int:
    """行数を数える。末尾に改行がない最終行も1行と数える。"""
    if not data:
        return 0
    lines = data.count(b"\n")
    if not data.endswith(b"\n"):
        lines += 1
    return lines


def is_binary(data: bytes) -> bool:
    """NUL バイトを含むものをバイナリとみなす。"""
    return b"\0" in data[:8000]


def build_untracked_diff(file_path: str, data: bytes) -> str:
    """未追跡ファイル用に、新規ファイルとしての unified diff を組み立てる。"""
    header = [
        f"diff --git a/{file_path} b/{file_path}",
        "new file mode 100644",
    ]
    if is_binary(data):
        header.append(f"Binary files /dev/null and b/{file_path} differ")
        return "\n".join(header) + "\n"

    header.extend(["--- /dev/null", f"+++ b/{file_path}"])
    text = data.decode(errors="replace")
    if not text:
        return "\n".join(header) + "\n"

    lines = text.split("\n")
    missing_newline = not text.endswith("\n")
    if not missing_newline:
        lines = lines[:-1]

    body = [f"@@ -0,0 +1,{len(lines)} @@"]
    body.extend(f"+{line}" for line in lines)
    if missing_newline:
        body.append("\\ No newline at end of file")
    return "\n".join(header + body) + "\n"


class DiffManager:
    """worktree の状態・差分・コミット操作を提供するクラス。"""

    def __init__(
        self,
        settings: Settings,
        gateway: GitGateway,
        credentials: CredentialProvider,
    ) -> None:
        """DiffManagerを初期化する。

        Args:
            settings: 設定
            gateway: git ゲートウェイ
            credentials: push 用のトークン提供者
        """
        self.settings = settings
        self.gateway = gateway
        self.credentials = credentials

    @staticmethod
    def resolve_path(worktree_path: str, file_path: str) -> Path:
        """worktree 内のファイルパスを解決する。

        Raises:
            ValueError: worktree の外を指している場合
        """
        root = Path(worktree_path).resolve()
        target = (root / file_path).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"worktree の外のパスは指定できません: {file_path}")
        return target

    async def status(self, worktree_path: str) -> WorkingTreeStatus | None:
        """worktree の porcelain status を取得する。

        Returns:
            WorkingTreeStatus、worktree が存在しない場合は None
        """
        if not os.path.isdir(worktree_path):
            return None
        output = await self.gateway.status_porcelain(worktree_path)
        return parse_status_porcelain(output)

    async def diff_stats(self, worktree_path: str) -> dict[str, DiffEntry]:
        """ファイルごとの変更行数を取得する。

        ステージ済みを先に集計し、未ステージの結果で上書きする（合算はしない）。
        未追跡ファイルは全行を追加として数える。

        Returns:
            パス → DiffEntry の辞書（worktree が存在しない場合は空）
        """
        status = await self.status(worktree_path)
        if status is None:
            return {}

        stats: dict[str, DiffEntry] = {}
        stats.update(parse_numstat(await self.gateway.diff_numstat(worktree_path, cached=True)))
        stats.update(parse_numstat(await self.gateway.diff_numstat(worktree_path)))

        for path in status.not_added:
            target = Path(worktree_path) / path
            try:
                data = await asyncio.to_thread(_read_bytes, target)
            except OSError as e:
                logger.warning(f"未追跡ファイルを読み込めません: {target} - {e}")
                continue
            if is_binary(data):
                stats[path] = DiffEntry(path=path, additions=0, deletions=0, binary=True)
            else:
                stats[path] = DiffEntry(path=path, additions=count_lines(data), deletions=0)

        return stats

    async def get_file_diff(self, worktree_path: str, file_path: str) -> str:
        """1ファイル分の unified diff をデフォルトのコンテキスト行数で取得する。"""
        return await self.get_full_file_diff(
            worktree_path, file_path, self.settings.default_context_lines
        )

    async def get_full_file_diff(
        self, worktree_path: str, file_path: str, context_lines: int
    ) -> str:
        """1ファイル分の unified diff を取得する。

        未追跡ファイルの場合は新規ファイルとしての diff を組み立てる。

        Args:
            worktree_path: worktree のパス
            file_path: worktree からの相対パス
            context_lines: 変更行の前後に含める行数

        Returns:
            unified diff（変更がなければ空文字列）
        """
        target = self.resolve_path(worktree_path, file_path)
        status = await self.status(worktree_path)
        if status is None:
            raise FileNotFoundError(f"worktree が存在しません: {worktree_path}")

        if file_path in status.not_added:
            data = await asyncio.to_thread(_read_bytes, target)
            return build_untracked_diff(file_path, data)

        return await self.gateway.diff_file(worktree_path, file_path, context_lines)

    async def get_file_context(
        self, worktree_path: str, file_path: str, start_line: int, end_line: int
    ) -> list[str]:
        """ファイルの指定範囲の行を取得する（1始まり、両端を含む）。"""
        target = self.resolve_path(worktree_path, file_path)
        data = await asyncio.to_thread(_read_bytes, target)
        lines = data.decode(errors="replace").splitlines()
        start = max(1, start_line)
        end = min(len(lines), end_line)
        if start > end:
            return []
        return lines[start - 1:end]

    async def stage_files(self, worktree_path: str, files: list[str]) -> None:
        """ファイルをステージする。"""
        for file_path in files:
            self.resolve_path(worktree_path, file_path)
        await self.gateway.add(worktree_path, files)

    async def unstage_files(self, worktree_path: str, files: list[str]) -> None:
        """ファイルのステージを解除する。"""
        for file_path in files:
            self.resolve_path(worktree_path, file_path)
        await self.gateway.reset(worktree_path, files)

    async def commit_changes(self, worktree_path: str, message: str) -> None:
        """全変更をステージしてコミットする。"""
        await self.gateway.add_all(worktree_path)
        await self.gateway.commit(worktree_path, message)
        logger.info(f"コミットしました: {worktree_path}")

    async def push_changes(
        self, worktree_path: str, installation_id: int, full_name: str
    ) -> str:
        """現在のブランチを origin へ push する。

        push の間だけトークン付き URL を設定し、終了後は必ずトークンなしの URL に戻す。

        Returns:
            push したブランチ名

        Raises:
            CredentialError: トークンを取得できない場合
        """
        token = await self.credentials.get_installation_token(installation_id)
        if not token:
            raise CredentialError(
                f"installation トークンを取得できませんでした (installation_id={installation_id})"
            )

        branch = await self.gateway.current_branch(worktree_path)
        await self.gateway.set_remote_url(
            worktree_path, self.settings.build_remote_url(full_name, token)
        )
        try:
            await self.gateway.push(worktree_path, branch)
        finally:
            try:
                await self.gateway.set_remote_url(
                    worktree_path, self.settings.build_remote_url(full_name)
                )
            except VcsCommandError as e:
                logger.error(f"リモート URL を元に戻せませんでした ({worktree_path}): {e}")
        logger.info(f"push しました: {full_name} ({branch})")
        return branch
