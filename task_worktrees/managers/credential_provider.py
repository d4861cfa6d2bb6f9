"""installation トークン取得モジュール。

トークン発行そのものは外部の認証サブシステムの責務で、
ここでは installation_id からトークンを引く窓口だけを提供する。

credentials_file の形式（YAML）:

    installations:
      12345: ghs_xxxxxxxx
      67890: ghs_yyyyyyyy
"""

import logging
from pathlib import Path
from typing import Protocol

import yaml

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """installation トークンの提供者。"""

    async def get_installation_token(self, installation_id: int) -> str | None:
        """トークンを返す。取得できない場合は None。"""
        ...


class StaticCredentialProvider:
    """メモリ上の対応表からトークンを返す。"""

    def __init__(self, tokens: dict[int, str] | None = None) -> None:
        self.tokens: dict[int, str] = dict(tokens or {})

    def set_token(self, installation_id: int, token: str) -> None:
        """トークンを登録・更新する。"""
        self.tokens[installation_id] = token

    async def get_installation_token(self, installation_id: int) -> str | None:
        return self.tokens.get(installation_id)


class FileCredentialProvider:
    """YAML ファイルからトークンを読み込む。

    短命トークンは外部で書き換えられるため、呼び出しごとに読み直す。
    """

    def __init__(self, credentials_file: str | Path) -> None:
        self.credentials_file = Path(credentials_file).expanduser()

    def _load(self) -> dict[int, str]:
        if not self.credentials_file.exists():
            logger.warning(f"認証情報ファイルが見つかりません: {self.credentials_file}")
            return {}
        try:
            data = yaml.safe_load(self.credentials_file.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"認証情報ファイルの読み込みに失敗 ({self.credentials_file}): {e}")
            return {}

        installations = data.get("installations") if isinstance(data, dict) else None
        if not isinstance(installations, dict):
            return {}
        tokens: dict[int, str] = {}
        for key, value in installations.items():
            try:
                tokens[int(key)] = str(value)
            except (TypeError, ValueError):
                logger.warning(f"不正な installation_id を無視します: {key}")
        return tokens

    async def get_installation_token(self, installation_id: int) -> str | None:
        token = self._load().get(installation_id)
        return token or None
