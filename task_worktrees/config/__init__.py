"""設定モジュール。"""

from .settings import Settings, load_settings, resolve_env_file

__all__ = [
    "Settings",
    "load_settings",
    "resolve_env_file",
]
