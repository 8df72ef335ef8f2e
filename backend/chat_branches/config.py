"""基础配置与环境变量加载器，支持 .env 文件与系统环境并存."""
from __future__ import annotations

import os
from pathlib import Path

_BACKEND_DIR = Path(__file__).resolve().parent.parent
_REPO_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _BACKEND_DIR / ".env"


def _load_env_file(path: Path = _ENV_PATH) -> None:
    """读取 .env 文件到 os.environ，不覆盖已存在的环境变量."""
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()

DEFAULT_DB_PATH = _BACKEND_DIR / "data" / "branches.db"


def resolve_db_path() -> Path:
    """CHAT_BRANCHES_DB_PATH 相对路径以仓库根目录为基准."""
    raw = os.getenv("CHAT_BRANCHES_DB_PATH")
    if not raw:
        return DEFAULT_DB_PATH
    candidate = Path(raw)
    return candidate if candidate.is_absolute() else _REPO_ROOT / candidate


def resolve_chats_dir() -> Path:
    raw = os.getenv("CHAT_BRANCHES_CHATS_DIR")
    if not raw:
        return Path.cwd() / "chats"
    return Path(raw).expanduser()


LOG_LEVEL: str = os.getenv("CHAT_BRANCHES_LOG_LEVEL", "INFO").strip().upper() or "INFO"
