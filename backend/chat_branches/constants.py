"""存储键前缀与聊天文件常量。"""

from __future__ import annotations

BRANCH_KEY_PREFIX = "branch:"
CHARACTER_KEY_PREFIX = "char:"
ROOT_KEY_PREFIX = "root:"

CHAT_FILE_EXTENSION = ".jsonl"
