"""聊天 JSONL 文件读取：按行惰性解析，坏行跳过并记录。"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from chat_branches.constants import CHAT_FILE_EXTENSION
from chat_branches.models import strip_chat_extension

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedLine:
    line_number: int
    error: str


@dataclass
class ChatMessages:
    """可重复迭代的消息序列；每次迭代重新打开文件。"""

    path: Path
    skipped: list[SkippedLine] = field(default_factory=list)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        self.skipped = []
        with self.path.open("rb") as handle:
            for line_number, raw in enumerate(handle, start=1):
                if not raw.strip():
                    continue
                try:
                    message = json.loads(raw.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    logger.warning(
                        "Failed to parse line %d of %s: %s", line_number, self.path, exc
                    )
                    self.skipped.append(SkippedLine(line_number=line_number, error=str(exc)))
                    continue
                if not isinstance(message, dict):
                    logger.warning(
                        "Line %d of %s is not a JSON object, skipping", line_number, self.path
                    )
                    self.skipped.append(
                        SkippedLine(line_number=line_number, error="not a JSON object")
                    )
                    continue
                yield message


class ChatFileReader:
    """聊天文件位于 ``<chats_dir>/<角色名>/<label>.jsonl``。"""

    def __init__(self, chats_dir: str | Path):
        self.chats_dir = Path(chats_dir)

    def chat_file_name(self, label: str) -> str:
        return f"{strip_chat_extension(label)}{CHAT_FILE_EXTENSION}"

    def resolve_path(self, label: str, owner_name: str | None) -> Path:
        if not isinstance(label, str) or not label.strip():
            raise ValueError("label is required")
        owner_part = owner_name or ""
        for part in (label, owner_part):
            if "\x00" in part:
                raise ValueError("path contains null byte")
            if Path(part).is_absolute():
                raise ValueError("path must be relative to chats dir")

        base = self.chats_dir.resolve()
        resolved = (base / owner_part / self.chat_file_name(label)).resolve()
        try:
            resolved.relative_to(base)
        except ValueError as exc:
            raise ValueError("path is outside chats dir") from exc
        return resolved

    def open(self, label: str, owner_name: str | None) -> ChatMessages:
        path = self.resolve_path(label, owner_name)
        if not path.is_file():
            raise FileNotFoundError(f"Chat file not found: {path}")
        return ChatMessages(path=path)
