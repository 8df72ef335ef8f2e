"""角色索引与根索引维护：每个桶的读改写都在按键加锁的临界区内完成。"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from chat_branches.constants import CHARACTER_KEY_PREFIX, ROOT_KEY_PREFIX
from chat_branches.storage.records import RecordStore, StorageIOError


def character_key(owner_id: str) -> str:
    return f"{CHARACTER_KEY_PREFIX}{owner_id}"


def root_key(root_id: str) -> str:
    return f"{ROOT_KEY_PREFIX}{root_id}"


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0  # 持有或等待该锁的线程数


class KeyedLocks:
    """按键分配互斥锁；无人持有或等待时回收。"""

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._mutex:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)


class IndexManager:
    """桶内容以 JSON 数组存储，按插入顺序当作集合使用。"""

    def __init__(self, records: RecordStore, locks: KeyedLocks):
        self.records = records
        self.locks = locks

    def _read(self, key: str) -> list[str] | None:
        value = self.records.get(key)
        if value is None:
            return None
        if not isinstance(value, list):
            raise StorageIOError(f"Index bucket is not a list: key={key}")
        return [str(item) for item in value]

    def members(self, key: str) -> list[str]:
        return list(dict.fromkeys(self._read(key) or []))

    def add_member(self, key: str, branch_id: str) -> bool:
        with self.locks.hold(key):
            current = self._read(key) or []
            if branch_id in current:
                return False
            current.append(branch_id)
            self.records.put(key, current)
            return True

    def remove_member(self, key: str, branch_id: str) -> bool:
        with self.locks.hold(key):
            current = self._read(key)
            if current is None or branch_id not in current:
                return False
            self.records.put(key, [item for item in current if item != branch_id])
            return True

    def move_member(self, old_key: str, new_key: str, branch_id: str) -> None:
        if old_key == new_key:
            return
        self.remove_member(old_key, branch_id)
        self.add_member(new_key, branch_id)

    def dedupe(self, key: str) -> int:
        with self.locks.hold(key):
            current = self._read(key)
            if current is None:
                return 0
            unique = list(dict.fromkeys(current))
            removed = len(current) - len(unique)
            if removed:
                self.records.put(key, unique)
            return removed

    def drop(self, key: str) -> None:
        with self.locks.hold(key):
            self.records.delete(key)
