"""Kùzu 键值存储封装，所有分支与索引都落在同一张 Record 表。"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import kuzu


class StorageIOError(RuntimeError):
    """底层存储读写失败，保留原始错误信息。"""


class RecordStore:
    """单键原子的 key -> JSON value 映射，不提供跨键事务。"""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn_lock = threading.Lock()
        try:
            self.db = kuzu.Database(str(self.db_path))
            self.conn = kuzu.Connection(self.db)
        except RuntimeError as exc:
            raise StorageIOError(
                f"Failed to open record store at {self.db_path}: {exc}"
            ) from exc
        self._ensure_schema()

    def close(self) -> None:
        with self._conn_lock:
            self.conn.close()
            self.db.close()

    def _execute(self, query: str, parameters: dict[str, Any] | None = None):
        with self._conn_lock:
            try:
                if parameters is None:
                    return list(self.conn.execute(query))
                return list(self.conn.execute(query, parameters))
            except RuntimeError as exc:
                raise StorageIOError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        self._execute(
            """
            CREATE NODE TABLE IF NOT EXISTS Record(
                key STRING,
                value STRING,
                PRIMARY KEY (key)
            );
            """
        )

    def get(self, key: str) -> Any | None:
        rows = self._execute(
            "MATCH (r:Record) WHERE r.key = $key RETURN r.value LIMIT 1;",
            {"key": key},
        )
        row = next(iter(rows), None)
        if not row or row[0] is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise StorageIOError(f"Corrupt record value: key={key}: {exc}") from exc

    def put(self, key: str, value: Any) -> None:
        self._execute(
            "MERGE (r:Record {key: $key}) SET r.value = $value;",
            {"key": key, "value": json.dumps(value, ensure_ascii=False)},
        )

    def delete(self, key: str) -> None:
        self._execute(
            "MATCH (r:Record) WHERE r.key = $key DELETE r;",
            {"key": key},
        )

    def exists(self, key: str) -> bool:
        rows = self._execute(
            "MATCH (r:Record) WHERE r.key = $key RETURN r.key LIMIT 1;",
            {"key": key},
        )
        return next(iter(rows), None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        if not prefix:
            rows = self._execute("MATCH (r:Record) RETURN r.key ORDER BY r.key;")
        else:
            rows = self._execute(
                (
                    "MATCH (r:Record) "
                    "WHERE starts_with(r.key, $prefix) "
                    "RETURN r.key ORDER BY r.key;"
                ),
                {"prefix": prefix},
            )
        return [row[0] for row in rows]

    def clear(self) -> None:
        self._execute("MATCH (r:Record) DELETE r;")
