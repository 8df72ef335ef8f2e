"""分支关系存储：注册、更新、树查询、级联删除与索引修复。"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Iterable, Mapping

from chat_branches.constants import (
    BRANCH_KEY_PREFIX,
    CHARACTER_KEY_PREFIX,
    ROOT_KEY_PREFIX,
)
from chat_branches.models import (
    Branch,
    BranchCreate,
    BranchPatch,
    BranchStats,
    BranchTreeNode,
    RegisterResult,
    strip_chat_extension,
)
from chat_branches.storage.indexes import (
    IndexManager,
    KeyedLocks,
    character_key,
    root_key,
)
from chat_branches.storage.records import RecordStore
from chat_branches.storage.tree import build_tree, sort_branches

logger = logging.getLogger(__name__)


class NothingToUpdate(ValueError):
    """更新请求没有改变任何字段。"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class BranchStore:
    """分支记录与两个派生索引的一致性维护。

    锁顺序固定为先记录键 ``branch:<id>``、后索引桶键，索引桶锁之间
    从不嵌套，因此不会死锁。
    """

    def __init__(self, records: RecordStore, locks: KeyedLocks | None = None):
        self.records = records
        self.locks = locks if locks is not None else KeyedLocks()
        self.indexes = IndexManager(records, self.locks)

    @classmethod
    def open(cls, db_path: str | Path) -> BranchStore:
        return cls(RecordStore(db_path=db_path))

    def close(self) -> None:
        self.records.close()

    @staticmethod
    def _branch_key(branch_id: str) -> str:
        return f"{BRANCH_KEY_PREFIX}{branch_id}"

    def _load(self, branch_id: str) -> Branch | None:
        value = self.records.get(self._branch_key(branch_id))
        if value is None:
            return None
        return Branch.model_validate(value)

    def _save(self, branch: Branch) -> None:
        self.records.put(self._branch_key(branch.id), branch.model_dump(mode="json"))

    def _resolve(self, branch_ids: Iterable[str]) -> list[Branch]:
        branches: list[Branch] = []
        for branch_id in dict.fromkeys(branch_ids):
            branch = self._load(branch_id)
            if branch is not None:
                branches.append(branch)
        return sort_branches(branches)

    # ------------------------------------------------------------------
    # 注册与更新
    # ------------------------------------------------------------------

    def register(self, payload: BranchCreate | Mapping[str, Any]) -> RegisterResult:
        if not isinstance(payload, BranchCreate):
            payload = BranchCreate.model_validate(payload)
        if payload.parent_id == payload.id:
            raise ValueError(f"Branch cannot be its own parent: id={payload.id}")
        branch = Branch(
            id=payload.id,
            parent_id=payload.parent_id,
            root_id=payload.root_id,
            owner_id=payload.owner_id,
            label=payload.label,
            branch_point=payload.branch_point,
            created_at=payload.created_at if payload.created_at is not None else _now_ms(),
        )

        key = self._branch_key(branch.id)
        with self.locks.hold(key):
            if self.records.exists(key):
                logger.info("Branch already exists, skipping registration: %s", branch.id)
                return RegisterResult(created=False)
            self._save(branch)
            if branch.owner_id is not None:
                self.indexes.add_member(character_key(branch.owner_id), branch.id)
            self.indexes.add_member(root_key(branch.root_id), branch.id)
        logger.info(
            "Registered branch %s (root=%s owner=%s)",
            branch.id,
            branch.root_id,
            branch.owner_id,
        )
        return RegisterResult(created=True)

    def get_branch(self, branch_id: str) -> Branch:
        branch = self._load(branch_id)
        if branch is None:
            raise KeyError(f"Branch not found: id={branch_id}")
        return branch

    def update_branch(
        self, branch_id: str, patch: BranchPatch | Mapping[str, Any]
    ) -> Branch:
        if not isinstance(patch, BranchPatch):
            patch = BranchPatch.model_validate(patch)
        present = patch.model_fields_set
        if "root_id" in present and (patch.root_id is None or not patch.root_id.strip()):
            raise ValueError("root_id must not be empty")
        if "parent_id" in present and patch.parent_id == branch_id:
            raise ValueError(f"Branch cannot be its own parent: id={branch_id}")

        key = self._branch_key(branch_id)
        with self.locks.hold(key):
            branch = self._load(branch_id)
            if branch is None:
                raise KeyError(f"Branch not found: id={branch_id}")

            changes: dict[str, Any] = {}
            for field in ("label", "owner_id", "parent_id", "root_id"):
                if field not in present:
                    continue
                value = getattr(patch, field)
                if value != getattr(branch, field):
                    changes[field] = value
            if not changes:
                raise NothingToUpdate(f"No fields to update: id={branch_id}")

            if "owner_id" in changes:
                old_owner, new_owner = branch.owner_id, changes["owner_id"]
                if old_owner is not None and new_owner is not None:
                    self.indexes.move_member(
                        character_key(old_owner), character_key(new_owner), branch_id
                    )
                elif old_owner is not None:
                    self.indexes.remove_member(character_key(old_owner), branch_id)
                else:
                    self.indexes.add_member(character_key(new_owner), branch_id)
            if "root_id" in changes:
                self.indexes.move_member(
                    root_key(branch.root_id), root_key(changes["root_id"]), branch_id
                )

            updated = branch.model_copy(update=changes)
            self._save(updated)
        logger.info("Updated branch %s: %s", branch_id, sorted(changes))
        return updated

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------

    def _unlink(self, branch: Branch) -> None:
        self.records.delete(self._branch_key(branch.id))
        if branch.owner_id is not None:
            self.indexes.remove_member(character_key(branch.owner_id), branch.id)
        self.indexes.remove_member(root_key(branch.root_id), branch.id)

    def _delete_if_present(self, branch_id: str, owner_id: str | None = None) -> bool:
        with self.locks.hold(self._branch_key(branch_id)):
            branch = self._load(branch_id)
            if branch is None:
                return False
            if owner_id is not None and branch.owner_id != owner_id:
                # 已被并发转移给其他角色
                return False
            self._unlink(branch)
            return True

    def delete_branch(self, branch_id: str) -> Branch:
        with self.locks.hold(self._branch_key(branch_id)):
            branch = self._load(branch_id)
            if branch is None:
                raise KeyError(f"Branch not found: id={branch_id}")
            self._unlink(branch)
        logger.info("Deleted branch %s", branch_id)
        return branch

    def _children(self, parent: Branch) -> list[Branch]:
        candidates = self._resolve(self.indexes.members(root_key(parent.root_id)))
        return [branch for branch in candidates if branch.parent_id == parent.id]

    def delete_cascade(self, branch_id: str) -> int:
        """删除分支及其全部后代，子节点先于父节点删除。

        父节点被检查之后才并发挂上的子节点可能被遗漏。
        """
        target = self._load(branch_id)
        if target is None:
            raise KeyError(f"Branch not found: id={branch_id}")

        visited = {target.id}
        stack: list[tuple[Branch, bool]] = [(target, False)]
        deleted = 0
        while stack:
            branch, expanded = stack.pop()
            if expanded:
                if self._delete_if_present(branch.id):
                    deleted += 1
                continue
            stack.append((branch, True))
            for child in reversed(self._children(branch)):
                if child.id in visited:
                    logger.warning(
                        "Cycle in parent chain, not descending again: %s -> %s",
                        branch.id,
                        child.id,
                    )
                    continue
                visited.add(child.id)
                stack.append((child, False))
        logger.info("Cascade deleted %d branches under %s", deleted, branch_id)
        return deleted

    def delete_owner_data(self, owner_id: str) -> int:
        key = character_key(owner_id)
        if not self.records.exists(key):
            logger.info("No branches found for character: %s", owner_id)
            return 0
        self.indexes.dedupe(key)
        branch_ids = self.indexes.members(key)
        deleted = 0
        for branch_id in branch_ids:
            if self._delete_if_present(branch_id, owner_id=owner_id):
                deleted += 1
        self.indexes.drop(key)
        logger.info("Deleted %d branches for character: %s", deleted, owner_id)
        return deleted

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def tree_by_owner(self, owner_id: str) -> list[BranchTreeNode]:
        return build_tree(self._resolve(self.indexes.members(character_key(owner_id))))

    def tree_by_root(self, root_id: str) -> list[BranchTreeNode]:
        return build_tree(self._resolve(self.indexes.members(root_key(root_id))))

    def children_of(self, branch_id: str) -> list[Branch]:
        parent = self._load(branch_id)
        if parent is None:
            return []
        return self._children(parent)

    def list_branches(self, *, label: str | None = None) -> list[Branch]:
        wanted = strip_chat_extension(label) if label is not None else None
        branches: list[Branch] = []
        for key in self.records.list_keys(BRANCH_KEY_PREFIX):
            value = self.records.get(key)
            if value is None:
                continue
            branch = Branch.model_validate(value)
            if wanted is None or branch.label == wanted:
                branches.append(branch)
        return sort_branches(branches)

    # ------------------------------------------------------------------
    # 维护与诊断
    # ------------------------------------------------------------------

    def find_orphans(self, owner_id: str) -> list[Branch]:
        orphans: list[Branch] = []
        for branch in self._resolve(self.indexes.members(character_key(owner_id))):
            if branch.parent_id is None:
                continue
            if not self.records.exists(self._branch_key(branch.parent_id)):
                orphans.append(branch)
        return orphans

    def clean_duplicates(self) -> int:
        total = 0
        keys = self.records.list_keys(CHARACTER_KEY_PREFIX) + self.records.list_keys(
            ROOT_KEY_PREFIX
        )
        for key in keys:
            removed = self.indexes.dedupe(key)
            if removed:
                logger.info("Cleaned %d duplicates from %s", removed, key)
            total += removed
        return total

    def stats(self) -> BranchStats:
        return BranchStats(
            branch_count=len(self.records.list_keys(BRANCH_KEY_PREFIX)),
            owner_count=len(self.records.list_keys(CHARACTER_KEY_PREFIX)),
            root_count=len(self.records.list_keys(ROOT_KEY_PREFIX)),
        )

    def reset(self) -> None:
        self.records.clear()
        logger.info("Branch store reset")
