"""把扁平分支列表还原为森林。"""

from __future__ import annotations

from typing import Iterable

from chat_branches.models import Branch, BranchTreeNode


def sort_branches(branches: Iterable[Branch]) -> list[Branch]:
    return sorted(branches, key=Branch.sort_key)


def build_tree(branches: Iterable[Branch]) -> list[BranchTreeNode]:
    """按输入顺序构建父子关系，输入应已按 (created_at, id) 排序。

    只在给定集合内连边：父分支存在于别处但不在输入中时，该节点会作为
    本次结果的根返回，并不代表它在全局上没有父分支。
    会形成环的边（包括 parent_id == id）被拒绝，该节点同样作为根返回。
    """
    nodes: dict[str, BranchTreeNode] = {}
    order: list[BranchTreeNode] = []
    for branch in branches:
        if branch.id in nodes:
            continue
        node = BranchTreeNode(**branch.model_dump(), children=[])
        nodes[branch.id] = node
        order.append(node)

    linked_parent: dict[str, str] = {}
    roots: list[BranchTreeNode] = []
    for node in order:
        parent_id = node.parent_id
        if (
            parent_id is not None
            and parent_id in nodes
            and not _is_ancestor_or_self(node.id, parent_id, linked_parent)
        ):
            nodes[parent_id].children.append(node)
            linked_parent[node.id] = parent_id
        else:
            roots.append(node)
    return roots


def _is_ancestor_or_self(
    candidate: str, start: str, linked_parent: dict[str, str]
) -> bool:
    current: str | None = start
    while current is not None:
        if current == candidate:
            return True
        current = linked_parent.get(current)
    return False


def flatten_tree(roots: Iterable[BranchTreeNode]) -> list[BranchTreeNode]:
    """前序展开森林，便于比较节点集合。"""
    result: list[BranchTreeNode] = []
    stack = list(reversed(list(roots)))
    while stack:
        node = stack.pop()
        result.append(node)
        stack.extend(reversed(node.children))
    return result
