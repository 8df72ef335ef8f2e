"""分支关系领域模型定义。"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chat_branches.constants import CHAT_FILE_EXTENSION


def strip_chat_extension(label: str) -> str:
    """去掉聊天文件扩展名（大小写不敏感），存储层只保存干净的名称。"""
    text = str(label)
    while text.lower().endswith(CHAT_FILE_EXTENSION):
        text = text[: -len(CHAT_FILE_EXTENSION)]
    return text


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value if value.strip() else None


class Branch(BaseModel):
    """一次对话分叉：指向父分支与所在树的根。"""

    id: str = Field(..., min_length=1)
    parent_id: Optional[str] = None
    root_id: str = Field(..., min_length=1)
    owner_id: Optional[str] = None
    label: Optional[str] = None
    branch_point: Any = None
    created_at: int

    @field_validator("label")
    @classmethod
    def clean_label(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return strip_chat_extension(value)

    def sort_key(self) -> tuple[int, str]:
        return (self.created_at, self.id)


class BranchCreate(BaseModel):
    """注册请求：id 与 root_id 必填，其余可选。"""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    parent_id: Optional[str] = None
    root_id: str = Field(..., min_length=1)
    owner_id: Optional[str] = None
    label: Optional[str] = None
    branch_point: Any = None
    created_at: Optional[int] = None

    @field_validator("parent_id", "owner_id")
    @classmethod
    def blank_reference_is_absent(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)

    @field_validator("label")
    @classmethod
    def clean_label(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return strip_chat_extension(value)


class BranchPatch(BaseModel):
    """更新请求：字段以“是否出现”区分，而不是真假值。"""

    model_config = ConfigDict(extra="forbid")

    label: Optional[str] = None
    owner_id: Optional[str] = None
    parent_id: Optional[str] = None
    root_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def drop_blank_references(cls, data: Any) -> Any:
        # 空白引用视为未出现，不进入 model_fields_set
        if not isinstance(data, dict):
            return data
        return {
            key: value
            for key, value in data.items()
            if not (
                key in ("parent_id", "owner_id")
                and isinstance(value, str)
                and not value.strip()
            )
        }

    @field_validator("label")
    @classmethod
    def clean_label(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return strip_chat_extension(value)


class BranchTreeNode(Branch):
    """树节点：分支字段加有序子节点列表。"""

    children: List[BranchTreeNode] = Field(default_factory=list)


class RegisterResult(BaseModel):
    created: bool


class BranchStats(BaseModel):
    branch_count: int
    owner_count: int
    root_count: int


BranchTreeNode.model_rebuild()
