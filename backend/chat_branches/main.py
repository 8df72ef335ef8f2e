"""FastAPI 入口，暴露分支关系接口。"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, List

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chat_branches.config import LOG_LEVEL, resolve_chats_dir, resolve_db_path
from chat_branches.models import (
    Branch,
    BranchCreate,
    BranchPatch,
    BranchStats,
    BranchTreeNode,
)
from chat_branches.services.chat_files import ChatFileReader
from chat_branches.storage.branches import BranchStore
from chat_branches.storage.records import StorageIOError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时打开存储，关闭时释放。"""
    logging.basicConfig(
        level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    db_path = resolve_db_path()
    app.state.branch_store = BranchStore.open(db_path)
    logger.info("Branch store initialized at: %s", db_path)
    try:
        yield
    finally:
        logger.info("Shutting down branch store...")
        app.state.branch_store.close()
        app.state.branch_store = None


app = FastAPI(title="Chat Branches API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(StorageIOError)
async def _storage_io_error_handler(request: Request, exc: StorageIOError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "detail": str(exc)})


class OkResult(BaseModel):
    success: bool = True
    message: str | None = None


class RegisterResponse(BaseModel):
    success: bool = True
    created: bool
    message: str | None = None


class BranchResponse(BaseModel):
    success: bool = True
    branch: Branch


class TreeResponse(BaseModel):
    success: bool = True
    tree: List[BranchTreeNode] = Field(default_factory=list)


class BranchListResponse(BaseModel):
    success: bool = True
    branches: List[Branch] = Field(default_factory=list)


class ChildrenResponse(BaseModel):
    success: bool = True
    children: List[Branch] = Field(default_factory=list)


class OrphansResponse(BaseModel):
    success: bool = True
    orphans: List[Branch] = Field(default_factory=list)


class DeleteResult(BaseModel):
    success: bool = True
    deleted_count: int


class CleanDuplicatesResult(BaseModel):
    success: bool = True
    removed_count: int


class StatsResponse(BaseModel):
    success: bool = True
    stats: BranchStats


class MessagesPayload(BaseModel):
    character_name: str | None = None


class MessagesResponse(BaseModel):
    success: bool = True
    chat_name: str
    messages: List[dict[str, Any]] = Field(default_factory=list)
    skipped_lines: int = 0


def get_branch_store(request: Request) -> BranchStore:
    """由 lifespan 创建的存储句柄，可在测试中 override。"""
    store = getattr(request.app.state, "branch_store", None)
    if store is None:
        raise RuntimeError("Branch store is not initialized")
    return store


@lru_cache(maxsize=1)
def get_chat_file_reader() -> ChatFileReader:
    return ChatFileReader(resolve_chats_dir())


@app.head("/")
def health_check_endpoint() -> Response:
    return Response(status_code=200)


@app.post("/branch", response_model=RegisterResponse)
def register_branch_endpoint(
    payload: BranchCreate, store: BranchStore = Depends(get_branch_store)
) -> RegisterResponse:
    try:
        result = store.register(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not result.created:
        return RegisterResponse(created=False, message="Branch already exists")
    return RegisterResponse(created=True)


@app.get("/branch/{branch_id}", response_model=BranchResponse)
def get_branch_endpoint(
    branch_id: str, store: BranchStore = Depends(get_branch_store)
) -> BranchResponse:
    try:
        return BranchResponse(branch=store.get_branch(branch_id))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/branch/{branch_id}", response_model=BranchResponse)
def update_branch_endpoint(
    branch_id: str,
    patch: BranchPatch = Body(...),
    store: BranchStore = Depends(get_branch_store),
) -> BranchResponse:
    try:
        return BranchResponse(branch=store.update_branch(branch_id, patch))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/branch/{branch_id}", response_model=DeleteResult)
def delete_branch_endpoint(
    branch_id: str,
    cascade: bool = Query(False),
    store: BranchStore = Depends(get_branch_store),
) -> DeleteResult:
    try:
        if cascade:
            return DeleteResult(deleted_count=store.delete_cascade(branch_id))
        store.delete_branch(branch_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return DeleteResult(deleted_count=1)


@app.delete("/character/{owner_id}", response_model=DeleteResult)
def delete_character_endpoint(
    owner_id: str, store: BranchStore = Depends(get_branch_store)
) -> DeleteResult:
    return DeleteResult(deleted_count=store.delete_owner_data(owner_id))


@app.get("/tree/root/{root_id}", response_model=TreeResponse)
def tree_by_root_endpoint(
    root_id: str, store: BranchStore = Depends(get_branch_store)
) -> TreeResponse:
    return TreeResponse(tree=store.tree_by_root(root_id))


@app.get("/tree/{owner_id}", response_model=TreeResponse)
def tree_by_owner_endpoint(
    owner_id: str, store: BranchStore = Depends(get_branch_store)
) -> TreeResponse:
    return TreeResponse(tree=store.tree_by_owner(owner_id))


@app.get("/children/{branch_id}", response_model=ChildrenResponse)
def children_endpoint(
    branch_id: str, store: BranchStore = Depends(get_branch_store)
) -> ChildrenResponse:
    return ChildrenResponse(children=store.children_of(branch_id))


@app.get("/branches", response_model=BranchListResponse)
def list_branches_endpoint(
    label: str | None = Query(None, min_length=1),
    store: BranchStore = Depends(get_branch_store),
) -> BranchListResponse:
    return BranchListResponse(branches=store.list_branches(label=label))


@app.get("/orphans/{owner_id}", response_model=OrphansResponse)
def orphans_endpoint(
    owner_id: str, store: BranchStore = Depends(get_branch_store)
) -> OrphansResponse:
    return OrphansResponse(orphans=store.find_orphans(owner_id))


@app.post("/clean-duplicates", response_model=CleanDuplicatesResult)
def clean_duplicates_endpoint(
    store: BranchStore = Depends(get_branch_store),
) -> CleanDuplicatesResult:
    return CleanDuplicatesResult(removed_count=store.clean_duplicates())


@app.get("/stats", response_model=StatsResponse)
def stats_endpoint(store: BranchStore = Depends(get_branch_store)) -> StatsResponse:
    return StatsResponse(stats=store.stats())


@app.post("/reset", response_model=OkResult)
def reset_endpoint(store: BranchStore = Depends(get_branch_store)) -> OkResult:
    store.reset()
    return OkResult(message="Database reset")


@app.post("/messages/{branch_id}", response_model=MessagesResponse)
def messages_endpoint(
    branch_id: str,
    payload: MessagesPayload | None = Body(default=None),
    store: BranchStore = Depends(get_branch_store),
    reader: ChatFileReader = Depends(get_chat_file_reader),
) -> MessagesResponse:
    try:
        branch = store.get_branch(branch_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not branch.label:
        raise HTTPException(
            status_code=404, detail=f"Branch has no label associated: id={branch_id}"
        )

    owner_name = (payload.character_name if payload else None) or branch.owner_id
    try:
        chat = reader.open(branch.label, owner_name)
        messages = list(chat)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OSError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return MessagesResponse(
        chat_name=branch.label,
        messages=messages,
        skipped_lines=len(chat.skipped),
    )
