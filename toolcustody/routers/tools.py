from collections import Counter
from typing import Optional

from fastapi import APIRouter, Depends, Query

from toolcustody.deps import get_workspace, require_permission
from toolcustody.error import abort
from toolcustody.schemas import (
    BookOutRequest,
    ReturnRequest,
    Tool,
    ToolCreate,
    ToolListResponse,
    ToolLog,
    ToolStatus,
    ToolUpdate,
    User,
)
from toolcustody.services.custody import apply_admin_edit, book_out, create_tool, return_tool
from toolcustody.workspace import Workspace

router = APIRouter(prefix="/tools", tags=["tools"])

_SORT_KEYS = {
    "id_asc": (lambda t: t.id, False),
    "id_desc": (lambda t: t.id, True),
    "name_asc": (lambda t: t.name.lower(), False),
    "name_desc": (lambda t: t.name.lower(), True),
    "status": (lambda t: (t.status.value, t.name.lower()), False),
}


@router.get("", response_model=ToolListResponse)
def list_tools(
    q: str | None = None,
    status: Optional[ToolStatus] = Query(None, description="按状态过滤（可选）"),
    holder_id: Optional[str] = Query(None, description="按持有人过滤（可选）"),
    sort: str = Query("id_asc", description="排序：id_asc/id_desc/name_asc/name_desc/status"),
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("view_inventory")),
):
    if sort not in _SORT_KEYS:
        abort(400, "BAD_REQUEST", f"unsupported sort: {sort}")

    items = list(ws.tools.values())
    if q:
        needle = q.strip().lower()
        items = [
            t for t in items
            if needle in t.name.lower()
            or needle in t.id.lower()
            or needle in (t.serial_number or "").lower()
        ]
    if status is not None:
        items = [t for t in items if t.status == status]
    if holder_id:
        items = [t for t in items if t.current_holder_id == holder_id]

    key, reverse = _SORT_KEYS[sort]
    items.sort(key=key, reverse=reverse)
    return {"items": items, "total": len(items), "q": q}


@router.get("/mine", response_model=list[Tool])
def my_tools(
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(require_permission("return")),
):
    return [t for t in ws.tools.values() if t.current_holder_id == user.id]


@router.get("/{tool_id}", response_model=Tool)
def get_tool(
    tool_id: str,
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("view_inventory")),
):
    return ws.get_tool(tool_id)


@router.get("/{tool_id}/logs", response_model=list[ToolLog])
def tool_logs(
    tool_id: str,
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("view_inventory")),
):
    return ws.get_tool(tool_id).logs


@router.post("", response_model=Tool)
def add_tool(
    data: ToolCreate,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(require_permission("manage_inventory")),
):
    with ws.lock:
        tool = create_tool(data, user, taken=ws.tools)
        if tool.id in ws.tools:
            abort(409, "TOOL_EXISTS", f"Tool id {tool.id} already exists")
        return ws.save_tool(tool, tool.logs)


@router.post("/import", response_model=list[Tool])
def import_tools(
    data: list[ToolCreate],
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(require_permission("manage_inventory")),
):
    if not data:
        abort(400, "BAD_REQUEST", "Nothing to import")

    with ws.lock:
        tools: list[Tool] = []
        for item in data:
            taken = ws.tools.keys() | {t.id for t in tools}
            tools.append(create_tool(item, user, taken=taken))
        counts = Counter(t.id for t in tools)
        dup = sorted(i for i, n in counts.items() if n > 1 or i in ws.tools)
        if dup:
            abort(409, "TOOL_EXISTS", f"Tool ids already exist: {', '.join(dup)}")
        return ws.save_tools(tools, with_logs=True)


@router.patch("/{tool_id}", response_model=Tool)
def edit_tool(
    tool_id: str,
    body: ToolUpdate,
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("manage_inventory")),
):
    with ws.lock:
        tool = ws.get_tool(tool_id)
        updated = apply_admin_edit(tool, body)
        return ws.save_edit(tool, updated)


@router.post("/{tool_id}/book", response_model=Tool)
def book_tool(
    tool_id: str,
    body: BookOutRequest | None = None,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(require_permission("book")),
):
    with ws.lock:
        tool = ws.get_tool(tool_id)
        updated, log = book_out(tool, user, site=body.site if body else None)
        return ws.save_custody(tool, updated, [log])


@router.post("/{tool_id}/return", response_model=Tool)
def return_booked_tool(
    tool_id: str,
    body: ReturnRequest | None = None,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(require_permission("return")),
):
    with ws.lock:
        tool = ws.get_tool(tool_id)
        updated, log = return_tool(
            tool,
            user,
            comment=body.comment if body else None,
            photo=body.photo if body else None,
            defective=body.defective if body else False,
        )
        return ws.save_custody(tool, updated, [log])
