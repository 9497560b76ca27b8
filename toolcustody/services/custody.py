import random
from datetime import datetime, timezone
from typing import Container, Optional
from uuid import uuid4

from toolcustody.error import abort
from toolcustody.schemas import LogAction, Tool, ToolCreate, ToolLog, ToolStatus, ToolUpdate, User

# 管理员编辑可设置的状态；BOOKED_OUT 只能通过领用产生
ADMIN_STATUSES = (ToolStatus.AVAILABLE, ToolStatus.UNDER_REPAIR, ToolStatus.DEFECTIVE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


NEW_ID_ATTEMPTS = 20


def new_tool_id(taken: Container[str] = ()) -> str:
    # NB-xxxx 只有 9000 个，撞号时重抽
    for _ in range(NEW_ID_ATTEMPTS):
        candidate = f"NB-{random.randint(1000, 9999)}"
        if candidate not in taken:
            return candidate
    abort(409, "TOOL_EXISTS", "Could not allocate a free tool id, please provide one")


def custody_invariant_holds(tool: Tool) -> bool:
    return (tool.status == ToolStatus.BOOKED_OUT) == bool(tool.current_holder_id)


def _log_time(tool: Tool, now: Optional[datetime]) -> datetime:
    ts = now or _now()
    # 同一工具的日志时间不倒退
    if tool.logs and tool.logs[-1].timestamp > ts:
        return tool.logs[-1].timestamp
    return ts


def _make_log(
    actor: User,
    action: LogAction,
    timestamp: datetime,
    site: Optional[str] = None,
    comment: Optional[str] = None,
    photo: Optional[str] = None,
) -> ToolLog:
    return ToolLog(
        id=uuid4().hex[:12],
        user_id=actor.id,
        user_name=actor.name,
        action=action,
        timestamp=timestamp,
        site=site,
        comment=comment,
        photo=photo,
    )


def book_out(
    tool: Tool, actor: User, site: Optional[str] = None, now: Optional[datetime] = None
) -> tuple[Tool, ToolLog]:
    if tool.status != ToolStatus.AVAILABLE:
        abort(409, "TOOL_NOT_AVAILABLE", f"Tool {tool.id} is {tool.status.value} and cannot be booked out")

    ts = _log_time(tool, now)
    site_clean = (site or "").strip() or None
    log = _make_log(actor, LogAction.BOOK_OUT, ts, site=site_clean)

    changes = {
        "status": ToolStatus.BOOKED_OUT,
        "current_holder_id": actor.id,
        "current_holder_name": actor.name,
        "booked_at": ts,
        "logs": [*tool.logs, log],
    }
    if site_clean:
        changes["current_site"] = site_clean
    return tool.model_copy(update=changes), log


def return_tool(
    tool: Tool,
    actor: User,
    comment: Optional[str] = None,
    photo: Optional[str] = None,
    defective: bool = False,
    now: Optional[datetime] = None,
) -> tuple[Tool, ToolLog]:
    if tool.status != ToolStatus.BOOKED_OUT:
        abort(409, "TOOL_NOT_BOOKED_OUT", f"Tool {tool.id} is not booked out")
    if tool.current_holder_id != actor.id:
        abort(403, "NOT_TOOL_HOLDER", "Only the person holding this tool can return it")

    ts = _log_time(tool, now)
    log = _make_log(actor, LogAction.RETURN, ts, comment=(comment or "").strip() or None, photo=photo or None)

    # last_returned_at 保持不变（与旧客户端一致）
    updated = tool.model_copy(
        update={
            # 归还时报修，直接进入 DEFECTIVE
            "status": ToolStatus.DEFECTIVE if defective else ToolStatus.AVAILABLE,
            "current_holder_id": None,
            "current_holder_name": None,
            "current_site": None,
            "booked_at": None,
            "logs": [*tool.logs, log],
        }
    )
    return updated, log


def create_tool(
    data: ToolCreate, actor: User, now: Optional[datetime] = None, taken: Container[str] = ()
) -> Tool:
    ts = now or _now()
    return Tool(
        id=(data.id or "").strip() or new_tool_id(taken),
        name=data.name.strip(),
        category=data.category,
        serial_number=data.serial_number,
        item_count=data.item_count,
        purchase_date=data.purchase_date,
        notes=data.notes or "",
        main_photo=data.main_photo,
        status=ToolStatus.AVAILABLE,
        logs=[_make_log(actor, LogAction.CREATE, ts)],
    )


def apply_admin_edit(tool: Tool, changes: ToolUpdate) -> Tool:
    data = changes.model_dump(exclude_unset=True)

    status = data.get("status")
    if status is not None:
        if status not in ADMIN_STATUSES:
            abort(400, "INVALID_STATUS", "BOOKED_OUT can only be set by booking the tool out")
        if tool.status == ToolStatus.BOOKED_OUT:
            abort(409, "TOOL_BOOKED_OUT", "Tool is booked out; it must be returned first")

    if "name" in data and not (data["name"] or "").strip():
        abort(400, "BAD_REQUEST", "name must not be empty")
    if "notes" in data and data["notes"] is None:
        data["notes"] = ""
    if "item_count" in data and data["item_count"] is None:
        data["item_count"] = 1

    if not data:
        abort(400, "NO_CHANGE", "Nothing to update")
    return tool.model_copy(update=data)
