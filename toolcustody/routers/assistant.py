from fastapi import APIRouter, Depends, Query

from toolcustody.deps import get_workspace, require_active_user, require_permission
from toolcustody.schemas import AssistantAnswer, AssistantQuery, User
from toolcustody.services.assistant import analyze_tools
from toolcustody.services.places import search_addresses
from toolcustody.workspace import Workspace

router = APIRouter(tags=["assistant"])


@router.post("/assistant/query", response_model=AssistantAnswer)
def ask_assistant(
    data: AssistantQuery,
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("ai_assistant")),
):
    answer = analyze_tools(list(ws.tools.values()), data.query, ws.settings)
    return {"answer": answer}


@router.get("/places/autocomplete", response_model=list[str])
def places_autocomplete(
    q: str = Query("", description="地址前缀，至少 3 个字符"),
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_active_user),
):
    return search_addresses(q, ws.settings)
