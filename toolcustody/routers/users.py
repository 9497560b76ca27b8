from uuid import uuid4

from fastapi import APIRouter, Depends

from toolcustody.deps import get_workspace, require_admin, require_permission
from toolcustody.error import abort
from toolcustody.schemas import User, UserCreate, UserRead, UserUpdate
from toolcustody.security import encode_password
from toolcustody.workspace import Workspace

router = APIRouter(prefix="/users", tags=["users"])


def _read(user: User) -> UserRead:
    return UserRead.model_validate(user.model_dump())


def _email_taken(ws: Workspace, email: str, exclude_id: str | None = None) -> bool:
    other = ws.find_user_by_email(email)
    return other is not None and other.id != exclude_id


@router.get("", response_model=list[UserRead])
def list_users(
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("manage_users")),
):
    return [_read(u) for u in sorted(ws.users.values(), key=lambda u: u.name.lower())]


@router.post("", response_model=UserRead)
def create_user(
    data: UserCreate,
    ws: Workspace = Depends(get_workspace),
    _admin: User = Depends(require_admin),
):
    email = data.email.strip()
    with ws.lock:
        # 邮箱大小写不敏感唯一
        if _email_taken(ws, email):
            abort(409, "EMAIL_EXISTS", "An account with this email already exists")

        user_id = (data.id or "").strip() or f"U{uuid4().hex[:8]}"
        if user_id in ws.users:
            abort(409, "USER_EXISTS", f"User id {user_id} already exists")

        user = User(
            id=user_id,
            name=data.name.strip(),
            role=data.role,
            email=email,
            password=encode_password(data.password, ws.settings.password_mode),
            is_enabled=data.is_enabled,
        )
        return _read(ws.save_user(user))


@router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: str,
    data: UserUpdate,
    ws: Workspace = Depends(get_workspace),
    # 改角色 / 停用账号与建号同级，只给 ADMIN
    _admin: User = Depends(require_admin),
):
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        abort(400, "NO_CHANGE", "Nothing to update")

    with ws.lock:
        user = ws.get_user(user_id)
        if "email" in changes:
            changes["email"] = changes["email"].strip()
            if _email_taken(ws, changes["email"], exclude_id=user_id):
                abort(409, "EMAIL_EXISTS", "An account with this email already exists")
        if "password" in changes:
            changes["password"] = encode_password(changes["password"], ws.settings.password_mode)
        return _read(ws.save_user(user.model_copy(update=changes)))
