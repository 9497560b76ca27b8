from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from toolcustody.error import _auth_401, abort
from toolcustody.schemas import User, UserRole, has_permission
from toolcustody.security import decode_token
from toolcustody.workspace import Workspace

# auto_error=False：“没带 token”的错误格式由我们自己给
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_workspace(request: Request) -> Workspace:
    return request.app.state.workspace


def require_user(
    token: str | None = Depends(oauth2_scheme),
    ws: Workspace = Depends(get_workspace),
) -> User:
    if not token:
        raise _auth_401("NOT_AUTHENTICATED", "Not signed in or session expired, please sign in again")

    try:
        user_id = decode_token(token, ws.settings.secret_key)
    except (JWTError, ValueError):
        raise _auth_401("INVALID_TOKEN", "Token is invalid or expired, please sign in again")

    user = ws.users.get(user_id)
    # 记住的会话在新用户表里找不到时，沿用本地缓存的记录
    if user is None and ws.session.user is not None and ws.session.user.id == user_id:
        user = ws.session.user
    if not user:
        raise _auth_401("USER_NOT_FOUND", "User does not exist or has been removed")
    if not user.is_enabled:
        abort(403, "ACCOUNT_DISABLED", "This account has been disabled")

    return user


def require_active_user(user: User = Depends(require_user)) -> User:
    if user.must_change_password:
        abort(403, "PASSWORD_CHANGE_REQUIRED", "You must change your password before continuing")
    return user


def require_permission(capability: str):
    def checker(user: User = Depends(require_active_user)) -> User:
        if not has_permission(user.role, capability):
            abort(403, "FORBIDDEN", f"Your role does not allow '{capability}'")
        return user

    return checker


def require_admin(user: User = Depends(require_active_user)) -> User:
    if user.role != UserRole.ADMIN:
        abort(403, "FORBIDDEN", "Only administrators can do this")
    return user
