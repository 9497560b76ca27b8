from fastapi import APIRouter, Depends, Form, Header
from fastapi.security import OAuth2PasswordRequestForm

from toolcustody.deps import get_workspace, require_active_user, require_user
from toolcustody.schemas import (
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginResponse,
    PasswordChange,
    SessionResponse,
    User,
    UserRead,
)
from toolcustody.services import accounts
from toolcustody.workspace import Workspace

router = APIRouter(prefix="/auth", tags=["auth"])


def _read(user: User) -> UserRead:
    return UserRead.model_validate(user.model_dump())


@router.post("/login", response_model=LoginResponse)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    remember: bool = Form(False),
    biometric_available: bool = Form(False),
    ws: Workspace = Depends(get_workspace),
):
    # OAuth2 表单里的 username 即邮箱
    result = accounts.sign_in(
        ws,
        form_data.username,
        form_data.password,
        remember=remember,
        biometric_available=biometric_available,
    )
    return LoginResponse(
        access_token=result.access_token,
        user=_read(result.user),
        must_change_password=result.user.must_change_password,
        biometric_prompt=result.biometric_prompt,
        biometric_prompt_delay=result.biometric_prompt_delay,
        device_token=result.device_token,
    )


@router.post("/logout")
def logout(user: User = Depends(require_user), ws: Workspace = Depends(get_workspace)):
    accounts.sign_out(ws, user)
    return {"ok": True}


@router.get("/session", response_model=SessionResponse)
def remembered_session(
    x_device_token: str | None = Header(None),
    ws: Workspace = Depends(get_workspace),
):
    user = accounts.resume_session(ws, x_device_token)
    return SessionResponse(access_token=accounts.issue_token(ws, user), user=_read(user))


@router.get("/me", response_model=UserRead)
def me(user: User = Depends(require_user)):
    return _read(user)


@router.post("/change-password", response_model=UserRead)
def change_password(
    data: PasswordChange,
    user: User = Depends(require_user),
    ws: Workspace = Depends(get_workspace),
):
    updated = accounts.change_password(ws, user, data.new_password, data.confirm_password)
    return _read(updated)


@router.post("/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(data: ForgotPasswordRequest, ws: Workspace = Depends(get_workspace)):
    result = accounts.forgot_password(ws, data.email)
    return ForgotPasswordResponse(
        temp_password=result.temp_password,
        delivered_in_app=result.delivered_in_app,
    )


@router.post("/biometric/enroll")
def enroll_biometric(user: User = Depends(require_active_user), ws: Workspace = Depends(get_workspace)):
    accounts.enroll_biometrics(ws, user)
    return {"ok": True}
