import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from toolcustody.error import _auth_401, abort
from toolcustody.local_state import DEVICE_SECRET_KEY, REMEMBERED_USER_KEY, biometric_key
from toolcustody.schemas import User
from toolcustody.security import (
    create_access_token,
    encode_password,
    hash_password,
    needs_upgrade,
    verify_password,
)
from toolcustody.store import StoreError
from toolcustody.workspace import DeviceSession, Workspace

logger = logging.getLogger(__name__)
delivery_logger = logging.getLogger("toolcustody.delivery")


@dataclass
class SignInResult:
    user: User
    access_token: str
    biometric_prompt: bool = False
    biometric_prompt_delay: Optional[float] = None
    device_token: Optional[str] = None


@dataclass
class TempPasswordResult:
    temp_password: Optional[str]
    delivered_in_app: bool


def issue_token(ws: Workspace, user: User) -> str:
    return create_access_token(user.id, ws.settings.secret_key, ws.settings.access_token_expire_minutes)


def _upgrade_stored_password(ws: Workspace, user: User, password: str) -> User:
    upgraded = user.model_copy(update={"password": hash_password(password)})
    try:
        ws.store.upsert_user(upgraded)
    except StoreError as e:
        # 登录本身不受影响，下次再升级
        logger.warning("could not upgrade stored password for user %s: %s", user.id, e)
        return user
    ws.users[user.id] = upgraded
    return upgraded


def authenticate(ws: Workspace, email: str, password: str) -> User:
    mode = ws.settings.password_mode
    user = ws.find_user_by_email(email)
    if (not user) or (not verify_password(password, user.password)):
        raise _auth_401("INVALID_CREDENTIALS", "Email or password is incorrect")
    if not user.is_enabled:
        abort(403, "ACCOUNT_DISABLED", "This account has been disabled")
    if needs_upgrade(user.password, mode):
        user = _upgrade_stored_password(ws, user, password)
    return user


def sign_in(
    ws: Workspace,
    email: str,
    password: str,
    remember: bool = False,
    biometric_available: bool = False,
) -> SignInResult:
    with ws.lock:
        user = authenticate(ws, email, password)
        ws.session = DeviceSession(user=user, remembered=remember)
        device_token = None
        if remember:
            device_token = secrets.token_urlsafe(32)
            ws.local.set(REMEMBERED_USER_KEY, user.model_dump(mode="json"))
            ws.local.set(DEVICE_SECRET_KEY, hash_password(device_token))

    # 设备支持、尚未登记、且没有待改密码时，提示一次登记生物识别
    prompt = (
        biometric_available
        and not ws.local.get(biometric_key(user.id))
        and not user.must_change_password
    )
    logger.info("user %s signed in", user.id)
    return SignInResult(
        user=user,
        access_token=issue_token(ws, user),
        biometric_prompt=prompt,
        biometric_prompt_delay=ws.settings.biometric_prompt_delay if prompt else None,
        device_token=device_token,
    )


def sign_out(ws: Workspace, user: Optional[User] = None) -> None:
    """user 给出时只允许登出自己的会话。"""
    with ws.lock:
        current = ws.session.user
        if user is not None and current is not None and current.id != user.id:
            logger.info("user %s tried to sign out the session of user %s, ignored", user.id, current.id)
            return
        ws.session = DeviceSession()
        ws.local.delete(REMEMBERED_USER_KEY)
        ws.local.delete(DEVICE_SECRET_KEY)


def resume_session(ws: Workspace, device_token: Optional[str]) -> User:
    """凭设备密钥取回记住的会话。"""
    user = ws.session.user
    if user is None or not ws.session.remembered:
        abort(404, "NO_SESSION", "No remembered session on this device")
    stored = ws.local.get(DEVICE_SECRET_KEY)
    if not device_token or not stored or not verify_password(device_token, stored):
        raise _auth_401("INVALID_DEVICE_TOKEN", "This device is not allowed to resume the session")
    if not user.is_enabled:
        abort(403, "ACCOUNT_DISABLED", "This account has been disabled")
    return user


def change_password(ws: Workspace, user: User, new_password: str, confirm_password: str) -> User:
    min_len = ws.settings.min_password_length
    if len(new_password) < min_len:
        abort(400, "PASSWORD_TOO_SHORT", f"Password must be at least {min_len} characters")
    if new_password != confirm_password:
        abort(400, "PASSWORD_MISMATCH", "Passwords do not match")

    with ws.lock:
        current = ws.users.get(user.id, user)
        updated = current.model_copy(
            update={
                "password": encode_password(new_password, ws.settings.password_mode),
                "must_change_password": False,
            }
        )
        return ws.save_user(updated)


def generate_temp_password(prefix: str) -> str:
    return f"{prefix}{secrets.randbelow(9000) + 1000}"


def deliver_temp_password(user: User, temp_password: str) -> None:
    # 没有邮件/短信通道，交给运维侧日志
    delivery_logger.warning("temporary password for %s: %s", user.email, temp_password)


def forgot_password(ws: Workspace, email: str) -> TempPasswordResult:
    user = ws.find_user_by_email(email)
    if not user:
        abort(404, "EMAIL_NOT_RECOGNIZED", "Email not recognized")

    temp = generate_temp_password(ws.settings.temp_password_prefix)
    with ws.lock:
        updated = user.model_copy(
            update={
                "password": encode_password(temp, ws.settings.password_mode),
                "must_change_password": True,
            }
        )
        ws.save_user(updated)
    logger.info("temporary password issued for user %s", user.id)

    if ws.settings.show_temp_password_in_app:
        return TempPasswordResult(temp_password=temp, delivered_in_app=True)
    deliver_temp_password(updated, temp)
    return TempPasswordResult(temp_password=None, delivered_in_app=False)


def restore_session(ws: Workspace) -> Optional[User]:
    """
    记住的会话：优先使用刚加载的同邮箱用户（带上服务端的角色/密码变更），
    找不到时退回本地缓存的旧记录，不强制登出。
    """
    raw = ws.local.get(REMEMBERED_USER_KEY)
    if not raw:
        return None
    try:
        stale = User.model_validate(raw)
    except ValidationError:
        logger.warning("remembered session is unreadable, discarding it")
        ws.local.delete(REMEMBERED_USER_KEY)
        return None

    fresh = ws.find_user_by_email(stale.email)
    if fresh is not None and not fresh.is_enabled:
        logger.info("remembered user %s is disabled, signing out", fresh.id)
        sign_out(ws)
        return None

    user = fresh or stale
    ws.session = DeviceSession(user=user, remembered=True)
    if fresh is not None and fresh != stale:
        ws.local.set(REMEMBERED_USER_KEY, fresh.model_dump(mode="json"))
    return user


def enroll_biometrics(ws: Workspace, user: User) -> None:
    ws.local.set(biometric_key(user.id), "enabled")
