import hmac
from datetime import datetime, timezone
from jose import jwt
from passlib.context import CryptContext
from uuid import uuid4

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def is_hashed(stored: str) -> bool:
    return bool(stored) and pwd_context.identify(stored) is not None


def encode_password(password: str, mode: str) -> str:
    # legacy 模式明文保存，仅为兼容旧库
    if mode == "legacy":
        return password
    return hash_password(password)


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    # 两种模式下哈希值都只能按哈希校验
    if is_hashed(stored):
        return pwd_context.verify(password, stored)
    # 旧数据里的明文
    return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))


def needs_upgrade(stored: str, mode: str) -> bool:
    if mode == "legacy":
        return False
    return not is_hashed(stored) or pwd_context.needs_update(stored)


def create_access_token(subject: str, secret: str, expire_minutes: int) -> str:
    now = datetime.now(timezone.utc)
    iat = int(now.timestamp())
    exp = iat + expire_minutes * 60

    payload = {
        "sub": subject,
        "iat": iat,
        "exp": exp,
        "jti": uuid4().hex,
        "type": "access",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_token(token: str, secret: str) -> str:
    payload = jwt.decode(token, secret, algorithms=["HS256"])

    sub = payload.get("sub")
    if not sub:
        raise ValueError("Missing subject")
    if payload.get("type") not in (None, "access"):
        raise ValueError("Invalid token type")
    return sub
