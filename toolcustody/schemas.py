from typing import Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime


class ToolStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED_OUT = "BOOKED_OUT"
    UNDER_REPAIR = "UNDER_REPAIR"
    DEFECTIVE = "DEFECTIVE"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"


class LogAction(str, Enum):
    BOOK_OUT = "BOOK_OUT"
    RETURN = "RETURN"
    CREATE = "CREATE"


_BASE_CAPS = frozenset({"book", "return", "view_inventory", "ai_assistant"})
_STAFF_CAPS = _BASE_CAPS | {
    "view_reports",
    "view_all_bookings",
    "manage_inventory",
    "manage_users",
}

PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.USER: _BASE_CAPS,
    UserRole.MANAGER: _STAFF_CAPS,
    UserRole.ADMIN: _STAFF_CAPS,
}


def has_permission(role: UserRole, capability: str) -> bool:
    return capability in PERMISSIONS.get(role, frozenset())


# ---- 领域模型 ----

class ToolLog(BaseModel):
    """审计记录，写入后不再修改。"""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    user_name: str
    action: LogAction
    timestamp: datetime
    site: Optional[str] = None
    comment: Optional[str] = None
    photo: Optional[str] = None


class Tool(BaseModel):
    id: str
    name: str
    category: Optional[str] = None
    serial_number: Optional[str] = None
    item_count: int = 1
    purchase_date: Optional[date] = None
    notes: str = ""
    main_photo: Optional[str] = None

    status: ToolStatus = ToolStatus.AVAILABLE
    current_holder_id: Optional[str] = None
    current_holder_name: Optional[str] = None
    current_site: Optional[str] = None
    booked_at: Optional[datetime] = None
    last_returned_at: Optional[datetime] = None

    logs: list[ToolLog] = Field(default_factory=list)
    # 每次落库 +1，用于领用/归还的 CAS
    version: int = 0


class User(BaseModel):
    id: str
    name: str
    role: UserRole = UserRole.USER
    email: str
    password: str
    is_enabled: bool = True
    must_change_password: bool = False


class UserRead(BaseModel):
    id: str
    name: str
    role: UserRole
    email: str
    is_enabled: bool
    must_change_password: bool


# ---- 请求 / 响应 ----

class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
    must_change_password: bool = False
    biometric_prompt: bool = False
    biometric_prompt_delay: Optional[float] = None
    # remember 时下发，用于 /auth/session 取回会话
    device_token: Optional[str] = None


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class PasswordChange(BaseModel):
    new_password: str
    confirm_password: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ForgotPasswordResponse(BaseModel):
    ok: bool = True
    temp_password: Optional[str] = None
    delivered_in_app: bool = True


class BookOutRequest(BaseModel):
    site: Optional[str] = Field(None, max_length=200, description="使用地点（可选）")


class ReturnRequest(BaseModel):
    comment: Optional[str] = Field(None, max_length=1000)
    photo: Optional[str] = None
    defective: bool = Field(False, description="归还时报告损坏")


class ToolCreate(BaseModel):
    id: Optional[str] = Field(None, min_length=1, max_length=50, description="不填则自动生成 NB-xxxx")
    name: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = None
    serial_number: Optional[str] = None
    item_count: int = Field(1, ge=1, le=100000)
    purchase_date: Optional[date] = None
    notes: str = ""
    main_photo: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"name": "Hilti TE-70", "category": "Heavy Plant", "serial_number": "MFR-X110"},
            ]
        }
    }


class ToolUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[str] = None
    serial_number: Optional[str] = None
    item_count: Optional[int] = Field(None, ge=1, le=100000)
    purchase_date: Optional[date] = None
    notes: Optional[str] = None
    main_photo: Optional[str] = None
    status: Optional[ToolStatus] = Field(None, description="AVAILABLE/UNDER_REPAIR/DEFECTIVE")


class ToolListResponse(BaseModel):
    items: list[Tool]
    total: int
    q: str | None = None


class BookingItem(BaseModel):
    tool_id: str
    tool_name: str
    holder_id: str
    holder_name: Optional[str] = None
    site: Optional[str] = None
    booked_at: Optional[datetime] = None


class UserCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    password: str = Field("password123", min_length=1)
    role: UserRole = UserRole.USER
    is_enabled: bool = True


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=200)
    password: Optional[str] = Field(None, min_length=1)
    role: Optional[UserRole] = None
    is_enabled: Optional[bool] = None


class AssistantQuery(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)


class AssistantAnswer(BaseModel):
    answer: str
