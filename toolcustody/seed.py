"""内置默认数据：远端不可用或为空时使用并回写。"""
from datetime import datetime, timedelta, timezone

from toolcustody.schemas import Tool, ToolStatus, User, UserRole
from toolcustody.security import encode_password

DEFAULT_PASSWORD = "password123"


def default_users(password_mode: str = "secure") -> list[User]:
    pw = encode_password(DEFAULT_PASSWORD, password_mode)
    return [
        User(id="U1", name="Karin Admin", role=UserRole.ADMIN, email="karin@nedabuilda.com", password=pw),
        User(id="U2", name="Gavin Builder", role=UserRole.USER, email="gavin@nedabuilda.com", password=pw),
        User(id="U3", name="Bob Manager", role=UserRole.MANAGER, email="bob@nedabuilda.com", password=pw),
        User(id="U4", name="Sarah Site", role=UserRole.USER, email="sarah@nedabuilda.com", password=pw),
    ]


def default_tools() -> list[Tool]:
    now = datetime.now(timezone.utc)
    return [
        Tool(
            id="T1",
            name="DeWalt Hammer Drill",
            category="Power Tools",
            serial_number="DW-99122",
            status=ToolStatus.AVAILABLE,
        ),
        Tool(
            id="T2",
            name="Makita Mitre Saw",
            category="Power Tools",
            serial_number="MK-55231",
            status=ToolStatus.BOOKED_OUT,
            current_holder_id="U2",
            current_holder_name="Gavin Builder",
            current_site="Main St Apartments",
            booked_at=now - timedelta(days=2),
        ),
        Tool(
            id="T3",
            name="Fiber Optic Splicer",
            category="Precision",
            serial_number="FS-778",
            status=ToolStatus.AVAILABLE,
        ),
        Tool(
            id="T4",
            name="Honda Generator 2kVA",
            category="Power",
            serial_number="HG-2000",
            status=ToolStatus.UNDER_REPAIR,
        ),
    ]
