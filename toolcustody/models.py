from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import date, datetime


class UserRow(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    name: str
    role: str = Field(default="USER")  # ADMIN / MANAGER / USER
    email: str = Field(index=True, unique=True)
    password: str
    is_enabled: bool = Field(default=True)
    must_change_password: bool = Field(default=False)


class ToolRow(SQLModel, table=True):
    __tablename__ = "tools"

    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    category: Optional[str] = None
    serial_number: str = Field(default="")
    item_count: int = Field(default=1)
    purchase_date: Optional[date] = None
    notes: str = Field(default="")
    main_photo: Optional[str] = None

    status: str = Field(default="AVAILABLE", index=True)
    current_holder_id: Optional[str] = Field(default=None, index=True)
    current_holder_name: Optional[str] = None
    current_site: Optional[str] = None
    booked_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_returned_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    version: int = Field(default=0)


class ToolLogRow(SQLModel, table=True):
    __tablename__ = "tool_logs"

    # 服务端分配的顺序号，日志顺序以它为准
    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)

    tool_id: str = Field(foreign_key="tools.id", index=True)
    user_id: str = Field(index=True)
    user_name: str
    action: str = Field(index=True)  # BOOK_OUT / RETURN / CREATE
    timestamp: datetime = Field(sa_type=DateTime(timezone=True))

    site: Optional[str] = None
    comment: Optional[str] = None
    photo: Optional[str] = None
