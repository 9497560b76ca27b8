"""
远端存储适配层：领域模型 <-> 行数据。

- 读：每个逻辑字段按候选列名链依次回退（兼容历史列名），全部缺失时用默认值
- 写：可选描述字段为 None 时不写；非空列补默认值；领用相关列总是显式写入（归还要能清空）
- 未配置 / 连不上：读返回 STORE_ABSENT，写返回 STORE_ABSENT，不抛异常
- 写失败（约束 / 网络）：抛 StoreError，由调用方决定提示与回滚
"""
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy import create_engine, insert, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from toolcustody.models import ToolLogRow, ToolRow, UserRow
from toolcustody.schemas import LogAction, Tool, ToolLog, ToolStatus, User, UserRole

logger = logging.getLogger(__name__)


class _Absent:
    def __repr__(self) -> str:
        return "STORE_ABSENT"


# 与空列表区分：空列表 = 远端确实没有数据
STORE_ABSENT = _Absent()


class StoreError(Exception):
    pass


class StaleWriteError(StoreError):
    def __init__(self, tool_id: str):
        super().__init__(f"tool {tool_id} was changed by someone else")
        self.tool_id = tool_id


@dataclass(frozen=True)
class FieldSpec:
    keys: tuple[str, ...]
    default: Any = None

    def read(self, row: Mapping[str, Any]) -> Any:
        for key in self.keys:
            value = row.get(key)
            if value is not None and value != "":
                return value
        return self.default


TOOL_FIELDS: dict[str, FieldSpec] = {
    "id": FieldSpec(("id", "tool_id")),
    "name": FieldSpec(("name", "tool_name", "title", "display_name"), "Unnamed tool"),
    "category": FieldSpec(("category", "type", "tool_type")),
    "serial_number": FieldSpec(("serial_number", "serial", "sn"), ""),
    "item_count": FieldSpec(("item_count", "number_of_items", "quantity", "qty"), 1),
    "purchase_date": FieldSpec(("purchase_date", "date_of_purchase", "purchased_at")),
    "notes": FieldSpec(("notes", "note", "remark", "comments"), ""),
    "main_photo": FieldSpec(("main_photo", "photo", "photo_url", "image")),
    "status": FieldSpec(("status",), ToolStatus.AVAILABLE.value),
    "current_holder_id": FieldSpec(("current_holder_id", "holder_id")),
    "current_holder_name": FieldSpec(("current_holder_name", "holder_name")),
    "current_site": FieldSpec(("current_site", "site")),
    "booked_at": FieldSpec(("booked_at",)),
    "last_returned_at": FieldSpec(("last_returned_at", "returned_at")),
    "version": FieldSpec(("version",), 0),
}

USER_FIELDS: dict[str, FieldSpec] = {
    "id": FieldSpec(("id", "user_id")),
    "name": FieldSpec(("name", "full_name", "display_name"), "Unknown user"),
    "role": FieldSpec(("role",), UserRole.USER.value),
    "email": FieldSpec(("email", "email_address")),
    "password": FieldSpec(("password", "password_hash"), ""),
    "is_enabled": FieldSpec(("is_enabled", "enabled", "isEnabled"), True),
    "must_change_password": FieldSpec(("must_change_password", "mustChangePassword"), False),
}

LOG_FIELDS: dict[str, FieldSpec] = {
    "id": FieldSpec(("id",)),
    "user_id": FieldSpec(("user_id", "userId")),
    "user_name": FieldSpec(("user_name", "userName"), ""),
    "action": FieldSpec(("action",)),
    "timestamp": FieldSpec(("timestamp", "created_at")),
    "site": FieldSpec(("site",)),
    "comment": FieldSpec(("comment",)),
    "photo": FieldSpec(("photo",)),
}

# None 时不写入
_OPTIONAL_TOOL_COLUMNS = ("category", "main_photo", "purchase_date")
# 总是写入（None 即清空）
_CUSTODY_COLUMNS = (
    "current_holder_id",
    "current_holder_name",
    "current_site",
    "booked_at",
    "last_returned_at",
)

# 管理员编辑可改的列
EDITABLE_COLUMNS = (
    "name",
    "category",
    "serial_number",
    "item_count",
    "purchase_date",
    "notes",
    "main_photo",
    "status",
)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ---- 值归一化 ----

def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # 旧数据是毫秒时间戳
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return _as_datetime(int(s))
        try:
            return _as_datetime(datetime.fromisoformat(s.replace("Z", "+00:00")))
        except ValueError:
            pass
    logger.warning("unreadable timestamp value %r, treating as absent", value)
    return None


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    logger.warning("unreadable date value %r, treating as absent", value)
    return None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)


def _as_enum(enum_cls, value: Any, default, what: str):
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        logger.warning("unknown %s %r, using %s", what, value, default.value)
        return default


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# ---- 行 -> 领域 ----

def row_to_log(row: Mapping[str, Any]) -> Optional[ToolLog]:
    f = {k: spec.read(row) for k, spec in LOG_FIELDS.items()}
    timestamp = _as_datetime(f["timestamp"])
    if not f["id"] or not f["user_id"] or timestamp is None:
        logger.warning("skipping malformed log entry %r", dict(row))
        return None
    try:
        action = LogAction(str(f["action"]).upper())
    except ValueError:
        logger.warning("skipping log entry %s with unknown action %r", f["id"], f["action"])
        return None
    return ToolLog(
        id=str(f["id"]),
        user_id=str(f["user_id"]),
        user_name=str(f["user_name"]),
        action=action,
        timestamp=timestamp,
        site=_opt_str(f["site"]),
        comment=_opt_str(f["comment"]),
        photo=_opt_str(f["photo"]),
    )


def _legacy_logs(raw: Any) -> list[ToolLog]:
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("legacy logs column is not valid JSON, ignoring")
            return []
    if not isinstance(raw, list):
        return []
    logs = []
    for item in raw:
        if isinstance(item, Mapping):
            log = row_to_log(item)
            if log is not None:
                logs.append(log)
    return logs


def row_to_tool(row: Mapping[str, Any], persisted_logs: Sequence[ToolLog] = ()) -> Optional[Tool]:
    f = {k: spec.read(row) for k, spec in TOOL_FIELDS.items()}
    if not f["id"]:
        logger.warning("skipping tool row without id: %r", dict(row))
        return None

    logs = _legacy_logs(row.get("logs"))
    seen = {log.id for log in logs}
    logs.extend(log for log in persisted_logs if log.id not in seen)

    status = _as_enum(ToolStatus, f["status"], ToolStatus.AVAILABLE, "tool status")
    holder_id = _opt_str(f["current_holder_id"])
    holder_name = _opt_str(f["current_holder_name"])
    booked_at = _as_datetime(f["booked_at"])

    # 持有人 <-> BOOKED_OUT 必须同时成立
    if status == ToolStatus.BOOKED_OUT and not holder_id:
        logger.warning("tool %s is BOOKED_OUT without a holder, reading as AVAILABLE", f["id"])
        status = ToolStatus.AVAILABLE
    if status != ToolStatus.BOOKED_OUT and holder_id:
        logger.warning("tool %s has holder %s but status %s, clearing holder", f["id"], holder_id, status.value)
        holder_id = holder_name = None
        booked_at = None

    return Tool(
        id=str(f["id"]),
        name=str(f["name"]),
        category=_opt_str(f["category"]),
        serial_number=_opt_str(f["serial_number"]),
        item_count=_as_int(f["item_count"], 1),
        purchase_date=_as_date(f["purchase_date"]),
        notes=str(f["notes"]),
        main_photo=_opt_str(f["main_photo"]),
        status=status,
        current_holder_id=holder_id,
        current_holder_name=holder_name,
        current_site=_opt_str(f["current_site"]),
        booked_at=booked_at,
        last_returned_at=_as_datetime(f["last_returned_at"]),
        logs=logs,
        version=_as_int(f["version"], 0),
    )


def row_to_user(row: Mapping[str, Any]) -> Optional[User]:
    f = {k: spec.read(row) for k, spec in USER_FIELDS.items()}
    if not f["id"] or not f["email"]:
        logger.warning("skipping user row without id/email: %r", f.get("id"))
        return None
    return User(
        id=str(f["id"]),
        name=str(f["name"]),
        role=_as_enum(UserRole, f["role"], UserRole.USER, "user role"),
        email=str(f["email"]).strip(),
        password=str(f["password"]),
        is_enabled=_as_bool(f["is_enabled"]),
        must_change_password=_as_bool(f["must_change_password"]),
    )


# ---- 领域 -> 行 ----

def tool_to_row(tool: Tool) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": tool.id,
        "name": tool.name or TOOL_FIELDS["name"].default,
        "serial_number": tool.serial_number or "",
        "item_count": tool.item_count or 1,
        "notes": tool.notes or "",
        "status": (tool.status or ToolStatus.AVAILABLE).value,
        "version": tool.version,
    }
    for key in _OPTIONAL_TOOL_COLUMNS:
        value = getattr(tool, key)
        if value is not None:
            row[key] = value
    for key in _CUSTODY_COLUMNS:
        row[key] = getattr(tool, key)
    return row


def log_to_row(tool_id: str, log: ToolLog) -> dict[str, Any]:
    row = {
        "id": log.id,
        "tool_id": tool_id,
        "user_id": log.user_id,
        "user_name": log.user_name,
        "action": log.action.value,
        "timestamp": log.timestamp,
    }
    for key in ("site", "comment", "photo"):
        value = getattr(log, key)
        if value is not None:
            row[key] = value
    return row


def user_to_row(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "role": user.role.value,
        "email": user.email,
        "password": user.password,
        "is_enabled": user.is_enabled,
        "must_change_password": user.must_change_password,
    }


class RemoteStore:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    @classmethod
    def from_settings(cls, settings) -> "RemoteStore":
        url = settings.database_url
        if not url:
            logger.warning("database_url is not configured, running in local-only mode")
            return cls(None)

        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": settings.store_timeout_seconds}
        elif url.startswith("postgres"):
            connect_args = {"connect_timeout": settings.store_timeout_seconds}

        try:
            engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        except (SQLAlchemyError, ImportError) as e:
            logger.error("could not create store engine (%s), running in local-only mode", e)
            return cls(None)
        return cls(engine)

    @property
    def configured(self) -> bool:
        return self.engine is not None

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()

    def create_schema(self) -> bool:
        if self.engine is None:
            return False
        try:
            SQLModel.metadata.create_all(
                self.engine,
                tables=[UserRow.__table__, ToolRow.__table__, ToolLogRow.__table__],
            )
        except SQLAlchemyError:
            logger.exception("create schema failed")
            return False
        return True

    # ---- 读 ----

    def _fetch_logs(self, tool_id: Optional[str] = None) -> dict[str, list[ToolLog]]:
        sql = "SELECT * FROM tool_logs"
        params: dict[str, Any] = {}
        if tool_id is not None:
            sql += " WHERE tool_id = :tool_id"
            params["tool_id"] = tool_id
        sql += " ORDER BY seq"
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(sql), params).mappings().all()
        except SQLAlchemyError as e:
            logger.warning("tool_logs unavailable (%s), using legacy logs column only", e)
            return {}

        grouped: dict[str, list[ToolLog]] = defaultdict(list)
        for row in rows:
            log = row_to_log(row)
            if log is not None:
                grouped[str(row["tool_id"])].append(log)
        return grouped

    def fetch_all_tools(self) -> Union[list[Tool], _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text("SELECT * FROM tools")).mappings().all()
        except SQLAlchemyError:
            logger.exception("fetch tools failed")
            return STORE_ABSENT

        logs_by_tool = self._fetch_logs()
        tools = []
        for row in rows:
            tool = row_to_tool(row, logs_by_tool.get(str(row.get("id")), ()))
            if tool is not None:
                tools.append(tool)
        return tools

    def fetch_tool(self, tool_id: str) -> Union[Tool, None, _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT * FROM tools WHERE id = :id"), {"id": tool_id}
                ).mappings().first()
        except SQLAlchemyError:
            logger.exception("fetch tool %s failed", tool_id)
            return STORE_ABSENT
        if row is None:
            return None
        return row_to_tool(row, self._fetch_logs(tool_id).get(tool_id, ()))

    def fetch_all_users(self) -> Union[list[User], _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text("SELECT * FROM users")).mappings().all()
        except SQLAlchemyError:
            logger.exception("fetch users failed")
            return STORE_ABSENT
        return [u for u in (row_to_user(row) for row in rows) if u is not None]

    # ---- 写 ----

    def _upsert_row(self, conn: Connection, table, row: dict[str, Any]) -> None:
        make_insert = _UPSERT_INSERTS.get(conn.dialect.name)
        if make_insert is not None:
            stmt = make_insert(table).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.id],
                set_={k: stmt.excluded[k] for k in row if k != "id"},
            )
            conn.execute(stmt)
            return

        result = conn.execute(update(table).where(table.c.id == row["id"]).values(**row))
        if result.rowcount == 0:
            conn.execute(insert(table).values(**row))

    def _insert_log(self, conn: Connection, tool_id: str, log: ToolLog) -> None:
        table = ToolLogRow.__table__
        row = log_to_row(tool_id, log)
        make_insert = _UPSERT_INSERTS.get(conn.dialect.name)
        if make_insert is not None:
            conn.execute(
                make_insert(table).values(**row).on_conflict_do_nothing(index_elements=[table.c.id])
            )
            return
        # 只追加：已存在的日志不覆盖
        exists = conn.execute(select(table.c.id).where(table.c.id == log.id)).first()
        if exists is None:
            conn.execute(insert(table).values(**row))

    def _write_tools(self, pairs: Sequence[tuple[Tool, Iterable[ToolLog]]]) -> list[Tool]:
        table = ToolRow.__table__
        saved = [tool.model_copy(update={"version": tool.version + 1}) for tool, _ in pairs]
        try:
            with self.engine.begin() as conn:
                for tool, (_, logs) in zip(saved, pairs):
                    self._upsert_row(conn, table, tool_to_row(tool))
                    for log in logs:
                        self._insert_log(conn, tool.id, log)
        except SQLAlchemyError as e:
            logger.error("upsert tools failed: %s", e)
            raise StoreError("Could not save tools to the remote store") from e
        return saved

    def upsert_tool(self, tool: Tool, new_logs: Iterable[ToolLog] = ()) -> Union[Tool, _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        return self._write_tools([(tool, list(new_logs))])[0]

    def upsert_tools(self, tools: Sequence[Tool], *, with_logs: bool = False) -> Union[list[Tool], _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        return self._write_tools([(t, t.logs if with_logs else ()) for t in tools])

    def write_custody(
        self, tool: Tool, expected_version: int, new_logs: Iterable[ToolLog] = ()
    ) -> Union[Tool, _Absent]:
        """
        领用/归还的 CAS 写入：仅当库里的 version 仍等于 expected_version 时生效，
        否则抛 StaleWriteError，日志也不会写入（同一事务）。
        """
        return self.write_versioned(tool, expected_version, ("status", *_CUSTODY_COLUMNS), new_logs)

    def write_edit(self, tool: Tool, expected_version: int, columns: Iterable[str]) -> Union[Tool, _Absent]:
        """管理员编辑：只写改动过的描述/状态列，同样做版本检查。"""
        columns = tuple(columns)
        unknown = set(columns) - set(EDITABLE_COLUMNS)
        if unknown:
            raise ValueError(f"not editable: {', '.join(sorted(unknown))}")
        return self.write_versioned(tool, expected_version, columns)

    def write_versioned(
        self,
        tool: Tool,
        expected_version: int,
        columns: Iterable[str],
        new_logs: Iterable[ToolLog] = (),
    ) -> Union[Tool, _Absent]:
        if self.engine is None:
            return STORE_ABSENT

        table = ToolRow.__table__
        saved = tool.model_copy(update={"version": expected_version + 1})
        row = tool_to_row(saved)
        values = {k: row.get(k) for k in columns}
        values["version"] = saved.version

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(table)
                    .where(table.c.id == tool.id, table.c.version == expected_version)
                    .values(**values)
                )
                if result.rowcount != 1:
                    exists = conn.execute(select(table.c.id).where(table.c.id == tool.id)).first()
                    if exists is not None:
                        raise StaleWriteError(tool.id)
                    # 远端还没有这条（例如播种失败过），整行补写
                    self._upsert_row(conn, table, row)
                for log in new_logs:
                    self._insert_log(conn, tool.id, log)
        except StaleWriteError:
            logger.warning("stale write on tool %s (expected version %s)", tool.id, expected_version)
            raise
        except SQLAlchemyError as e:
            logger.error("versioned write on tool %s failed: %s", tool.id, e)
            raise StoreError("Could not save the tool to the remote store") from e
        return saved

    def _write_users(self, users: Sequence[User]) -> list[User]:
        table = UserRow.__table__
        try:
            with self.engine.begin() as conn:
                for user in users:
                    self._upsert_row(conn, table, user_to_row(user))
        except SQLAlchemyError as e:
            logger.error("upsert users failed: %s", e)
            raise StoreError("Could not save users to the remote store") from e
        return list(users)

    def upsert_user(self, user: User) -> Union[User, _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        return self._write_users([user])[0]

    def upsert_users(self, users: Sequence[User]) -> Union[list[User], _Absent]:
        if self.engine is None:
            return STORE_ABSENT
        return self._write_users(users)
