"""
进程内工作集 + 当前设备会话。

所有写操作都走“先落库、成功后再改内存”：
- StoreError        -> 503 SYNC_FAILED，内存不变
- StaleWriteError   -> 409 CONFLICT，从远端刷新这把工具后让调用方重试
- 远端未配置        -> 只改内存（本地模式）
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from toolcustody.config import Settings
from toolcustody.error import abort
from toolcustody.local_state import REMEMBERED_USER_KEY, LocalState
from toolcustody.schemas import Tool, ToolLog, User
from toolcustody.store import EDITABLE_COLUMNS, STORE_ABSENT, RemoteStore, StaleWriteError, StoreError

logger = logging.getLogger(__name__)


@dataclass
class DeviceSession:
    user: Optional[User] = None
    remembered: bool = False


class Workspace:
    def __init__(self, settings: Settings, store: RemoteStore, local: LocalState):
        self.settings = settings
        self.store = store
        self.local = local
        self.tools: dict[str, Tool] = {}
        self.users: dict[str, User] = {}
        self.session = DeviceSession()
        # 读-改-写 串行化
        self.lock = threading.RLock()
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    # ---- 同步指示 ----

    @property
    def syncing(self) -> bool:
        return self._in_flight > 0

    @contextmanager
    def _sync(self):
        with self._in_flight_lock:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight -= 1

    # ---- 读 ----

    def load(self, tools: Optional[Iterable[Tool]] = None, users: Optional[Iterable[User]] = None) -> None:
        if tools is not None:
            self.tools = {t.id: t for t in tools}
        if users is not None:
            self.users = {u.id: u for u in users}

    def get_tool(self, tool_id: str) -> Tool:
        tool = self.tools.get(tool_id)
        if not tool:
            abort(404, "NOT_FOUND", "Tool not found")
        return tool

    def get_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            abort(404, "NOT_FOUND", "User not found")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        key = (email or "").strip().lower()
        if not key:
            return None
        for user in self.users.values():
            if user.email.strip().lower() == key:
                return user
        return None

    # ---- 写（先落库，再改内存）----

    def save_tool(self, tool: Tool, new_logs: Sequence[ToolLog] = ()) -> Tool:
        try:
            with self._sync():
                saved = self.store.upsert_tool(tool, new_logs)
        except StoreError:
            abort(503, "SYNC_FAILED", "Could not save the tool, please try again")
        if saved is STORE_ABSENT:
            saved = tool
        self.tools[saved.id] = saved
        return saved

    def save_tools(self, tools: Sequence[Tool], *, with_logs: bool = False) -> list[Tool]:
        try:
            with self._sync():
                saved = self.store.upsert_tools(tools, with_logs=with_logs)
        except StoreError:
            abort(503, "SYNC_FAILED", "Could not save the tools, please try again")
        if saved is STORE_ABSENT:
            saved = list(tools)
        for tool in saved:
            self.tools[tool.id] = tool
        return saved

    def save_custody(self, before: Tool, after: Tool, new_logs: Sequence[ToolLog]) -> Tool:
        if not self.settings.custody_cas:
            return self.save_tool(after, new_logs)
        return self._save_versioned(
            before, lambda: self.store.write_custody(after, before.version, new_logs), after
        )

    def save_edit(self, before: Tool, after: Tool) -> Tool:
        if not self.settings.custody_cas:
            return self.save_tool(after)
        # 只写改动的列，不碰领用列
        changed = [c for c in EDITABLE_COLUMNS if getattr(before, c) != getattr(after, c)]
        return self._save_versioned(
            before, lambda: self.store.write_edit(after, before.version, changed), after
        )

    def _save_versioned(self, before: Tool, write: Callable[[], object], after: Tool) -> Tool:
        try:
            with self._sync():
                saved = write()
        except StaleWriteError:
            self._refresh_tool(before.id)
            abort(409, "CONFLICT", "This tool was just changed by someone else, please try again")
        except StoreError:
            abort(503, "SYNC_FAILED", "Could not save the tool, please try again")
        if saved is STORE_ABSENT:
            saved = after
        self.tools[saved.id] = saved
        return saved

    def _refresh_tool(self, tool_id: str) -> None:
        fresh = self.store.fetch_tool(tool_id)
        if isinstance(fresh, Tool):
            self.tools[tool_id] = fresh
        elif fresh is None:
            logger.warning("tool %s vanished from the remote store", tool_id)

    def save_user(self, user: User) -> User:
        try:
            with self._sync():
                saved = self.store.upsert_user(user)
        except StoreError:
            abort(503, "SYNC_FAILED", "Could not save the account, please try again")
        if saved is STORE_ABSENT:
            saved = user
        self.users[saved.id] = saved
        # 修改的是当前登录用户时同步会话
        if self.session.user is not None and self.session.user.id == saved.id:
            self.session.user = saved
            if self.session.remembered:
                self.local.set(REMEMBERED_USER_KEY, saved.model_dump(mode="json"))
        return saved
