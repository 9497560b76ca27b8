import logging

import pytest

from conftest import make_settings
from toolcustody.local_state import REMEMBERED_USER_KEY, LocalState
from toolcustody.schemas import Tool, ToolStatus, User, UserRole
from toolcustody.seed import default_users
from toolcustody.services.bootstrap import bootstrap
from toolcustody.store import STORE_ABSENT, RemoteStore, StoreError
from toolcustody.workspace import Workspace


def _workspace(tmp_path, store, local=None, **overrides) -> Workspace:
    return Workspace(make_settings(tmp_path, **overrides), store, local or LocalState(None))


class SpyStore(RemoteStore):
    """记录回写调用，不连库。"""

    def __init__(self):
        super().__init__(None)
        self.tool_writes = []
        self.user_writes = []

    def upsert_tools(self, tools, *, with_logs=False):
        self.tool_writes.append(list(tools))
        return STORE_ABSENT

    def upsert_users(self, users):
        self.user_writes.append(list(users))
        return STORE_ABSENT


def test_absent_store_falls_back_to_defaults(tmp_path):
    store = SpyStore()
    ws = _workspace(tmp_path, store)
    bootstrap(ws)

    assert sorted(ws.tools) == ["T1", "T2", "T3", "T4"]
    assert sorted(ws.users) == ["U1", "U2", "U3", "U4"]
    assert ws.tools["T2"].current_holder_id == "U2"
    # 回写尝试过一次，远端缺席不算失败
    assert len(store.tool_writes) == 1
    assert len(store.user_writes) == 1


def test_empty_store_is_seeded(tmp_path, store):
    ws = _workspace(tmp_path, store)
    bootstrap(ws)

    remote = {t.id: t for t in store.fetch_all_tools()}
    assert sorted(remote) == ["T1", "T2", "T3", "T4"]
    assert remote["T2"].status == ToolStatus.BOOKED_OUT
    assert remote["T2"].current_site == "Main St Apartments"
    # 内存里的版本号与远端一致，首次领用不会误判冲突
    assert {t.id: t.version for t in ws.tools.values()} == {t.id: t.version for t in remote.values()}
    assert sorted(u.id for u in store.fetch_all_users()) == ["U1", "U2", "U3", "U4"]


def test_existing_remote_data_is_not_overwritten(tmp_path, store):
    store.create_schema()
    store.upsert_tools([Tool(id="X1", name="Site Crane Remote")])
    store.upsert_users([User(id="U9", name="Pat", role=UserRole.ADMIN, email="pat@nedabuilda.com", password="h")])

    ws = _workspace(tmp_path, store)
    bootstrap(ws)

    assert list(ws.tools) == ["X1"]
    assert list(ws.users) == ["U9"]
    assert [t.id for t in store.fetch_all_tools()] == ["X1"]


def test_users_seeded_even_when_tools_exist(tmp_path, store):
    store.create_schema()
    store.upsert_tools([Tool(id="X1", name="Site Crane Remote")])

    ws = _workspace(tmp_path, store)
    bootstrap(ws)

    assert list(ws.tools) == ["X1"]
    assert sorted(u.id for u in store.fetch_all_users()) == ["U1", "U2", "U3", "U4"]


def test_coupled_user_seed_skips_write_when_tools_exist(tmp_path, store):
    store.create_schema()
    store.upsert_tools([Tool(id="X1", name="Site Crane Remote")])

    ws = _workspace(tmp_path, store, couple_user_seed_to_tools=True)
    bootstrap(ws)

    # 默认用户只在内存里可用
    assert sorted(ws.users) == ["U1", "U2", "U3", "U4"]
    assert store.fetch_all_users() == []


def test_empty_store_kept_empty_when_seeding_disabled(tmp_path, store):
    ws = _workspace(tmp_path, store, seed_when_empty=False)
    bootstrap(ws)

    assert ws.tools == {}
    assert ws.users == {}


def test_seed_write_failure_keeps_defaults(tmp_path, monkeypatch, caplog):
    store = SpyStore()

    def boom(*args, **kwargs):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "upsert_tools", boom)
    ws = _workspace(tmp_path, store)

    with caplog.at_level(logging.ERROR):
        bootstrap(ws)

    assert sorted(ws.tools) == ["T1", "T2", "T3", "T4"]
    assert sorted(ws.users) == ["U1", "U2", "U3", "U4"]
    assert "seeding tools failed" in caplog.text


def test_unexpected_error_does_not_abort_startup(tmp_path, monkeypatch):
    store = SpyStore()

    def explode():
        raise RuntimeError("driver crashed")

    monkeypatch.setattr(store, "fetch_all_users", explode)
    ws = _workspace(tmp_path, store)
    bootstrap(ws)

    # 工具已装好，用户阶段失败
    assert sorted(ws.tools) == ["T1", "T2", "T3", "T4"]
    assert ws.users == {}


def test_restore_prefers_fresh_user_record(tmp_path):
    local = LocalState(None)
    stale = default_users()[1]
    local.set(REMEMBERED_USER_KEY, stale.model_dump(mode="json"))

    store = SpyStore()
    ws = _workspace(tmp_path, store, local=local)
    bootstrap(ws)

    assert ws.session.remembered is True
    assert ws.session.user.id == "U2"
    assert ws.session.user == ws.users["U2"]


def test_restore_falls_back_to_stale_record(tmp_path, store):
    store.create_schema()
    store.upsert_users([User(id="U1", name="Karin Admin", role=UserRole.ADMIN,
                             email="karin@nedabuilda.com", password="h")])
    local = LocalState(None)
    ghost = User(id="U8", name="Temp Hire", email="temp@nedabuilda.com", password="h")
    local.set(REMEMBERED_USER_KEY, ghost.model_dump(mode="json"))

    ws = _workspace(tmp_path, store, local=local)
    bootstrap(ws)

    assert ws.session.user == ghost
    assert "U8" not in ws.users


def test_restore_signs_out_disabled_user(tmp_path, store):
    store.create_schema()
    disabled = User(id="U2", name="Gavin Builder", email="gavin@nedabuilda.com", password="h", is_enabled=False)
    store.upsert_users([disabled])
    local = LocalState(None)
    local.set(REMEMBERED_USER_KEY, disabled.model_copy(update={"is_enabled": True}).model_dump(mode="json"))

    ws = _workspace(tmp_path, store, local=local)
    bootstrap(ws)

    assert ws.session.user is None
    assert local.get(REMEMBERED_USER_KEY) is None


@pytest.mark.parametrize("raw", ["not a user", {"id": "U2"}])
def test_unreadable_remembered_session_is_discarded(tmp_path, raw):
    local = LocalState(None)
    local.set(REMEMBERED_USER_KEY, raw)

    ws = _workspace(tmp_path, SpyStore(), local=local)
    bootstrap(ws)

    assert ws.session.user is None
    assert local.get(REMEMBERED_USER_KEY) is None
