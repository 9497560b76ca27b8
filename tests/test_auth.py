import re

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import GAVIN, KARIN, SARAH, auth_headers, login, make_engine, make_settings
from toolcustody.local_state import REMEMBERED_USER_KEY, LocalState
from toolcustody.main import create_app
from toolcustody.schemas import User, UserRole
from toolcustody.security import hash_password
from toolcustody.services import accounts
from toolcustody.store import RemoteStore
from toolcustody.workspace import Workspace


def test_login(client):
    r = login(client, GAVIN)
    assert r.status_code == 200
    data = r.json()
    assert "access_token" in data
    assert data["token_type"] == "bearer"
    assert data["user"]["id"] == "U2"
    assert data["must_change_password"] is False
    assert "password" not in data["user"]


def test_login_email_is_case_insensitive(client):
    r = login(client, "  GAVIN@NedaBuilda.com")
    assert r.status_code == 200
    assert r.json()["user"]["id"] == "U2"


def test_login_invalid_credentials(client):
    for email, password in ((GAVIN, "wrong"), ("nope@nedabuilda.com", "password123")):
        r = login(client, email, password)
        assert r.status_code == 401
        assert r.json() == {
            "detail": {"code": "INVALID_CREDENTIALS", "message": "Email or password is incorrect"}
        }


def test_disabled_account_cannot_sign_in(client):
    karin = auth_headers(client, KARIN)
    sarah = auth_headers(client, SARAH)
    r = client.patch("/users/U4", json={"is_enabled": False}, headers=karin)
    assert r.status_code == 200

    r = login(client, SARAH)
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "ACCOUNT_DISABLED"
    # 已签发的 token 也失效
    assert client.get("/tools", headers=sarah).status_code == 403


def test_requests_without_token(client):
    r = client.get("/tools")
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "NOT_AUTHENTICATED"
    assert r.headers["www-authenticate"] == "Bearer"

    r = client.get("/tools", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "INVALID_TOKEN"


def test_passwords_are_hashed_in_secure_mode(workspace, store):
    stored = workspace.users["U2"].password
    assert stored.startswith("$pbkdf2-sha256$")
    assert [u.password for u in store.fetch_all_users() if u.id == "U2"] == [stored]


def test_legacy_mode_keeps_plaintext(tmp_path):
    app = create_app(make_settings(tmp_path, password_mode="legacy"), store=RemoteStore(None))
    with TestClient(app) as c:
        assert c.app.state.workspace.users["U2"].password == "password123"
        assert login(c, GAVIN).status_code == 200


def test_legacy_mode_checks_stored_hashes_as_hashes(tmp_path):
    ws = Workspace(make_settings(tmp_path, password_mode="legacy"), RemoteStore(None), LocalState(None))
    hashed = hash_password("password123")
    ws.load(users=[User(id="U2", name="Gavin Builder", email=GAVIN, password=hashed)])

    assert accounts.authenticate(ws, GAVIN, "password123").id == "U2"
    # 知道哈希串本身不能当密码用
    with pytest.raises(HTTPException) as e:
        accounts.authenticate(ws, GAVIN, hashed)
    assert e.value.status_code == 401


def test_plaintext_password_upgraded_on_sign_in(tmp_path, db_url):
    store = RemoteStore(make_engine(db_url))
    store.create_schema()
    plain = User(id="U7", name="Old Timer", email="old@nedabuilda.com", password="plain-pass")
    store.upsert_user(plain)

    ws = Workspace(make_settings(tmp_path), store, LocalState(None))
    ws.load(users=[plain])
    result = accounts.sign_in(ws, "old@nedabuilda.com", "plain-pass")

    assert result.user.password.startswith("$pbkdf2-sha256$")
    [remote] = store.fetch_all_users()
    assert remote.password == result.user.password
    # 升级后仍可登录
    assert accounts.authenticate(ws, "old@nedabuilda.com", "plain-pass").id == "U7"


def test_forgot_password_unknown_email(client, workspace):
    before = dict(workspace.users)
    r = client.post("/auth/forgot-password", json={"email": "ghost@nedabuilda.com"})
    assert r.status_code == 404
    assert r.json() == {"detail": {"code": "EMAIL_NOT_RECOGNIZED", "message": "Email not recognized"}}
    assert workspace.users == before


def test_forgot_password_then_forced_change(client, store):
    r = client.post("/auth/forgot-password", json={"email": "Gavin@NedaBuilda.com"})
    assert r.status_code == 200
    temp = r.json()["temp_password"]
    assert re.fullmatch(r"TEMP-\d{4}", temp)
    assert r.json()["delivered_in_app"] is True
    assert [u.must_change_password for u in store.fetch_all_users() if u.id == "U2"] == [True]

    assert login(client, GAVIN).status_code == 401

    r = login(client, GAVIN, temp)
    assert r.status_code == 200
    assert r.json()["must_change_password"] is True
    h = {"Authorization": f"Bearer {r.json()['access_token']}"}

    r = client.get("/tools", headers=h)
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "PASSWORD_CHANGE_REQUIRED"
    assert client.get("/auth/me", headers=h).status_code == 200

    r = client.post("/auth/change-password", json={"new_password": "abc", "confirm_password": "abc"}, headers=h)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "PASSWORD_TOO_SHORT"

    r = client.post(
        "/auth/change-password", json={"new_password": "hammer42", "confirm_password": "hammer43"}, headers=h
    )
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "PASSWORD_MISMATCH"

    r = client.post(
        "/auth/change-password", json={"new_password": "hammer42", "confirm_password": "hammer42"}, headers=h
    )
    assert r.status_code == 200
    assert r.json()["must_change_password"] is False

    assert client.get("/tools", headers=h).status_code == 200
    assert login(client, GAVIN, temp).status_code == 401
    assert login(client, GAVIN, "hammer42").status_code == 200


def test_forgot_password_out_of_band(tmp_path):
    app = create_app(make_settings(tmp_path, show_temp_password_in_app=False), store=RemoteStore(None))
    with TestClient(app) as c:
        r = c.post("/auth/forgot-password", json={"email": GAVIN})
        assert r.status_code == 200
        assert r.json() == {"ok": True, "temp_password": None, "delivered_in_app": False}
        assert c.app.state.workspace.users["U2"].must_change_password is True


def test_remembered_session_survives_restart(tmp_path, db_url, settings):
    app = create_app(settings, store=RemoteStore(make_engine(db_url)))
    with TestClient(app) as c:
        assert c.get("/auth/session").status_code == 404
        r = login(c, GAVIN, remember="true")
        assert r.status_code == 200
        device = {"X-Device-Token": r.json()["device_token"]}
        assert LocalState(settings.local_state_path).get(REMEMBERED_USER_KEY)["id"] == "U2"

    # 重启前服务端把角色改了
    store = RemoteStore(make_engine(db_url))
    [gavin] = [u for u in store.fetch_all_users() if u.id == "U2"]
    store.upsert_user(gavin.model_copy(update={"role": UserRole.MANAGER}))

    app = create_app(settings, store=store)
    with TestClient(app) as c:
        r = c.get("/auth/session", headers=device)
        assert r.status_code == 200
        assert r.json()["user"]["role"] == "MANAGER"
        h = {"Authorization": f"Bearer {r.json()['access_token']}"}
        assert c.get("/reports/bookings", headers=h).status_code == 200

        assert c.post("/auth/logout", headers=h).status_code == 200
        assert c.get("/auth/session", headers=device).status_code == 404
        assert LocalState(settings.local_state_path).get(REMEMBERED_USER_KEY) is None


def test_login_without_remember_does_not_persist(client, settings):
    login(client, GAVIN)
    assert LocalState(settings.local_state_path).get(REMEMBERED_USER_KEY) is None


def test_remembered_session_needs_device_token(client):
    r = login(client, KARIN, remember="true")
    device_token = r.json()["device_token"]
    assert device_token

    r = client.get("/auth/session")
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "INVALID_DEVICE_TOKEN"
    assert client.get("/auth/session", headers={"X-Device-Token": "guessed"}).status_code == 401

    r = client.get("/auth/session", headers={"X-Device-Token": device_token})
    assert r.status_code == 200
    assert r.json()["user"]["id"] == "U1"


def test_device_token_only_issued_when_remembered(client):
    assert login(client, GAVIN).json()["device_token"] is None


def test_logout_requires_the_signed_in_user(client, settings):
    r = login(client, KARIN, remember="true")
    device = {"X-Device-Token": r.json()["device_token"]}

    r = client.post("/auth/logout")
    assert r.status_code == 401
    # 别人的 token 也登不出这台设备的会话
    ws = client.app.state.workspace
    gavin = {"Authorization": f"Bearer {accounts.issue_token(ws, ws.users['U2'])}"}
    assert client.post("/auth/logout", headers=gavin).status_code == 200

    assert LocalState(settings.local_state_path).get(REMEMBERED_USER_KEY)["id"] == "U1"
    assert client.get("/auth/session", headers=device).status_code == 200


def test_biometric_prompt(client):
    r = login(client, GAVIN, biometric_available="true")
    assert r.json()["biometric_prompt"] is True
    assert r.json()["biometric_prompt_delay"] == 1.5

    h = {"Authorization": f"Bearer {r.json()['access_token']}"}
    assert client.post("/auth/biometric/enroll", headers=h).status_code == 200

    r = login(client, GAVIN, biometric_available="true")
    assert r.json()["biometric_prompt"] is False
    assert r.json()["biometric_prompt_delay"] is None

    r = login(client, SARAH)
    assert r.json()["biometric_prompt"] is False


def test_no_biometric_prompt_while_password_change_pending(client):
    temp = client.post("/auth/forgot-password", json={"email": SARAH}).json()["temp_password"]
    r = login(client, SARAH, temp, biometric_available="true")
    assert r.json()["must_change_password"] is True
    assert r.json()["biometric_prompt"] is False
