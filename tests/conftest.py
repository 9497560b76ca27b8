import pytest
from fastapi.testclient import TestClient
from sqlmodel import create_engine

from toolcustody.config import Settings
from toolcustody.main import create_app
from toolcustody.store import RemoteStore

PASSWORD = "password123"
KARIN = "karin@nedabuilda.com"  # ADMIN
GAVIN = "gavin@nedabuilda.com"  # USER, U2
BOB = "bob@nedabuilda.com"  # MANAGER
SARAH = "sarah@nedabuilda.com"  # USER, U4


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "secret_key": "test_secret",
        "database_url": None,
        "local_state_path": str(tmp_path / "state.json"),
        "gemini_api_key": None,
        "google_maps_api_key": None,
    }
    values.update(overrides)
    # 不读 .env，保证测试环境一致
    return Settings(_env_file=None, **values)


def make_engine(url: str):
    return create_engine(url, connect_args={"check_same_thread": False})


def login(client, email, password=PASSWORD, **form):
    return client.post("/auth/login", data={"username": email, "password": password, **form})


def auth_headers(client, email, password=PASSWORD):
    r = login(client, email, password)
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'remote.db'}"


@pytest.fixture
def store(db_url):
    s = RemoteStore(make_engine(db_url))
    yield s
    s.dispose()


@pytest.fixture
def client(settings, store):
    app = create_app(settings, store=store)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def local_client(settings):
    app = create_app(settings, store=RemoteStore(None))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def workspace(client):
    return client.app.state.workspace
