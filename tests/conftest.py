import pytest

from app.saudemax import auth as auth_module
from app.saudemax import create_app
from app.saudemax.accounts import create_user
from app.saudemax.db import session_scope
from app.saudemax.models import Base
from scripts.init_db import seed_roles

CSRF_TOKEN = "test-csrf-token"
API_KEY = "test-automation-key"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_BASE_URL", "http://testserver")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("AUTOMATION_API_KEY", API_KEY)
    monkeypatch.setenv("MIN_WITHDRAWAL_AMOUNT", "50")
    monkeypatch.setenv("DEFAULT_COMMISSION_RATE", "10")
    for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "NOTIFY_WEBHOOK_URL"):
        monkeypatch.delenv(key, raising=False)

    app = create_app()
    app.config["TESTING"] = True
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        seed_roles(s)
        create_user(s, email="admin@example.com", password="admin-pass-1", full_name="Admin", role_key="admin")
    auth_module._login_attempts.clear()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(app):
    """A plain session for service-level tests; callers commit when they need HTTP to see rows."""
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.rollback()
    s.close()


@pytest.fixture()
def make_user(app):
    def _make(email: str, role_key: str = "member", password: str = "password-123", full_name: str | None = None) -> int:
        with session_scope(app) as s:
            return create_user(s, email=email, password=password, full_name=full_name, role_key=role_key).id

    return _make


@pytest.fixture()
def login(client):
    def _login(email: str = "admin@example.com", password: str = "admin-pass-1"):
        return client.post("/auth/login", data={"email": email, "password": password})

    return _login


@pytest.fixture()
def post(client):
    """POST through the CSRF guard with a known session token."""

    def _post(url: str, data: dict | None = None, **kwargs):
        with client.session_transaction() as sess:
            sess["csrf_token"] = CSRF_TOKEN
        return client.post(url, data={**(data or {}), "csrf_token": CSRF_TOKEN}, **kwargs)

    return _post
