import os
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]

# Isolate all tests to a throwaway instance + SQLite database
TEST_INSTANCE_DIR = ROOT_DIR / ".pytest-instance"
TEST_INSTANCE_DIR.mkdir(parents=True, exist_ok=True)
TEST_DB_PATH = TEST_INSTANCE_DIR / "test.sqlite"
os.environ["FLASK_ENV"] = "testing"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["INSTANCE_DIR"] = str(TEST_INSTANCE_DIR)
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH.as_posix()}"
os.environ["BACKUP_DIR"] = str(TEST_INSTANCE_DIR / "backups")
os.environ["ENABLE_TALISMAN"] = "0"
os.environ["DISABLE_BACKGROUND_JOBS"] = "1"
os.environ.pop("CATALOG_SOURCE", None)

import pytest  # noqa: E402
from flask import g  # noqa: E402
from flask.testing import FlaskClient  # noqa: E402

import extensions as ext  # noqa: E402

# Disable runtime rate limiting during tests
ext.limiter = None

import app as dl_app  # noqa: E402  pylint:disable=wrong-import-position
from extensions import cache, db  # noqa: E402
from models import User  # noqa: E402
from services.auth_service import generate_tokens  # noqa: E402

create_app = dl_app.create_app


class _PerRequestUserClient(FlaskClient):
    """Requests share the test's app context, so the cached login user must be dropped."""

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture(scope="session")
def app():
    flask_app = create_app()
    flask_app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        SERVER_NAME="localhost",
    )
    flask_app.test_client_class = _PerRequestUserClient
    with flask_app.app_context():
        db.session.configure(expire_on_commit=False)
    return flask_app


@pytest.fixture
def db_session(app):
    with app.app_context():
        db.session.remove()
        db.engine.dispose()
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()
        for suffix in ("-wal", "-shm"):
            sidecar = TEST_DB_PATH.with_name(TEST_DB_PATH.name + suffix)
            if sidecar.exists():
                sidecar.unlink()
        db.create_all()
        cache.clear()
        yield db
        db.session.remove()
        db.engine.dispose()
        db.drop_all()


@pytest.fixture
def client(app, db_session):  # noqa: ARG001 - keeps DB initialised for request tests
    return app.test_client()


@pytest.fixture
def backup_dir(app, tmp_path, monkeypatch):
    path = tmp_path / "backups"
    path.mkdir()
    monkeypatch.setitem(app.config, "BACKUP_DIR", str(path))
    return path


@pytest.fixture
def create_user(db_session):
    def _create_user(
        *,
        email: str = "user@example.com",
        username: str = "user",
        password: str = "password123",
        is_admin: bool = False,
    ) -> tuple[User, str]:
        user = User(
            email=email.lower().strip(),
            username=username.strip(),
            is_admin=is_admin,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user, password

    return _create_user


@pytest.fixture
def auth_headers(db_session):
    def _auth_headers(user: User) -> dict:
        token = generate_tokens(user)["accessToken"]
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
