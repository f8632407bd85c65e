import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("SENTRY_DSN", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pagelink import database, linking_intent, models, oauth2, utils
from pagelink.main import app

SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(engine, "connect")
def _sqlite_on_connect(dbapi_connection, _connection_record):
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(engine, "begin")
def _sqlite_on_begin(connection):
    connection.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class InMemoryNonceStore:
    def __init__(self):
        self.claimed = set()

    def claim(self, jti, ttl_seconds):
        if jti in self.claimed:
            return False
        self.claimed.add(jti)
        return True


@pytest.fixture(autouse=True)
def nonce_store():
    store = InMemoryNonceStore()
    previous = linking_intent._nonce_store
    linking_intent.set_nonce_store(store)
    yield store
    linking_intent.set_nonce_store(previous)


@pytest.fixture
def session():
    database.Base.metadata.drop_all(bind=engine)
    database.Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session):
    def override_get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[database.get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_user(session, email, password):
    user = models.User(email=email, password=utils.hash(password), name=email.split("@")[0])
    session.add(user)
    session.commit()
    session.refresh(user)
    return {"id": user.id, "email": email, "password": password}


@pytest.fixture
def test_user(session):
    return _create_user(session, "hello123@gmail.com", "password123")


@pytest.fixture
def test_user2(session):
    return _create_user(session, "hello321@gmail.com", "password123")


@pytest.fixture
def token(test_user):
    return oauth2.create_access_token({"user_id": test_user["id"]})


@pytest.fixture
def authorized_client(client, token):
    client.headers = {**client.headers, "Authorization": f"Bearer {token}"}
    return client
