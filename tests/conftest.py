from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from bankrec.db.deps import get_db
from bankrec.db.init_db import init_db
from bankrec.db.session import create_db_engine
from bankrec.main import create_app


@pytest.fixture()
def engine(tmp_path):
    # file-backed so candidate lookups can read on their own connections
    engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'bankrec.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False)


@pytest.fixture()
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory) -> TestClient:
    # API tests seed through short-lived sessions so no write lock is held during a request.
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
