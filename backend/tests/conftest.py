from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta
from typing import Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from signflow.api.deps import get_db
from signflow.db import session as db_session_module
from signflow.main import app
from signflow.models.signing import SigningOrder, SigningRequest
from signflow.schemas.signing import DocumentReference, SignerCreate, SigningRequestCreate
from signflow.services.workflow import SigningWorkflowService
from signflow.utils.security import create_access_token

BASE_TIME = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Manually advanced replacement for ``datetime.utcnow``."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        connect_args = {"options": f"-csearch_path={schema_name},public"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    def override_dependency():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_dependency

    yield engine

    app.dependency_overrides.pop(get_db, None)
    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def client(db_engine) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def workflow(db_session: Session, clock: FakeClock) -> SigningWorkflowService:
    return SigningWorkflowService(db_session, clock=clock)


def build_payload(
    signer_count: int = 2,
    *,
    expires_at: datetime | None = None,
    signing_order: SigningOrder = SigningOrder.PARALLEL,
    ranks: list[int] | None = None,
    **overrides,
) -> SigningRequestCreate:
    signers = [
        SignerCreate(
            name=f"Signer {index}",
            email=f"signer{index}@example.com",
            signing_order=ranks[index - 1] if ranks else None,
        )
        for index in range(1, signer_count + 1)
    ]
    data = {
        "document": DocumentReference(name="contract.pdf", url="https://files.example.com/contract.pdf", size=2048),
        "title": "Service agreement",
        "message": "Please review and sign.",
        "expires_at": expires_at or BASE_TIME + timedelta(days=7),
        "signing_order": signing_order,
        "signers": signers,
    }
    data.update(overrides)
    return SigningRequestCreate(**data)


@pytest.fixture()
def sent_request(workflow: SigningWorkflowService) -> Callable[..., SigningRequest]:
    """Create a request and send it. Keyword arguments go to ``build_payload``."""

    def factory(signer_count: int = 2, owner_id: str = "owner-1", **kwargs) -> SigningRequest:
        return workflow.create_signing_request(owner_id, build_payload(signer_count, send=True, **kwargs))

    return factory


def owner_headers(owner_id: str = "owner-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(owner_id)}"}
