from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.core.auth import AuthUser, get_current_user
from salesops.core.database import Base, get_db
from salesops.logging import JsonLogFormatter, TextLogFormatter
from salesops.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> AuthUser:
        return AuthUser(sub="user-1", roles=request.headers.get("x-test-roles", "sales").split(","))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "salesops.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/health"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rejected_operation_logged_with_error_kind(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(
        f"/quotations/{uuid.uuid4()}",
        headers={"X-Correlation-Id": "abc-404", "x-company-id": "C1"},
    )
    assert response.status_code == 404

    rejected = [record for record in caplog.records if record.name == "salesops.request" and record.getMessage() == "http.rejected"]
    assert rejected
    record = rejected[-1]
    assert record.levelno == logging.WARNING
    assert getattr(record, "kind", None) == "NotFound"
    assert getattr(record, "path", None) == "/quotations/{id}"
    assert getattr(record, "company_id", None) == "C1"
    assert getattr(record, "correlation_id", None) == "abc-404"


def test_domain_logs_carry_quotation_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post(
        "/quotations",
        json={"customer_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "abc-create", "x-company-id": "C1"},
    )
    assert created.status_code == 201

    domain_records = [record for record in caplog.records if getattr(record, "quotation_id", None) == created.json()["id"]]
    assert domain_records
    assert any(getattr(record, "correlation_id", None) == "abc-create" for record in domain_records)


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "salesops.payments.verification",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "payment.verified",
            "payment_id": "p-1",
            "to_status": "deposit_paid",
            "secret": "do-not-log",
            "correlation_id": "corr-fmt",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "payment.verified"
    assert payload["correlation_id"] == "corr-fmt"
    assert payload["fields"] == {"payment_id": "p-1", "to_status": "deposit_paid"}


def test_text_formatter_renders_sorted_fields() -> None:
    record = logging.makeLogRecord(
        {
            "name": "salesops.request",
            "levelname": "WARNING",
            "msg": "http.rejected",
            "kind": "NotFound",
            "company_id": "C1",
            "correlation_id": "corr-text",
        }
    )

    line = TextLogFormatter().format(record)

    assert line.endswith("correlation_id=corr-text company_id=C1 kind=NotFound")
    assert "http.rejected" in line
