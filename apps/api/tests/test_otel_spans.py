from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.core.auth import AuthUser, get_current_user
from salesops.core.database import Base, get_db
from salesops.main import app
from salesops.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("salesops-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


HEADERS = {"x-company-id": "C1"}


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/quotations",
        json={"customer_id": str(uuid.uuid4())},
        headers={**HEADERS, "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_verification_span_contains_payment_id_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    quotation = client.post(
        "/quotations",
        json={
            "customer_id": str(uuid.uuid4()),
            "lines": [{"description": "Mounting kit", "quantity": "1", "unit_price": "1200"}],
        },
        headers=HEADERS,
    )
    quotation_id = quotation.json()["id"]
    for action in ("send", "accept"):
        assert client.post(f"/quotations/{quotation_id}/{action}", headers=HEADERS).status_code == 200
    payment = client.post(
        "/payments",
        json={"quotation_id": quotation_id, "payment_stage": "balance", "payment_method": "test_simulation"},
        headers=HEADERS,
    ).json()

    verified = client.post(
        f"/payments/{payment['id']}/verify",
        headers={**HEADERS, "X-Correlation-Id": "otel-verify-1"},
    )
    assert verified.status_code == 200

    verify_spans = [span for span in span_exporter.get_finished_spans() if span.name == "payments.verify"]
    assert verify_spans
    assert any(
        span.attributes.get("payment_id") == payment["id"]
        and span.attributes.get("correlation_id") == "otel-verify-1"
        for span in verify_spans
    )
