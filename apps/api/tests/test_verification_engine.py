from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops import audit, events
from salesops.business.payments.models import Payment
from salesops.business.payments.repository import PaymentRepository
from salesops.business.payments.schemas import DepositSlipAttach, PaymentRead, PaymentSubmit
from salesops.business.payments.service import PaymentsService
from salesops.business.payments.verification import VerificationEngine
from salesops.business.quotations.models import Quotation
from salesops.business.quotations.schemas import QuotationCreate, QuotationLineCreate
from salesops.business.quotations.service import QuotationsService
from salesops.core.database import Base
from salesops.otel import setup_inmemory_otel
from salesops.platform.errors import (
    ConcurrentModification,
    InvalidTransition,
    MissingEvidence,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from salesops.platform.security.context import SYSTEM_ACTOR_ID, ActorContext


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


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("salesops-api")
    exporter.clear()
    return exporter


def _sales() -> ActorContext:
    return ActorContext(user_id="sales-1", company_id="C1", correlation_id="corr-verify", can_edit_quotation=True)


def _finance() -> ActorContext:
    return ActorContext(user_id="finance-1", company_id="C1", correlation_id="corr-verify", can_verify_payments=True)


def _override() -> ActorContext:
    return ActorContext(
        user_id="controller-1",
        company_id="C1",
        correlation_id="corr-verify",
        can_verify_payments=True,
        can_override_lock=True,
    )


def _accepted_quotation(session: Session, total: Decimal = Decimal("10000")) -> uuid.UUID:
    quotations = QuotationsService()
    created = quotations.create_quotation(
        session,
        _sales(),
        QuotationCreate(
            customer_id=uuid.uuid4(),
            lines=[QuotationLineCreate(description="Package", quantity=Decimal("1"), unit_price=total)],
        ),
    )
    quotations.mark_sent(session, _sales(), created.id)
    quotations.accept(session, _sales(), created.id)
    return created.id


def _submit(session: Session, quotation_id: uuid.UUID, **values: object) -> PaymentRead:
    payload = {"quotation_id": quotation_id, "payment_method": "test_simulation", **values}
    return PaymentsService().submit(session, _sales(), PaymentSubmit(**payload))


def _submit_check(session: Session, quotation_id: uuid.UUID, *, slip: bool = True, **values: object) -> PaymentRead:
    return _submit(
        session,
        quotation_id,
        payment_method="check",
        bank_name="BPI",
        check_number=f"CHK-{uuid.uuid4().hex[:6]}",
        payment_date=date(2026, 10, 2),
        deposit_slip_url="https://files.example.com/slip.png" if slip else None,
        **values,
    )


def _quotation(session: Session, quotation_id: uuid.UUID) -> Quotation:
    quotation = session.get(Quotation, quotation_id, populate_existing=True)
    assert quotation is not None
    return quotation


def _actions(session: Session, payment_id: uuid.UUID) -> list[str]:
    return [record.action for record in audit.list_records(session, entity_type="payment", entity_id=payment_id)]


def test_downpayment_then_balance_reaches_fully_paid(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)

    deposit = _submit(db_session, quotation_id, payment_stage="downpayment", deposit_percentage=Decimal("50"))
    assert deposit.amount == Decimal("5000.00")
    assert deposit.verification_status == "pending"

    verified = engine.verify(db_session, _finance(), deposit.id, "cleared")
    assert verified.verification_status == "verified"
    assert verified.is_locked is True
    assert verified.payment_status == "paid"
    assert verified.verification_type == "manual"
    assert verified.verified_by == "finance-1"
    assert verified.verified_at is not None
    assert verified.verification_notes == "cleared"

    read = QuotationsService().get_quotation(db_session, _sales(), quotation_id)
    assert read.payment_status == "deposit_paid"
    assert read.display_status == "accepted, deposit_paid"
    assert read.balance.balance_remaining == Decimal("5000.00")

    remainder = _submit(db_session, quotation_id, payment_stage="balance")
    assert remainder.amount == Decimal("5000.00")
    engine.verify(db_session, _finance(), remainder.id)

    read = QuotationsService().get_quotation(db_session, _sales(), quotation_id)
    assert read.payment_status == "fully_paid"
    assert read.balance.balance_remaining == Decimal("0.00")


def test_verify_check_without_deposit_slip_is_missing_evidence(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit_check(db_session, quotation_id, slip=False, payment_stage="downpayment", deposit_percentage=Decimal("20"))

    with pytest.raises(MissingEvidence):
        engine.verify(db_session, _finance(), payment.id)

    row = db_session.get(Payment, payment.id, populate_existing=True)
    assert row is not None
    assert row.verification_status == "pending"
    assert row.is_locked is False
    assert _actions(db_session, payment.id) == ["payment_submitted"]

    PaymentsService().attach_deposit_slip(
        db_session, _sales(), payment.id, DepositSlipAttach(deposit_slip_url="https://files.example.com/slip-2.png")
    )
    assert engine.verify(db_session, _finance(), payment.id).verification_status == "verified"
    assert _quotation(db_session, quotation_id).payment_status == "deposit_paid"


def test_reopen_regresses_quotation_status(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(db_session, quotation_id, payment_stage="downpayment", deposit_percentage=Decimal("30"))
    engine.verify(db_session, _finance(), payment.id)
    assert _quotation(db_session, quotation_id).payment_status == "deposit_paid"

    reopened = engine.reopen(db_session, _override(), payment.id, "duplicate check number discovered")

    assert reopened.verification_status == "pending"
    assert reopened.is_locked is False
    assert reopened.verified_by is None
    assert reopened.verified_at is None
    assert reopened.reopened_by == "controller-1"
    assert reopened.reopen_reason == "duplicate check number discovered"
    assert _quotation(db_session, quotation_id).payment_status == "pending"

    record = audit.list_records(db_session, entity_type="payment", entity_id=payment.id)[-1]
    assert record.action == "payment_reopened"
    assert record.before is not None and record.before["verified_by"] == "finance-1"
    assert record.after is not None and record.after["quotation_payment_status"] == "pending"

    changes = events.events_of_type("quotation.payment_status_changed")
    assert [(item["from_status"], item["to_status"]) for item in changes] == [
        ("pending", "deposit_paid"),
        ("deposit_paid", "pending"),
    ]


def test_reopened_check_returns_quotation_to_finance_verification(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit_check(db_session, quotation_id, payment_stage="downpayment", deposit_percentage=Decimal("30"))
    assert _quotation(db_session, quotation_id).payment_status == "pending_finance_verification"

    engine.verify(db_session, _finance(), payment.id)
    engine.reopen(db_session, _override(), payment.id, "bounced")

    assert _quotation(db_session, quotation_id).payment_status == "pending_finance_verification"


def test_reopen_requires_override_capability_and_reason(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(db_session, quotation_id, payment_stage="balance")

    with pytest.raises(InvalidTransition):
        engine.reopen(db_session, _override(), payment.id, "not yet verified")

    engine.verify(db_session, _finance(), payment.id)

    with pytest.raises(PermissionDenied):
        engine.reopen(db_session, _finance(), payment.id, "no override")
    with pytest.raises(ValidationError):
        engine.reopen(db_session, _override(), payment.id, "   ")

    assert _actions(db_session, payment.id) == ["payment_submitted", "payment_verified"]


def test_locked_payment_cannot_be_verified_or_rejected_again(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(db_session, quotation_id, payment_stage="balance")
    engine.verify(db_session, _finance(), payment.id)

    with pytest.raises(InvalidTransition):
        engine.verify(db_session, _finance(), payment.id)
    with pytest.raises(InvalidTransition):
        engine.reject(db_session, _finance(), payment.id, "too late")

    assert _actions(db_session, payment.id) == ["payment_submitted", "payment_verified"]


def test_verify_and_reject_require_capability(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(db_session, quotation_id, payment_stage="balance")

    with pytest.raises(PermissionDenied):
        engine.verify(db_session, _sales(), payment.id)
    with pytest.raises(PermissionDenied):
        engine.reject(db_session, _sales(), payment.id, "nope")


def test_reject_requires_reason_and_keeps_payment_unlocked(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit_check(db_session, quotation_id, payment_stage="downpayment", deposit_percentage=Decimal("50"))

    with pytest.raises(ValidationError):
        engine.reject(db_session, _finance(), payment.id, "")
    assert _actions(db_session, payment.id) == ["payment_submitted"]

    rejected = engine.reject(db_session, _finance(), payment.id, "signature mismatch", "called the bank")

    assert rejected.verification_status == "rejected"
    assert rejected.payment_status == "failed"
    assert rejected.rejection_reason == "signature mismatch"
    assert rejected.is_locked is False
    assert _quotation(db_session, quotation_id).payment_status == "pending"

    with pytest.raises(InvalidTransition):
        engine.verify(db_session, _finance(), payment.id)
    with pytest.raises(InvalidTransition):
        engine.reject(db_session, _finance(), payment.id, "again")


def test_reject_keeps_finance_verification_while_another_check_is_pending(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    first = _submit_check(db_session, quotation_id, payment_stage="partial", amount=Decimal("1000"))
    _submit_check(db_session, quotation_id, payment_stage="partial", amount=Decimal("2000"))

    engine.reject(db_session, _finance(), first.id, "stale check")

    assert _quotation(db_session, quotation_id).payment_status == "pending_finance_verification"


def test_balance_verified_while_partial_pending_clamps_to_fully_paid(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    partial = _submit(db_session, quotation_id, payment_stage="partial", amount=Decimal("3000"))
    full = _submit(db_session, quotation_id, payment_stage="balance")
    assert full.amount == Decimal("10000.00")

    engine.verify(db_session, _finance(), full.id)
    assert _quotation(db_session, quotation_id).payment_status == "fully_paid"

    engine.verify(db_session, _finance(), partial.id)

    read = QuotationsService().get_quotation(db_session, _sales(), quotation_id)
    assert read.payment_status == "fully_paid"
    assert read.balance.amount_verified == Decimal("13000.00")
    assert read.balance.balance_remaining == Decimal("-3000.00")


def test_verification_order_does_not_change_outcome(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payments = [
        _submit(db_session, quotation_id, payment_stage="partial", amount=Decimal(amount))
        for amount in ("1000", "2500", "1500")
    ]

    remaining: list[Decimal] = []
    for payment in reversed(payments):
        engine.verify(db_session, _finance(), payment.id)
        remaining.append(QuotationsService().get_quotation(db_session, _sales(), quotation_id).balance.balance_remaining)

    assert remaining == [Decimal("8500.00"), Decimal("6000.00"), Decimal("5000.00")]
    assert _quotation(db_session, quotation_id).payment_status == "deposit_paid"


def test_stale_payment_write_raises_concurrent_modification(db_session: Session) -> None:
    repository = PaymentRepository()
    quotation_id = _accepted_quotation(db_session)
    submitted = _submit(db_session, quotation_id, payment_stage="balance")
    stale = repository.get(db_session, _finance(), submitted.id)
    assert stale.row_version == 1
    db_session.expunge(stale)

    db_session.execute(
        update(Payment)
        .where(Payment.id == submitted.id)
        .values(row_version=Payment.row_version + 1)
        .execution_options(synchronize_session=False)
    )
    db_session.commit()

    with pytest.raises(ConcurrentModification):
        repository.compare_and_set(db_session, stale, {"verification_status": "verified"}, expected_verification="pending")

    row = db_session.get(Payment, submitted.id, populate_existing=True)
    assert row is not None
    assert row.verification_status == "pending"
    assert row.row_version == 2


def test_status_guard_rejects_write_when_verification_status_moved(db_session: Session) -> None:
    repository = PaymentRepository()
    quotation_id = _accepted_quotation(db_session)
    submitted = _submit(db_session, quotation_id, payment_stage="balance")
    payment = repository.get(db_session, _finance(), submitted.id)

    with pytest.raises(ConcurrentModification):
        repository.compare_and_set(db_session, payment, {"is_locked": True}, expected_verification="verified")


def test_gateway_settlement_auto_verifies_once(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(
        db_session,
        quotation_id,
        payment_method="gateway_capture",
        payment_stage="balance",
        transaction_id="txn-777",
    )
    paid_at = datetime(2026, 10, 3, 9, 30, tzinfo=timezone.utc)

    settled = engine.record_gateway_settlement(db_session, "txn-777", "PAID", paid_at)

    assert settled.verification_status == "verified"
    assert settled.verification_type == "auto"
    assert settled.verified_by == SYSTEM_ACTOR_ID
    assert settled.is_locked is True
    assert settled.paid_at is not None
    assert _quotation(db_session, quotation_id).payment_status == "fully_paid"

    again = engine.record_gateway_settlement(db_session, "txn-777", "SETTLED")
    assert again.row_version == settled.row_version
    assert _actions(db_session, payment.id) == ["payment_submitted", "payment_verified"]


def test_gateway_failure_only_changes_delivery_status(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    _submit(
        db_session,
        quotation_id,
        payment_method="gateway_capture",
        payment_stage="partial",
        amount=Decimal("1000"),
        transaction_id="txn-fail",
    )

    failed = engine.record_gateway_settlement(db_session, "txn-fail", "FAILED")

    assert failed.payment_status == "failed"
    assert failed.verification_status == "pending"
    assert failed.is_locked is False
    assert _quotation(db_session, quotation_id).payment_status == "pending"


def test_gateway_settlement_for_unknown_transaction(db_session: Session) -> None:
    with pytest.raises(NotFound):
        VerificationEngine().record_gateway_settlement(db_session, "txn-missing", "PAID")


def test_gateway_settlement_cannot_verify_check_without_slip(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit_check(
        db_session,
        quotation_id,
        slip=False,
        payment_stage="downpayment",
        deposit_percentage=Decimal("50"),
        transaction_id="txn-chk",
    )
    assert payment.transaction_id is None

    with pytest.raises(MissingEvidence):
        engine.verify(db_session, _finance(), payment.id)
    with pytest.raises(NotFound):
        engine.record_gateway_settlement(db_session, "txn-chk", "PAID")

    row = db_session.get(Payment, payment.id, populate_existing=True)
    assert row is not None
    assert row.verification_status == "pending"
    assert row.is_locked is False
    assert _quotation(db_session, quotation_id).payment_status == "pending_finance_verification"
    assert _actions(db_session, payment.id) == ["payment_submitted"]


def test_gateway_paid_after_rejection_is_acknowledged_without_change(db_session: Session) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(
        db_session,
        quotation_id,
        payment_method="gateway_capture",
        payment_stage="balance",
        transaction_id="txn-late",
    )
    rejected = engine.reject(db_session, _finance(), payment.id, "chargeback reported")

    late = engine.record_gateway_settlement(db_session, "txn-late", "PAID")

    assert late.verification_status == "rejected"
    assert late.is_locked is False
    assert late.row_version == rejected.row_version
    assert _quotation(db_session, quotation_id).payment_status == "pending"
    assert _actions(db_session, payment.id) == ["payment_submitted", "payment_rejected"]


def test_verify_emits_span_and_events(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    engine = VerificationEngine()
    quotation_id = _accepted_quotation(db_session)
    payment = _submit(db_session, quotation_id, payment_stage="balance")

    engine.verify(db_session, _finance(), payment.id)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "payments.verify"]
    assert spans
    assert spans[-1].attributes.get("payment_id") == str(payment.id)
    assert spans[-1].attributes.get("correlation_id") == "corr-verify"

    verified_events = events.events_of_type("payment.verified")
    assert verified_events and verified_events[-1]["payment_id"] == str(payment.id)
    assert verified_events[-1]["correlation_id"] == "corr-verify"
