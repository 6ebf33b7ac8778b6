from salesops.business.payments.api import router
from salesops.business.payments.models import Payment, PaymentMethod, VerificationStatus
from salesops.business.payments.schemas import PaymentRead, PaymentSubmit
from salesops.business.payments.service import PaymentsService, payments_service
from salesops.business.payments.verification import VerificationEngine, verification_engine

__all__ = [
    "router",
    "Payment",
    "PaymentMethod",
    "VerificationStatus",
    "PaymentRead",
    "PaymentSubmit",
    "PaymentsService",
    "payments_service",
    "VerificationEngine",
    "verification_engine",
]
