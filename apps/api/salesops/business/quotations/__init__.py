from salesops.business.quotations.api import router
from salesops.business.quotations.models import AcceptanceStatus, Quotation, QuotationLine, QuotationPaymentStatus
from salesops.business.quotations.schemas import (
    QuotationCreate,
    QuotationDeclineRequest,
    QuotationLineCreate,
    QuotationLockRead,
    QuotationRead,
    QuotationSignRequest,
    QuotationUpdate,
)
from salesops.business.quotations.service import QuotationsService, quotations_service

__all__ = [
    "router",
    "AcceptanceStatus",
    "Quotation",
    "QuotationLine",
    "QuotationPaymentStatus",
    "QuotationCreate",
    "QuotationDeclineRequest",
    "QuotationLineCreate",
    "QuotationLockRead",
    "QuotationRead",
    "QuotationSignRequest",
    "QuotationUpdate",
    "QuotationsService",
    "quotations_service",
]
