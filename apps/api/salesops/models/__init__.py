from salesops.models.audit import AuditImmutabilityError, AuditRecord
from salesops.models.sequence import NumberSequence
from salesops.business.quotations.models import Quotation, QuotationLine
from salesops.business.payments.models import Payment

__all__ = [
    "AuditImmutabilityError",
    "AuditRecord",
    "NumberSequence",
    "Payment",
    "Quotation",
    "QuotationLine",
]
