"""
Result models shared by the recognizer, the extraction routines and the
session.

Record fields are typed optionals: ``None`` means the path was absent from
the document.  Absent fields are rendered as ``"N/A"`` only when a record is
dumped, so a present-but-empty string survives as ``""``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_serializer

NOT_AVAILABLE = "N/A"
ERROR_QUERY_TYPE = "ERROR"

Leaf = Optional[Any]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------- CLASSIFICATION ----------------------


class Classification(BaseModel):
    type: str
    handler: str
    confidence: float = Field(ge=0.0, le=1.0)
    description: str = ""
    reasoning: Optional[str] = None
    source: str = "rule"


class QueryPlan(BaseModel):
    """Minimal extraction plan returned by the LLM planner."""

    model_config = ConfigDict(extra="ignore")

    extract: List[str]
    filter: Dict[str, Any] = Field(default_factory=dict)


# ---------------------- ENVELOPE ----------------------


class Envelope(BaseModel):
    queryType: str
    results: Any = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.queryType == ERROR_QUERY_TYPE

    @classmethod
    def error(cls, message: str, **metadata: Any) -> "Envelope":
        return cls(
            queryType=ERROR_QUERY_TYPE,
            results={"error": message},
            metadata={"timestamp": utc_timestamp(), **metadata},
        )


# ---------------------- RECORDS ----------------------


class Record(BaseModel):
    """Base for extracted records; absent fields dump as ``"N/A"``."""

    @model_serializer(mode="wrap")
    def _absent_as_na(self, handler):
        data = handler(self)
        return {k: (NOT_AVAILABLE if v is None else v) for k, v in data.items()}


class MTLStatusRecord(Record):
    transactionType: Leaf = None
    internalStatus: Leaf = None
    internalFailedReason: Leaf = None
    eventId: Leaf = None
    orderNo: Leaf = None


class InternalStatusRecord(Record):
    internalStatus: Leaf = None
    transactionType: Leaf = None
    eventId: Leaf = None
    orderNo: Leaf = None
    basePath: str


class InternalFailedReasonRecord(Record):
    internalFailedReason: Leaf = None
    transactionType: Leaf = None
    internalStatus: Leaf = None
    eventId: Leaf = None
    orderNo: Leaf = None
    basePath: str


class OrderTotalRecord(Record):
    eventId: Leaf = None
    transactionType: Leaf = None
    orderNo: Leaf = None
    grandTotal: float = 0.0
    grandTotalRaw: Leaf = "Not Available"


class PaymentRecord(Record):
    eventId: Leaf = None
    transactionType: Leaf = None
    orderNo: Leaf = None

    # payment
    paymentStatus: Leaf = None
    totalOpenAuthorizations: Leaf = None
    totalOpenBookings: Leaf = None

    # card
    creditCardType: Leaf = None
    creditCardNo: Leaf = None
    displayCreditCardNo: Leaf = None
    creditCardExpDate: Leaf = None
    firstName: Leaf = None
    lastName: Leaf = None

    paymentType: Leaf = None
    paymentReference1: Leaf = None
    paymentKey: Leaf = None
    maxChargeLimit: Leaf = None

    # charge
    requestAmount: Leaf = None
    authorizationId: Leaf = None
    bookAmount: Leaf = None
    creditAmount: Leaf = None
    amountCollected: Leaf = None
    status: Leaf = None
    chargeType: Leaf = None
    recordType: Leaf = None
    authorizationExpirationDate: Leaf = None
    collectionDate: Leaf = None


class ItemLineRecord(Record):
    eventId: Leaf = None
    orderNo: Leaf = None
    itemId: Leaf = None
    primeLineNo: Leaf = None
    lineTotal: Leaf = None
    tax: Leaf = None
    discount: Leaf = None


class OrderAttributesRecord(Record):
    eventId: Leaf = None
    transactionType: Leaf = None
    originalInvoiceNo: Leaf = None
    originalMasterInvoiceNo: Leaf = None
    businessDate: Leaf = None
    salesDate: Leaf = None
    grandDiscount: Leaf = None
    grandTax: Leaf = None
    grandTotal: Leaf = None
    lineSubTotal: Leaf = None


class StoreDetailsRecord(Record):
    eventId: Leaf = None
    transactionType: Leaf = None
    locationNumber: Leaf = None
    zippedInStore: Leaf = None


class SkippedTransaction(Record):
    eventId: Leaf = None
    transactionType: Leaf = None
    reason: str
