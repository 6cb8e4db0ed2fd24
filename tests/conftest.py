import copy

import pytest

from report_query.errors import LLMUnavailable
from report_query.llm_client import LLMCollaborator

# Prompt openings → operation name used for canned replies.
_PROMPT_OPERATIONS = (
    ("You are a query classifier", "classify"),
    ("You are a JSON query planner", "plan"),
    ("From this query, extract transaction types", "infer"),
    ("You are a JSON filter engine", "filter"),
    ("You are given a list of known data keys", "resolve"),
)


class StubCollaborator(LLMCollaborator):
    """Deterministic LLM stand-in.

    ``replies`` maps an operation (classify, plan, infer, filter, resolve) to
    the raw text to return, or to an exception instance to raise.  Operations with no
    canned reply raise ``LLMUnavailable``.  If ``gate`` is given, every call
    waits on it before answering.
    """

    name = "stub"

    def __init__(self, gate=None, **replies):
        self.replies = replies
        self.gate = gate
        self.calls = []

    async def generate(self, prompt, *, temperature=0.0, max_output_tokens=1024):
        operation = next(
            (op for opening, op in _PROMPT_OPERATIONS if prompt.startswith(opening)),
            "unknown",
        )
        self.calls.append((operation, prompt))
        if self.gate is not None:
            await self.gate.wait()

        reply = self.replies.get(operation)
        if reply is None:
            raise LLMUnavailable(f"no canned reply for {operation}")
        if isinstance(reply, Exception):
            raise reply
        return reply

    def operations(self):
        return [op for op, _prompt in self.calls]


def _transaction(event_id, txn_type, details, **fields):
    txn = {"eventId": event_id, "transactionType": txn_type, "orderNo": "ORD-1001"}
    txn.update(fields)
    txn["transactionPayload"] = {
        "transactionPayload": {"attributes": {"transactionDetails": details}},
    }
    return txn


_REPORT = {
    "InfinityReportResponse": {
        "infinityTransactionReport": {
            "infinityTransactionReport": [
                _transaction(
                    "EVT-1",
                    "CREATE_ORDER",
                    {
                        "totals": {
                            "grandTotal": "12.50",
                            "grandTax": "1.00",
                            "grandDiscount": "0.00",
                            "lineSubTotal": "11.50",
                        },
                        "order": {
                            "orderAttributes": {
                                "originalInvoiceNo": "INV-77",
                                "businessDate": "2024-03-01",
                            },
                            "orderLineDetailSet": [
                                {
                                    "primeLineNo": "1",
                                    "item": {"itemId": "SKU-A"},
                                    "lineOverallTotals": {"lineTotal": "10", "tax": "0.50", "discount": "0"},
                                },
                                {
                                    "primeLineNo": "2",
                                    "item": {"itemId": "SKU-B"},
                                    "lineOverallTotals": {"lineTotal": "20"},
                                },
                            ],
                        },
                        "storeInfo": {"locationNumber": "0042", "zippedInStore": ""},
                        "payments": {
                            "paymentStatus": "AUTHORIZED",
                            "totalOpenAuthorizations": "12.50",
                            "paymentMethods": {
                                "creditCardType": "VISA",
                                "creditCardNo": "4111",
                                "paymentType": "CREDIT_CARD",
                                "chargeTransactionDetailSet": [
                                    {"requestAmount": "12.50", "status": "OPEN", "chargeType": "AUTHORIZATION"},
                                ],
                            },
                        },
                    },
                    internalStatus="PROCESSED",
                ),
                _transaction(
                    "EVT-2",
                    "CHANGE_ORDER",
                    {
                        "changeOrderGrandTotalSet": {
                            "lineOverallTotals": {"lineTotal": "999"},
                        },
                        "payments": {
                            "paymentStatus": "PAID",
                            "paymentMethods": [
                                {"creditCardType": "MASTERCARD", "paymentType": "CREDIT_CARD"},
                            ],
                        },
                    },
                    internalStatus="FAILED",
                    internalFailedReason="Inventory timeout",
                ),
                _transaction(
                    "EVT-3",
                    "TRANS_IN",
                    {"storeInfo": {"locationNumber": "0042"}},
                    internalStatus="PROCESSED",
                ),
            ]
        }
    }
}


@pytest.fixture
def report():
    """A three-transaction report: CREATE_ORDER, CHANGE_ORDER and TRANS_IN."""
    return copy.deepcopy(_REPORT)


@pytest.fixture
def stub_llm():
    return StubCollaborator
