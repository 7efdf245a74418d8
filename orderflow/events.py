"""
Orderflow — payment provider event definitions

Only the envelope is modelled strictly; `data.object` is kept as the raw
dict the provider sent (payment intent, charge or dispute) and is also what
the ledger stores for audit and replay.
"""

from pydantic import BaseModel, ConfigDict, Field

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_PROCESSING = "payment_intent.processing"
CHARGE_REFUNDED = "charge.refunded"
DISPUTE_CREATED = "charge.dispute.created"


class PaymentEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict


class PaymentEvent(BaseModel):
    """A verified provider notification."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: PaymentEventData
    created: int | None = None
    livemode: bool = False

    @property
    def payload(self) -> dict:
        return self.data.object


class WebhookOutcome(BaseModel):
    """What the processor did with one delivery."""

    status: str  # "processed" | "duplicate"
    event_id: str
    event_type: str
    order_id: str | None = None
    applied_status: str | None = None
