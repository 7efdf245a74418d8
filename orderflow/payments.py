"""
Orderflow — payment provider client

Stripe signs each webhook body with the endpoint secret
(`Stripe-Signature: t=<ts>,v1=<hmac>`). The signature is checked against
the raw bytes before anything is parsed.
"""

from typing import Protocol

import pydantic
import stripe

from .errors import SignatureVerificationError, ValidationError
from .events import PaymentEvent


class PaymentProvider(Protocol):
    def verify_signature(self, body: bytes, header: str | None, secret: str) -> None: ...

    def parse_event(self, body: bytes) -> PaymentEvent: ...


class StripePaymentProvider:
    def __init__(self, tolerance: int = 300):
        self.tolerance = tolerance

    def verify_signature(self, body: bytes, header: str | None, secret: str) -> None:
        """Raise SignatureVerificationError unless the header signs this body."""
        if not header:
            raise SignatureVerificationError("No signature provided")
        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureVerificationError("Webhook body is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(payload, header, secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Invalid signature: {e}") from e

    def parse_event(self, body: bytes) -> PaymentEvent:
        try:
            return PaymentEvent.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Malformed webhook event: {e.error_count()} error(s)") from e
