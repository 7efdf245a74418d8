"""
Orderflow — error taxonomy

Every failure the order core reports is one of these tagged types.
`http_status` and `retryable` are fixed per class, so the HTTP layer and
the webhook processor choose their response without inspecting messages.
"""


class OrderflowError(Exception):
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "retryable": self.retryable,
        }


class ValidationError(OrderflowError):
    """Malformed input."""

    http_status = 400


# ── Checkout ─────────────────────────────────────


class EmptyCartError(OrderflowError):
    http_status = 400

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Cart is empty for user {user_id}")
        self.user_id = user_id


class ProductUnavailableError(OrderflowError):
    http_status = 409

    def __init__(self, product_id: str, reason: str = "not found or unavailable") -> None:
        super().__init__(f"Product {product_id} is {reason}")
        self.product_id = product_id


class InsufficientInventoryError(OrderflowError):
    http_status = 409

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient inventory for product {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class CheckoutConflictError(OrderflowError):
    """The store timed out, deadlocked or hit a uniqueness race; safe to retry."""

    http_status = 409
    retryable = True


# ── Order state ──────────────────────────────────


class OrderNotFoundError(OrderflowError):
    http_status = 404

    def __init__(self, order_ref: str) -> None:
        super().__init__(f"Order {order_ref} not found")
        self.order_ref = order_ref


class InvalidStateTransitionError(OrderflowError):
    http_status = 409

    def __init__(self, from_status: str, to_status: str, message: str) -> None:
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class ConfirmationRequiredError(OrderflowError):
    http_status = 409

    def __init__(self, from_status: str, to_status: str, warning: str) -> None:
        super().__init__(warning)
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentModificationError(OrderflowError):
    """Another writer changed the order between read and compare-and-set."""

    http_status = 409
    retryable = True


# ── Webhooks ─────────────────────────────────────


class SignatureVerificationError(OrderflowError):
    http_status = 400


class TransientProcessingError(OrderflowError):
    http_status = 500
    retryable = True
