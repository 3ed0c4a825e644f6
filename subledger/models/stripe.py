"""
Stripe domain models - Web payment events after signature verification.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class StripeWebhookEvent:
    """A verified Stripe event this service acts on.

    payment_intent.succeeded carries the charged amount and the metadata the
    checkout attached (user_id, product_id, optional subscription_ref).
    charge.refunded carries the refunded total of the charge.
    """

    event_id: str  # evt_..., used for deduplication
    event_type: str
    created: datetime
    object_id: str  # pi_... or ch_...
    amount_minor: int
    currency: str
    payment_intent_id: str | None = None
    amount_refunded_minor: int = 0
    refund_id: str | None = None  # latest re_... on charge.refunded
    fully_refunded: bool = False
    stripe_subscription_id: str | None = None  # sub_... when billed by Stripe Billing
    user_id: str | None = None
    product_id: str | None = None
    subscription_ref: str | None = None
    raw: dict[str, object] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate event fields."""
        if not self.event_id:
            raise ValueError("event_id required")
        if self.amount_minor < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")

    @property
    def correlation_key(self) -> str | None:
        """Local key of the web subscription this event belongs to."""
        if self.subscription_ref:
            return self.subscription_ref
        if self.stripe_subscription_id:
            return self.stripe_subscription_id
        if self.user_id and self.product_id:
            return f"web:{self.user_id}:{self.product_id}"
        return None

    def is_payment_succeeded(self) -> bool:
        return self.event_type == "payment_intent.succeeded"

    def is_charge_refunded(self) -> bool:
        return self.event_type == "charge.refunded"
