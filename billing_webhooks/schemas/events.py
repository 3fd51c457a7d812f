"""Typed Stripe webhook events

Each handled event type has its own model whose ``data.object`` is the typed
provider object. Stripe payloads carry far more fields than reconciliation
needs; unknown fields are ignored.
"""
import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, enum.Enum):
    """Stripe webhook event types we reconcile"""
    CUSTOMER_SUBSCRIPTION_CREATED = "customer.subscription.created"
    CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================================================
# PROVIDER OBJECTS
# ============================================================================

class StripeRecurring(StripeModel):
    interval: str = "month"
    interval_count: int = 1


class StripePrice(StripeModel):
    id: str
    unit_amount: Optional[int] = None
    currency: str = "usd"
    recurring: Optional[StripeRecurring] = None


class StripeSubscriptionItem(StripeModel):
    id: Optional[str] = None
    price: StripePrice
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeList(StripeModel):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeCustomerObject(StripeModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    deleted: bool = False

    @property
    def user_reference(self) -> Optional[str]:
        """Local user ID carried in customer metadata"""
        return self.metadata.get("userId") or self.metadata.get("user_id")


class StripeSubscriptionObject(StripeModel):
    id: str
    # Either the customer ID or the expanded customer object
    customer: Union[str, StripeCustomerObject]
    # Kept as a plain string so unknown statuses reach the status mapper
    status: str
    items: StripeList = Field(default_factory=StripeList)
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    # Older API versions carry the period on the subscription, newer ones on each item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def customer_id(self) -> str:
        if isinstance(self.customer, StripeCustomerObject):
            return self.customer.id
        return self.customer

    @property
    def primary_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.primary_item
        return item.price.id if item else None

    @property
    def period_start(self) -> Optional[int]:
        item = self.primary_item
        if item and item.current_period_start:
            return item.current_period_start
        return self.current_period_start

    @property
    def period_end(self) -> Optional[int]:
        item = self.primary_item
        if item and item.current_period_end:
            return item.current_period_end
        return self.current_period_end


class StripeInvoiceObject(StripeModel):
    id: str
    subscription: Optional[str] = None
    customer: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    period_end: Optional[int] = None
    parent: Optional[Dict[str, Any]] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # API versions from 2025 nest it under parent.subscription_details
        details = (self.parent or {}).get("subscription_details") or {}
        return details.get("subscription")


class StripeCheckoutSessionObject(StripeModel):
    id: str
    mode: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None


# ============================================================================
# EVENT ENVELOPES
# ============================================================================

ObjectT = TypeVar("ObjectT")


class EventData(StripeModel, Generic[ObjectT]):
    object: ObjectT
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEventBase(StripeModel):
    id: str
    created: Optional[int] = None
    livemode: bool = False
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SubscriptionCreatedEvent(StripeEventBase):
    type: Literal["customer.subscription.created"]
    data: EventData[StripeSubscriptionObject]


class SubscriptionUpdatedEvent(StripeEventBase):
    type: Literal["customer.subscription.updated"]
    data: EventData[StripeSubscriptionObject]


class SubscriptionDeletedEvent(StripeEventBase):
    type: Literal["customer.subscription.deleted"]
    data: EventData[StripeSubscriptionObject]


class InvoicePaymentSucceededEvent(StripeEventBase):
    type: Literal["invoice.payment_succeeded"]
    data: EventData[StripeInvoiceObject]


class InvoicePaymentFailedEvent(StripeEventBase):
    type: Literal["invoice.payment_failed"]
    data: EventData[StripeInvoiceObject]


class CustomerCreatedEvent(StripeEventBase):
    type: Literal["customer.created"]
    data: EventData[StripeCustomerObject]


class CustomerUpdatedEvent(StripeEventBase):
    type: Literal["customer.updated"]
    data: EventData[StripeCustomerObject]


class CheckoutSessionCompletedEvent(StripeEventBase):
    type: Literal["checkout.session.completed"]
    data: EventData[StripeCheckoutSessionObject]


class UnhandledEvent(StripeEventBase):
    """Any event type without a reconciliation handler"""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


HandledEvent = Annotated[
    Union[
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaymentSucceededEvent,
        InvoicePaymentFailedEvent,
        CustomerCreatedEvent,
        CustomerUpdatedEvent,
        CheckoutSessionCompletedEvent,
    ],
    Field(discriminator="type"),
]

TrustedEvent = Union[HandledEvent, UnhandledEvent]

_handled_event_adapter = TypeAdapter(HandledEvent)
HANDLED_EVENT_TYPES = frozenset(t.value for t in EventType)


def parse_event(payload: Dict[str, Any]) -> TrustedEvent:
    """Build a typed event from an already-verified payload

    Raises:
        pydantic.ValidationError: payload does not match its event type's shape
    """
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _handled_event_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
