"""Stripe gateway - webhook signature verification and provider data retrieval"""
import json
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError

from billing_webhooks.core.config import settings
from billing_webhooks.core.errors import ConfigurationError, PayloadShapeError, VerificationError
from billing_webhooks.schemas.events import StripeCustomerObject, TrustedEvent, parse_event

logger = logging.getLogger(__name__)


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # Dict access first (StripeObject subclasses dict in most SDK versions)
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


class StripeGateway:
    """The operations the webhook pipeline needs from Stripe

    Constructed with its credentials instead of relying on the module-level
    ``stripe.api_key``, so tests and alternate accounts can pass their own.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.api_key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
            self._client = stripe.StripeClient(self.api_key)
        return self._client

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> TrustedEvent:
        """Verify a webhook delivery and parse it into a typed event"""
        return self.parse_payload(self.verify_payload(payload, sig_header))

    def verify_payload(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return its decoded JSON body

        The body is only decoded as JSON after the signature check passes.

        Args:
            payload: Raw request body as bytes (must not be parsed by middleware)
            sig_header: Value of the Stripe-Signature header

        Raises:
            ConfigurationError: No webhook secret configured
            VerificationError: Missing/invalid signature or unreadable payload
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        if not sig_header:
            raise VerificationError("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        except UnicodeDecodeError:
            raise VerificationError("Invalid payload encoding")

        try:
            # Constant-time comparison of every v1 signature, plus timestamp tolerance
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid webhook signature: {e}")
            raise VerificationError("Invalid signature")
        except (ValueError, IndexError) as e:
            # stripe's header parser lets a non-numeric or bare "t" element escape
            logger.warning(f"Malformed webhook signature header: {e}")
            raise VerificationError("Malformed signature header")

        try:
            data = json.loads(body)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise VerificationError("Invalid payload")

        if not isinstance(data, dict):
            raise VerificationError("Invalid payload")
        return data

    @staticmethod
    def parse_payload(data: Any) -> TrustedEvent:
        """Parse an already-verified event body (also used when replaying stored events)

        Raises:
            VerificationError: no event id or type, so nothing can be recorded
            PayloadShapeError: trusted event whose object fails its typed model
        """
        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            raise VerificationError("Invalid payload: missing event id or type")
        try:
            return parse_event(data)
        except ValidationError as e:
            logger.error(f"Webhook event {data['id']} does not match the {data['type']} shape: {e}")
            raise PayloadShapeError(str(data["id"]), str(data["type"]), f"{e.error_count()} validation errors")

    def retrieve_customer(self, customer_id: str) -> StripeCustomerObject:
        """Fetch a customer from Stripe (webhook payloads carry only its ID)"""
        customer = self.client.customers.retrieve(customer_id)
        metadata = _get_stripe_value(customer, "metadata", {})
        return StripeCustomerObject(
            id=_get_stripe_value(customer, "id", customer_id),
            email=_get_stripe_value(customer, "email"),
            name=_get_stripe_value(customer, "name"),
            metadata={k: str(v) for k, v in dict(metadata).items()},
            deleted=bool(_get_stripe_value(customer, "deleted", False)),
        )
