"""Webhook pipeline error taxonomy

Every error the pipeline raises on purpose derives from WebhookError and
declares whether the retry orchestrator may try again. Exceptions that are
not WebhookErrors (database, network, provider API) are treated as transient.
"""
from typing import Optional


class WebhookError(Exception):
    """Base class for pipeline errors"""

    retryable = True
    integrity = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class VerificationError(WebhookError):
    """Untrusted input: missing, malformed or mismatched signature, or an unreadable body"""

    retryable = False


class ConfigurationError(WebhookError):
    """Missing secret or misconfigured environment. Retrying cannot fix it."""

    retryable = False


class EventNotFoundError(WebhookError):
    """No stored processing record for the requested event ID"""

    retryable = False

    def __init__(self, event_id: str):
        super().__init__(f"Webhook event not found: {event_id}")
        self.event_id = event_id


class IntegrityFailure(WebhookError):
    """A trusted event references data that does not line up with local state.

    Retryable, since the missing row may be created by a concurrent operation,
    but reported to operators as its own class once retries are exhausted.
    """

    integrity = True


class LinkageError(IntegrityFailure):
    """Provider customer carries no usable reference to a local user"""


class PlanNotFoundError(IntegrityFailure):
    """No local plan matches the provider price"""

    def __init__(self, price_id: Optional[str]):
        super().__init__(f"No plan found for price ID: {price_id}")
        self.price_id = price_id


class UnmappedStatusError(IntegrityFailure):
    """Provider subscription status has no local counterpart"""

    def __init__(self, provider_status: Optional[str]):
        super().__init__(f"Unmapped Stripe subscription status: {provider_status!r}")
        self.provider_status = provider_status


class PayloadShapeError(IntegrityFailure):
    """A correctly signed event whose object does not match its typed model

    Redelivery carries the same bytes, so retrying cannot help.
    """

    retryable = False

    def __init__(self, event_id: str, event_type: str, detail: str):
        super().__init__(f"Payload for {event_type} ({event_id}) does not match its schema: {detail}")
        self.event_id = event_id
        self.event_type = event_type


class HandlingError(WebhookError):
    """Wraps whatever a reconciliation handler raised"""

    def __init__(self, event_type: str, event_id: str, cause: BaseException):
        super().__init__(f"Error handling {event_type} ({event_id}): {cause}")
        self.event_type = event_type
        self.event_id = event_id
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return is_retryable(self.cause)

    @property
    def integrity(self) -> bool:
        return is_integrity_failure(self.cause)


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception for the retry orchestrator"""
    if isinstance(exc, WebhookError):
        return exc.retryable
    return True


def is_integrity_failure(exc: BaseException) -> bool:
    if isinstance(exc, WebhookError):
        return exc.integrity
    return False
