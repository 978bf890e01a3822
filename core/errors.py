"""
Error taxonomy for the delivery pipeline.

Delivery and reconciliation errors never leave the pipeline; they are
logged and turned into job/queue state. Only WebhookAuthError surfaces to
an HTTP caller (as a 403 on the verification handshake).
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline operations."""


class InvalidPayload(PipelineError):
    """A job payload is missing fields needed for its category or fingerprint."""

    def __init__(self, message: str, category: str = "", missing: list[str] = None):
        self.category = category
        self.missing = missing or []
        super().__init__(message)


class DeliveryError(PipelineError):
    """A provider call failed. `retryable` decides between retry and exhaustion."""

    retryable = True

    def __init__(self, message: str, status_code: int = None, retryable: bool = None):
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Network error, timeout, provider 5xx or throttling (429)."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Provider 4xx / validation error. Retrying cannot succeed."""

    retryable = False


class RateLimitExceeded(PipelineError):
    """The category's admission window is spent; callers wait for the next one."""

    def __init__(self, category: str, retry_after: float):
        self.category = category
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {category}, retry in {retry_after:.3f}s")


class WebhookAuthError(PipelineError):
    """Webhook verification handshake presented a bad mode or token."""


class ReconciliationMiss(PipelineError):
    """An inbound event references a message or context we have no record of."""

    def __init__(self, message: str, provider_message_id: str = ""):
        self.provider_message_id = provider_message_id
        super().__init__(message)


class JobStateError(PipelineError):
    """An illegal job state transition (e.g. acking a terminal job)."""


class CursorConflict(PipelineError):
    """A compare-and-swap on a lesson cursor lost against a concurrent writer."""
