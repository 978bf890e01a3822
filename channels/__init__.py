"""Delivery clients for outbound messaging providers."""
from channels.base import (
    DeliveryClient,
    DeliveryMetrics,
    SendResult,
    classify_exception,
    classify_http_error,
    option_index,
    option_row_id,
)
from channels.whatsapp_adapter import WhatsAppClient

__all__ = [
    "DeliveryClient", "DeliveryMetrics", "SendResult",
    "classify_exception", "classify_http_error",
    "option_index", "option_row_id",
    "WhatsAppClient",
]
