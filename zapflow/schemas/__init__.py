from zapflow.schemas.webhook import (
    IGNORED_EVENTS,
    WEBHOOK_EVENTS,
    FixContactNamesResponse,
    MergeDuplicatesResponse,
    WebhookResponse,
    WhatsappWebhookEvent,
)

__all__ = [
    "IGNORED_EVENTS",
    "WEBHOOK_EVENTS",
    "WhatsappWebhookEvent",
    "WebhookResponse",
    "MergeDuplicatesResponse",
    "FixContactNamesResponse",
]
