from dispatchgate.outbox.channel import (
    ChannelAdapter,
    ChannelDeliveryError,
    ChannelResult,
    OutboundMessage,
    StubChannelAdapter,
    WebhookChannelAdapter,
    build_channel_adapter,
)
from dispatchgate.outbox.scheduler import scheduler_status, start_outbox_scheduler, stop_outbox_scheduler, tick
from dispatchgate.outbox.store import (
    STATUS_DEAD_LETTER,
    STATUS_PENDING,
    STATUS_SENT,
    OutboxStore,
    outbox_idempotency_key,
)
from dispatchgate.outbox.worker import OutboxWorker, compute_backoff_seconds

__all__ = [
    "ChannelAdapter",
    "ChannelDeliveryError",
    "ChannelResult",
    "OutboundMessage",
    "OutboxStore",
    "OutboxWorker",
    "STATUS_DEAD_LETTER",
    "STATUS_PENDING",
    "STATUS_SENT",
    "StubChannelAdapter",
    "WebhookChannelAdapter",
    "build_channel_adapter",
    "compute_backoff_seconds",
    "outbox_idempotency_key",
    "scheduler_status",
    "start_outbox_scheduler",
    "stop_outbox_scheduler",
    "tick",
]
