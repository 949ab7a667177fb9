from .publish import PublishResult, publish_realtime_message
from .signals import extract_notification, normalize_signal, notification_event_from_signal
from .subscription import RealtimeSubscription, claim_session, subscribe_to_realtime_notifications

__all__ = [
    "PublishResult",
    "RealtimeSubscription",
    "claim_session",
    "extract_notification",
    "normalize_signal",
    "notification_event_from_signal",
    "publish_realtime_message",
    "subscribe_to_realtime_notifications",
]
