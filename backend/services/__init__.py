# services/__init__.py
# ============================================================================
# HANDYLAND ORDER PIPELINE — SERVICES MODULE
# ============================================================================
# Notification channels subscribed to the pipeline's domain events
# ============================================================================

from services.email import (
    EmailMessage,
    IEmailSender,
    LoggingEmailSender,
    SendGridEmailSender,
    create_email_sender,
)

from services.realtime import (
    ADMIN_ROOM,
    WebSocketManager,
    user_room,
)

from services.notifications import (
    EmailNotifier,
    RealtimeNotifier,
    register_notifiers,
)

__all__ = [
    # Email
    "EmailMessage",
    "IEmailSender",
    "LoggingEmailSender",
    "SendGridEmailSender",
    "create_email_sender",
    # Real-time
    "ADMIN_ROOM",
    "WebSocketManager",
    "user_room",
    # Fan-out
    "EmailNotifier",
    "RealtimeNotifier",
    "register_notifiers",
]
