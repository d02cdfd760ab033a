from outreach.models.mailbox_accounts import MailboxAccount, SubscriptionTier
from outreach.models.cooldowns import EmailCooldown
from outreach.models.conversations import (
    ConversationMessage,
    ConversationThread,
    MessageStatus,
    SenderType,
    ThreadStatus,
)
from outreach.models.email_tracking import EmailTracking, TrackingStatus
from outreach.models.notifications import UserNotification

__all__ = [
    "ConversationMessage",
    "ConversationThread",
    "EmailCooldown",
    "EmailTracking",
    "MailboxAccount",
    "MessageStatus",
    "SenderType",
    "SubscriptionTier",
    "ThreadStatus",
    "TrackingStatus",
    "UserNotification",
]
