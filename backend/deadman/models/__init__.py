from deadman.models.user import User
from deadman.models.secret import Secret, SecretRecipient
from deadman.models.reminder import Reminder
from deadman.models.check_in_token import CheckInToken
from deadman.models.check_in_history import CheckInHistory
from deadman.models.disclosure_delivery import DisclosureDelivery
from deadman.models.admin_notification import AdminNotification
from deadman.models.audit_log import AuditLog

__all__ = [
    "User",
    "Secret",
    "SecretRecipient",
    "Reminder",
    "CheckInToken",
    "CheckInHistory",
    "DisclosureDelivery",
    "AdminNotification",
    "AuditLog",
]
